from __future__ import annotations


class ChatLinkError(Exception):
    """Базовая ошибка chatlink."""


class EnvelopeError(ChatLinkError):
    """Входящий кадр не удалось разобрать."""

    def __init__(self, message: str, raw: str | bytes | None = None) -> None:
        super().__init__(message)
        self.raw = raw


class TransportError(ChatLinkError):
    pass


class StorageError(ChatLinkError):
    pass
