from __future__ import annotations

import copy
import json
import logging
from collections.abc import Callable
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Final

from config.chat_client_config import HistoryConfig
from memory.history_storage import InMemoryKeyValueStorage, KeyValueStorage
from memory.token_estimator import estimate_tokens, fit_suffix, total_tokens
from shared.ids import MessageIdGenerator, new_session_id
from shared.models import JSONValue, Message, MessageRole, PersistedSession, SessionInfo
from shared.sanitize import safe_json_loads

logger = logging.getLogger("ChatLink.HistoryManager")

# known legacy misspelling in persisted sessions; nothing else is rewritten
_ROLE_ALIASES: Final[dict[str, str]] = {"assistent": "assistant"}
_SYSTEM_ROLE: Final[str] = "system"

_message_ids = MessageIdGenerator()


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()  # noqa: UP017


def normalize_role(role: str) -> str:
    return _ROLE_ALIASES.get(role, role)


class HistoryManager:
    """Журнал реплик активной сессии с бюджетом токенов и сохранением между перезапусками.

    Каждая мутация синхронно записывается в хранилище. Если хранилище падает,
    менеджер пишет предупреждение и до конца жизни процесса работает только в
    памяти; исключения хранилища наружу не выходят.
    """

    def __init__(
        self,
        config: HistoryConfig | None = None,
        *,
        storage: KeyValueStorage | None = None,
    ) -> None:
        self.config = config or HistoryConfig()
        self._storage: KeyValueStorage = storage or InMemoryKeyValueStorage()
        self._persistence_enabled = True
        self._session_id: str | None = None
        self._messages: list[Message] = []
        self._context: dict[str, JSONValue] = {}
        self._created_at: str | None = None
        self._updated_at: str | None = None
        if not self.load_active_session():
            self.start_new_session()
        logger.debug("active session: %s", self._session_id)

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def context(self) -> dict[str, JSONValue]:
        return copy.deepcopy(self._context)

    @property
    def persistence_enabled(self) -> bool:
        return self._persistence_enabled

    def start_new_session(self, context: dict[str, JSONValue] | None = None) -> str:
        now = _utc_iso_now()
        self._session_id = new_session_id()
        self._messages = []
        self._context = dict(context or {})
        self._created_at = now
        self._updated_at = now
        self._save_session()
        self._set_active_session(self._session_id)
        logger.info("new session %s", self._session_id)
        return self._session_id

    def add_user_message(self, content: str) -> Message:
        return self._append("user", content, None)

    def add_assistant_message(
        self,
        content: str,
        metadata: dict[str, JSONValue] | None = None,
    ) -> Message:
        return self._append("assistant", content, metadata)

    def prepare_api_payload(self) -> list[dict[str, str]]:
        candidates = [
            message for message in self._messages if normalize_role(message.role) != _SYSTEM_ROLE
        ]
        budget = self.config.token_budget
        total = total_tokens(candidates)
        if total <= budget:
            selected = candidates
        else:
            selected = fit_suffix(candidates, budget)
            logger.info(
                "history truncated: %s -> %s messages (%s > %s tokens)",
                len(candidates),
                len(selected),
                total,
                budget,
            )
            if not selected:
                logger.warning("newest message alone exceeds token budget %s", budget)
        return [
            {"role": normalize_role(message.role), "content": message.content}
            for message in selected
        ]

    def update_session_context(self, updates: dict[str, JSONValue]) -> None:
        if self._session_id is None:
            self.start_new_session()
        self._context = {**self._context, **updates}
        self._save_session()
        logger.debug("context updated: %s", sorted(updates))

    def clear_history(self) -> None:
        self._messages = []
        self._save_session()
        logger.info("history cleared for %s", self._session_id)

    def end_session(self) -> None:
        logger.info("ending session %s", self._session_id)
        self._write("clear active session", lambda: self._storage.remove_item(self._active_key()))
        self._reset_state()

    def get_session_info(self) -> SessionInfo:
        return SessionInfo(
            session_id=self._session_id,
            message_count=len(self._messages),
            total_tokens=total_tokens(self._messages),
            context=copy.deepcopy(self._context),
            created_at=self._created_at,
            updated_at=self._updated_at,
        )

    def export_history(self) -> dict[str, JSONValue]:
        return {
            "session": asdict(self.get_session_info()),
            "messages": [message.to_dict() for message in self._messages],
            "formatted_for_api": self.prepare_api_payload(),
        }

    def load_active_session(self) -> bool:
        active_id = self._read(self._active_key())
        if not active_id:
            return False
        return self.load_session(active_id)

    def load_session(self, session_id: str) -> bool:
        record = self.get_persisted_session(session_id)
        if record is None:
            logger.info("session %s not found", session_id)
            return False
        self._session_id = record.session_id
        self._messages = list(record.messages)
        self._context = dict(record.context)
        self._created_at = record.created_at
        self._updated_at = record.updated_at
        self._set_active_session(record.session_id)
        logger.info("session %s loaded with %s messages", session_id, len(self._messages))
        return True

    def get_persisted_session(self, session_id: str) -> PersistedSession | None:
        raw = self._read(self._session_key(session_id))
        if raw is None:
            return None
        return self._decode_session(raw, session_id)

    def list_sessions(self) -> list[str]:
        return self._read_sessions_list()

    def delete_session(self, session_id: str) -> bool:
        """Удаляет сохранённую сессию; если она текущая, состояние в памяти сбрасывается."""
        sessions = [item for item in self._read_sessions_list() if item != session_id]
        active_id = self._read(self._active_key())

        def _apply() -> None:
            self._storage.remove_item(self._session_key(session_id))
            self._storage.set_item(self._sessions_key(), json.dumps(sessions))
            if active_id == session_id:
                self._storage.remove_item(self._active_key())

        deleted = self._write("delete session", _apply)
        if session_id == self._session_id:
            self._reset_state()
        logger.info("session %s deleted", session_id)
        return deleted

    def _append(
        self,
        role: MessageRole,
        content: str,
        metadata: dict[str, JSONValue] | None,
    ) -> Message:
        if not isinstance(content, str):
            raise ValueError("content must be a string")
        text = content.strip()
        if not text:
            raise ValueError("content must not be empty")
        if self._session_id is None:
            self.start_new_session()
        assert self._session_id is not None
        message = Message(
            id=_message_ids.next_id(),
            session_id=self._session_id,
            role=role,
            content=text,
            timestamp=_utc_iso_now(),
            token_count=estimate_tokens(text, self.config.chars_per_token),
            metadata=dict(metadata or {}) if role == "assistant" else {},
        )
        self._messages.append(message)
        self._save_session()
        logger.debug("%s message added (%s tokens)", role, message.token_count)
        return message

    def _reset_state(self) -> None:
        self._session_id = None
        self._messages = []
        self._context = {}
        self._created_at = None
        self._updated_at = None

    def _session_key(self, session_id: str) -> str:
        return f"{self.config.storage_key}_{session_id}"

    def _active_key(self) -> str:
        return f"{self.config.storage_key}_active"

    def _sessions_key(self) -> str:
        return f"{self.config.storage_key}_sessions"

    def _save_session(self) -> None:
        if self._session_id is None:
            return
        self._updated_at = _utc_iso_now()
        record = PersistedSession(
            session_id=self._session_id,
            messages=list(self._messages),
            context=dict(self._context),
            created_at=self._created_at or self._updated_at,
            updated_at=self._updated_at,
        )
        key = self._session_key(self._session_id)

        def _store() -> None:
            self._storage.set_item(key, json.dumps(record.to_dict(), ensure_ascii=False))

        if self._write("save session", _store):
            self._update_sessions_list(self._session_id)

    def _set_active_session(self, session_id: str) -> None:
        self._write(
            "set active session",
            lambda: self._storage.set_item(self._active_key(), session_id),
        )

    def _update_sessions_list(self, session_id: str) -> None:
        sessions = self._read_sessions_list()
        if session_id not in sessions:
            sessions.append(session_id)
        overflow = len(sessions) - self.config.max_sessions
        evicted = sessions[:overflow] if overflow > 0 else []
        kept = sessions[len(evicted) :]

        def _apply() -> None:
            for old_id in evicted:
                self._storage.remove_item(self._session_key(old_id))
            self._storage.set_item(self._sessions_key(), json.dumps(kept))

        if self._write("update sessions list", _apply) and evicted:
            logger.info("evicted %s old sessions: %s", len(evicted), evicted)

    def _read_sessions_list(self) -> list[str]:
        raw = self._read(self._sessions_key())
        if raw is None:
            return []
        parsed = safe_json_loads(raw)
        if not isinstance(parsed, list):
            logger.warning("sessions list is corrupted, starting over")
            return []
        return [item for item in parsed if isinstance(item, str) and item]

    def _decode_session(self, raw: str, session_id: str) -> PersistedSession | None:
        parsed = safe_json_loads(raw)
        if not isinstance(parsed, dict):
            logger.warning("session %s record is not an object", session_id)
            return None
        stored_id = parsed.get("id")
        if not isinstance(stored_id, str) or not stored_id:
            logger.warning("session %s record has no id", session_id)
            return None
        messages: list[Message] = []
        messages_raw = parsed.get("messages")
        for item in messages_raw if isinstance(messages_raw, list) else []:
            if not isinstance(item, dict):
                continue
            try:
                messages.append(Message.from_dict(item))
            except ValueError as exc:
                logger.warning("skipping invalid message in %s: %s", session_id, exc)
        context_raw = parsed.get("context")
        context = (
            {str(key): value for key, value in context_raw.items()}
            if isinstance(context_raw, dict)
            else {}
        )
        created_at = parsed.get("createdAt")
        updated_at = parsed.get("updatedAt")
        now = _utc_iso_now()
        return PersistedSession(
            session_id=stored_id,
            messages=messages,
            context=context,
            created_at=created_at if isinstance(created_at, str) else now,
            updated_at=updated_at if isinstance(updated_at, str) else now,
        )

    def _read(self, key: str) -> str | None:
        if not self._persistence_enabled:
            return None
        try:
            return self._storage.get_item(key)
        except Exception as exc:  # noqa: BLE001
            self._disable_persistence("read", exc)
            return None

    def _write(self, action: str, operation: Callable[[], None]) -> bool:
        if not self._persistence_enabled:
            return False
        try:
            operation()
        except Exception as exc:  # noqa: BLE001
            self._disable_persistence(action, exc)
            return False
        return True

    def _disable_persistence(self, action: str, exc: Exception) -> None:
        self._persistence_enabled = False
        logger.warning("history storage %s failed, continuing in memory: %s", action, exc)
