from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path

from client.chat_client import ChatClient
from config.chat_client_config import DEFAULT_PATH, resolve_chat_client_config
from shared.events import Event

logger = logging.getLogger("ChatLink.CLI")

HELP_TEXT = "Команды: /new, /reset, /end, /info, /quit"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chatlink", description="Консольный чат через websocket")
    parser.add_argument("--url", help="адрес websocket-сервера (ws://host:port/ws)")
    parser.add_argument("--config", type=Path, default=DEFAULT_PATH, help="путь к chat_client.json")
    parser.add_argument("--db", help="файл SQLite для истории; без него история только в памяти")
    parser.add_argument("--verbose", action="store_true", help="подробный лог")
    return parser


def _print(line: str) -> None:
    print(line, flush=True)


def _attach_printers(client: ChatClient) -> None:
    def _on_reply(event: Event) -> None:
        _print(f"bot> {event.payload.get('content')}")

    def _on_error(event: Event) -> None:
        retry = " (можно повторить)" if event.payload.get("can_retry") else ""
        _print(f"! {event.payload.get('display_message')}{retry}")

    def _on_status(event: Event) -> None:
        if event.name == "reconnect_scheduled":
            _print(f"* переподключение через {event.payload.get('delay')}s")
        elif event.name == "max_reconnect_attempts_reached":
            _print("* сервер недоступен, попытки исчерпаны")
        else:
            _print(f"* {event.name}")

    def _on_timeout(event: Event) -> None:
        _print(f"! нет ответа на {event.payload.get('message_id')}")

    client.events.on("chat_response", _on_reply)
    client.events.on("chat_error", _on_error)
    client.events.on("message_timeout", _on_timeout)
    status_events = (
        "connected",
        "disconnected",
        "reconnect_scheduled",
        "max_reconnect_attempts_reached",
    )
    for name in status_events:
        client.events.on(name, _on_status)


async def _read_line() -> str | None:
    line = await asyncio.to_thread(sys.stdin.readline)
    if not line:
        return None
    return line.rstrip("\n")


async def run_cli(client: ChatClient) -> None:
    _attach_printers(client)
    _print(HELP_TEXT)
    while True:
        line = await _read_line()
        if line is None:
            break
        text = line.strip()
        if not text:
            continue
        if text == "/quit":
            break
        if text == "/new":
            result = await client.start_session()
            status = "ok" if result.success else f"ошибка: {result.error}"
            _print(f"* новая сессия {result.session_id} ({status})")
        elif text == "/reset":
            client.reset_session()
            _print(f"* сессия сброшена: {client.session_id}")
        elif text == "/end":
            client.end_session()
            _print("* сессия завершена")
        elif text == "/info":
            _print(json.dumps(client.get_stats(), ensure_ascii=False, indent=2, default=str))
        elif text.startswith("/"):
            _print(HELP_TEXT)
        else:
            client.send_chat_message(text)


async def _main_async(args: argparse.Namespace) -> None:
    config = resolve_chat_client_config(args.config)
    if args.url:
        config = replace(config, connection=replace(config.connection, url=args.url))
    if args.db:
        config = replace(config, storage_path=args.db)
    logger.info("Connecting to %s", config.connection.url)
    client = ChatClient(config)
    try:
        await run_cli(client)
    finally:
        client.close()
        # даём транспорту закрыть websocket
        await asyncio.sleep(0.1)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    try:
        asyncio.run(_main_async(args))
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
