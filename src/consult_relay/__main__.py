import asyncio
import sys

from aiohttp import web
from dotenv import load_dotenv
from loguru import logger

from consult_relay.app_config import load_json_config, parse_relay_config, resolve_runtime_env
from consult_relay.bootstrap import bootstrap_client, bootstrap_hub
from consult_relay.client.client import ConsultationClient
from consult_relay.commands import ChatCommandRouter
from consult_relay.errors import RelayError
from consult_relay.events import (
    CONNECTION_LOST,
    MESSAGE_FAILED,
    MESSAGE_READ,
    NEW_MESSAGE,
    PARTICIPANT_JOINED,
    PARTICIPANT_LEFT,
    RATING_UNLOCKED,
    RECONNECTED,
    SESSION_CONFLICT,
    TYPING_STARTED,
)
from consult_relay.server import create_app

USAGE = "usage: python -m consult_relay serve | chat <sessionId>"


async def serve() -> None:
    app_config = parse_relay_config(load_json_config())
    runtime = bootstrap_hub(app_config, resolve_runtime_env())

    runner = web.AppRunner(create_app(runtime.hub, socketio_path=app_config.socketio_path))
    await runner.setup()
    site = web.TCPSite(runner, app_config.host, app_config.port)
    await site.start()

    print(f"consult-relay hub listening on http://{app_config.host}:{app_config.port}/{app_config.socketio_path}")
    print(f"Store: {app_config.store_db_path}")
    print(f"Auth: {app_config.auth_mode}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")

    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()
        await runtime.close()


def _describe(event: str, payload: dict) -> str | None:
    if event == NEW_MESSAGE:
        text = payload.get("body") or payload.get("attachmentRef") or ""
        return f"{payload.get('senderId')}> {text}"
    if event == PARTICIPANT_JOINED:
        return f"* {payload.get('userId')} ({payload.get('role')}) joined"
    if event == PARTICIPANT_LEFT:
        return f"* {payload.get('userId')} left"
    if event == TYPING_STARTED:
        return f"* {payload.get('userId')} is typing..."
    if event == MESSAGE_READ:
        return f"* {payload.get('readerId')} read {payload.get('messageId')}"
    if event == MESSAGE_FAILED:
        return f"! message {payload.get('correlationId')} failed: {payload.get('error', {}).get('message')}"
    if event == SESSION_CONFLICT:
        return f"! session changed elsewhere, now {payload.get('session', {}).get('status')}"
    if event == RATING_UNLOCKED:
        return "* rating is now available for this consultation"
    if event == CONNECTION_LOST:
        return "! connection lost; restart the client to reconnect"
    if event == RECONNECTED:
        return "* reconnected"
    if event.startswith("session-"):
        return f"* session is now {payload.get('session', {}).get('status')}"
    return None


async def _run_lifecycle(action, session_id: str) -> None:
    try:
        session = await action(session_id)
        print(f"* session is now {session.status.value}")
    except RelayError as ex:
        print(f"! {ex.code}: {ex.message}")


def _build_router(client: ConsultationClient, session_id: str) -> ChatCommandRouter:
    async def on_help() -> None:
        print("Commands: " + ", ".join(router.commands))

    async def on_read() -> None:
        horizon = await client.mark_all_read(session_id)
        print(f"* marked messages up to #{horizon} as read")

    async def on_who() -> None:
        for user_id, role in sorted(client.participants(session_id).items()):
            print(f"  - {user_id} ({role.value})")

    async def on_history() -> None:
        for message in client.messages(session_id):
            seq = message.store_seq if message.store_seq is not None else "-"
            print(f"  [{seq}] {message.sender_id}: {message.body} ({message.delivery_state.value})")

    router = ChatCommandRouter(
        on_help=on_help,
        on_start=lambda: _run_lifecycle(client.start, session_id),
        on_end=lambda: _run_lifecycle(client.end, session_id),
        on_cancel=lambda: _run_lifecycle(client.cancel, session_id),
        on_read=on_read,
        on_who=on_who,
        on_history=on_history,
        on_unknown=lambda line: print(f"Unknown command: {line}"),
    )
    return router


async def chat(session_id: str) -> None:
    app_config = parse_relay_config(load_json_config())
    env = resolve_runtime_env()
    if not env.relay_token:
        logger.error("RELAY_TOKEN environment variable is required.")
        sys.exit(1)

    runtime = bootstrap_client(app_config, env, token=env.relay_token)
    client = runtime.client
    try:
        await client.connect()
        await client.join(session_id)
    except RelayError as ex:
        logger.error(f"Could not join {session_id}: {ex.code} {ex.message}")
        await runtime.close()
        sys.exit(1)

    def _print_event(event: str, payload: dict) -> None:
        line = _describe(event, payload)
        if line:
            print(f"\n{line}")

    client.on("*", _print_event)
    router = _build_router(client, session_id)

    session = client.session(session_id)
    print(f"consult-relay chat (session {session_id}, type '/quit' to leave, '/help' for commands)")
    if session is not None:
        print(f"Status: {session.status.value} ({session.kind.value})")
    if client.identity is not None:
        print(f"You: {client.identity.user_id} ({client.identity.role.value})")
    print()

    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = line.strip()
            if trimmed in ("/quit", "exit", "quit"):
                break
            if not trimmed:
                continue

            try:
                if await router.try_handle(trimmed):
                    continue
                client.send_message(session_id, trimmed)
            except RelayError as ex:
                print(f"! {ex.code}: {ex.message}")
    finally:
        try:
            await client.leave(session_id)
        except RelayError as ex:
            logger.warning(f"Leave failed: {ex.code}")
        await runtime.close()


def main(argv: list[str]) -> None:
    load_dotenv()
    if len(argv) >= 1 and argv[0] == "serve":
        asyncio.run(serve())
    elif len(argv) >= 2 and argv[0] == "chat":
        asyncio.run(chat(argv[1]))
    else:
        print(USAGE)
        sys.exit(2)


def run() -> None:
    main(sys.argv[1:])


if __name__ == "__main__":
    run()
