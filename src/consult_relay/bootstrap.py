from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from consult_relay.app_config import RelayConfig, RuntimeEnv
from consult_relay.attachments import AttachmentStore, HttpAttachmentStore
from consult_relay.auth import AuthProvider, HttpAuthProvider, StaticTokenAuthProvider
from consult_relay.client.client import ConsultationClient
from consult_relay.hub.hub import ConsultationHub
from consult_relay.logging_config import setup_logging
from consult_relay.store.sqlite_store import SqliteRecordStore
from consult_relay.transport.channel import BackoffPolicy, ConnectionManager
from consult_relay.transport.socketio_transport import SocketIOTransport


@dataclass
class HubRuntime:
    hub: ConsultationHub
    store: SqliteRecordStore
    auth: AuthProvider
    log_descriptions: list[str]

    async def close(self) -> None:
        await self.hub.close()
        if isinstance(self.auth, HttpAuthProvider):
            await self.auth.close()
        self.store.close()


@dataclass
class ClientRuntime:
    client: ConsultationClient
    manager: ConnectionManager
    attachments: AttachmentStore | None
    log_descriptions: list[str]

    async def close(self) -> None:
        await self.client.close()
        if isinstance(self.attachments, HttpAttachmentStore):
            await self.attachments.close()


def _resolve_db_path(path: str) -> str:
    if path == ":memory:":
        return path
    db_path = Path(path)
    if not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    return str(db_path)


def build_auth_provider(app: RelayConfig, env: RuntimeEnv) -> AuthProvider:
    if app.auth_mode == "http":
        return HttpAuthProvider(app.auth_url or "", service_key=env.auth_service_key)
    return StaticTokenAuthProvider(app.static_tokens)


def bootstrap_hub(app: RelayConfig, env: RuntimeEnv) -> HubRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers, component="hub")
    store = SqliteRecordStore(_resolve_db_path(app.store_db_path))
    auth = build_auth_provider(app, env)
    hub = ConsultationHub(
        store,
        auth,
        typing_window_seconds=app.typing_window_seconds,
        transition_timeout_seconds=app.transition_timeout_seconds,
    )
    return HubRuntime(hub=hub, store=store, auth=auth, log_descriptions=log_descriptions)


def bootstrap_client(app: RelayConfig, env: RuntimeEnv, *, token: str) -> ClientRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers, component="client")
    manager = ConnectionManager(
        lambda: SocketIOTransport(
            app.server_url,
            socketio_path=app.socketio_path,
            connect_timeout_seconds=app.ack_timeout_seconds,
        ),
        backoff=BackoffPolicy(
            base_seconds=app.reconnect_base_seconds,
            cap_seconds=app.reconnect_cap_seconds,
            max_attempts=app.reconnect_max_attempts,
        ),
        ack_timeout_seconds=app.ack_timeout_seconds,
    )
    attachments: AttachmentStore | None = None
    if app.attachment_url:
        attachments = HttpAttachmentStore(app.attachment_url, service_key=env.attachment_service_key)
    client = ConsultationClient(manager, {"token": token}, attachments=attachments)
    return ClientRuntime(client=client, manager=manager, attachments=attachments, log_descriptions=log_descriptions)
