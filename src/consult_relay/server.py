"""Socket.IO front for the consultation hub.

Each namespace maps to its own ``AsyncNamespace``. Clients authenticate in
the handshake with ``auth: {token}`` (or ``?token=`` in the query string);
every other event is a hub command whose return value is the ack.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import parse_qs

import socketio
from aiohttp import web
from loguru import logger
from socketio.exceptions import ConnectionRefusedError

from consult_relay.auth import extract_token
from consult_relay.errors import Unauthorized
from consult_relay.events import NAMESPACES, failed
from consult_relay.hub.hub import ConsultationHub

_LIFECYCLE_EVENTS = {"connect", "disconnect"}


def _token_from(environ: dict[str, Any], auth: Any | None) -> str | None:
    token = extract_token(auth if isinstance(auth, dict) else None)
    if token:
        return token
    query_string = environ.get("QUERY_STRING", "") if isinstance(environ, dict) else ""
    if isinstance(query_string, (bytes, bytearray)):
        query_string = query_string.decode(errors="ignore")
    token = parse_qs(str(query_string)).get("token", [None])[0]
    return token if isinstance(token, str) and token else None


class HubNamespace(socketio.AsyncNamespace):
    def __init__(self, namespace: str, hub: ConsultationHub):
        super().__init__(namespace)
        self._hub = hub
        self._connections: dict[str, str] = {}

    async def on_connect(self, sid: str, environ: dict[str, Any], auth: Any | None = None):
        token = _token_from(environ, auth)
        if not token:
            raise ConnectionRefusedError("unauthorized")

        async def sink(event: str, payload: dict) -> None:
            await self.emit(event, payload, to=sid)

        try:
            connection = await self._hub.connect(self.namespace, {"token": token}, sink)
        except Unauthorized as exc:
            reason = "jwt_expired" if exc.message == "jwt_expired" else "unauthorized"
            raise ConnectionRefusedError(reason) from exc
        except Exception as exc:
            logger.exception(f"Socket.IO connect error on {self.namespace}: {exc}")
            raise ConnectionRefusedError("server_error") from exc
        self._connections[sid] = connection.connection_id

    async def on_disconnect(self, sid: str, *args: Any) -> None:
        connection_id = self._connections.pop(sid, None)
        if connection_id is not None:
            await self._hub.disconnect(connection_id)

    async def trigger_event(self, event: str, *args: Any):
        if event in _LIFECYCLE_EVENTS:
            return await super().trigger_event(event, *args)
        sid = args[0]
        payload = args[1] if len(args) > 1 else {}
        connection_id = self._connections.get(sid)
        if connection_id is None:
            return failed(Unauthorized("connection is not authenticated").to_payload())
        return await self._hub.dispatch(connection_id, event, payload)


def create_sio(hub: ConsultationHub) -> socketio.AsyncServer:
    sio = socketio.AsyncServer(
        async_mode="aiohttp",
        cors_allowed_origins="*",
        logger=False,
        engineio_logger=False,
    )
    for namespace in NAMESPACES:
        sio.register_namespace(HubNamespace(namespace, hub))
    return sio


def create_app(hub: ConsultationHub, *, socketio_path: str = "socket.io") -> web.Application:
    app = web.Application()
    sio = create_sio(hub)
    sio.attach(app, socketio_path=socketio_path)

    async def _on_startup(_app: web.Application) -> None:
        await hub.start()

    async def _on_cleanup(_app: web.Application) -> None:
        await hub.close()

    app.on_startup.append(_on_startup)
    app.on_cleanup.append(_on_cleanup)
    return app
