from __future__ import annotations

from typing import Any

import socketio
from loguru import logger

from consult_relay.errors import TransportLoss, Unauthorized
from consult_relay.transport.base import EventCallback, LostCallback

_AUTH_REASONS = {"unauthorized", "jwt_expired"}


def _refusal_reason(data: Any) -> str:
    if isinstance(data, dict):
        return str(data.get("message", "")).strip()
    if isinstance(data, str):
        return data.strip()
    return ""


class SocketIOTransport:
    """python-socketio client for a hub served by ``consult_relay.server``.

    Built-in reconnection is disabled; the owning channel decides when to
    dial again.
    """

    def __init__(self, url: str, *, socketio_path: str = "socket.io", connect_timeout_seconds: float = 10.0):
        self._url = url
        self._socketio_path = socketio_path
        self._connect_timeout_seconds = connect_timeout_seconds
        self._client = socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)
        self._namespace: str | None = None
        self._closing = False

    async def open(
        self,
        namespace: str,
        credentials: dict[str, Any],
        on_event: EventCallback,
        on_lost: LostCallback,
    ) -> str:
        refusal: dict[str, str] = {}

        async def _connect_error(data: Any = None) -> None:
            refusal["reason"] = _refusal_reason(data)

        async def _disconnect(*_args: Any) -> None:
            if not self._closing:
                await on_lost()

        async def _catch_all(event: str, data: Any = None) -> None:
            await on_event(event, data if isinstance(data, dict) else {})

        self._client.on("connect_error", _connect_error, namespace=namespace)
        self._client.on("disconnect", _disconnect, namespace=namespace)
        self._client.on("*", _catch_all, namespace=namespace)

        try:
            await self._client.connect(
                self._url,
                auth=dict(credentials),
                namespaces=[namespace],
                socketio_path=self._socketio_path,
                transports=["websocket"],
                wait_timeout=self._connect_timeout_seconds,
            )
        except socketio.exceptions.ConnectionError as ex:
            reason = refusal.get("reason") or str(ex)
            if reason in _AUTH_REASONS:
                raise Unauthorized(reason) from ex
            raise TransportLoss(f"connect to {self._url}{namespace} failed: {reason}") from ex

        self._namespace = namespace
        sid = self._client.get_sid(namespace) or ""
        logger.debug(f"Socket.IO connected to {self._url}{namespace} (sid={sid})")
        return sid

    async def call(self, event: str, payload: dict, *, timeout: float) -> dict:
        if self._namespace is None or not self._client.connected:
            raise TransportLoss("socket is not connected")
        try:
            ack = await self._client.call(event, payload, namespace=self._namespace, timeout=timeout)
        except socketio.exceptions.TimeoutError as ex:
            raise TransportLoss(f"no ack for {event} within {timeout:.1f}s") from ex
        except socketio.exceptions.SocketIOError as ex:
            raise TransportLoss(f"{event} failed: {ex}") from ex
        return ack if isinstance(ack, dict) else {"ok": False, "error": {"code": "server_error"}}

    async def close(self) -> None:
        self._closing = True
        if self._client.connected:
            await self._client.disconnect()
