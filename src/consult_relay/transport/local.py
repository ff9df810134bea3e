from __future__ import annotations

import asyncio
import contextlib
from typing import Any

from loguru import logger

from consult_relay.errors import TransportLoss
from consult_relay.hub.hub import ConsultationHub
from consult_relay.transport.base import EventCallback, LostCallback


class LocalTransport:
    """Binds a channel directly to a hub running in the same event loop."""

    def __init__(self, hub: ConsultationHub, link: LocalLink | None = None):
        self._hub = hub
        self._link = link
        self._connection_id: str | None = None
        self._on_lost: LostCallback | None = None
        self._severed = False

    @property
    def connection_id(self) -> str | None:
        return self._connection_id

    async def open(
        self,
        namespace: str,
        credentials: dict[str, Any],
        on_event: EventCallback,
        on_lost: LostCallback,
    ) -> str:
        if self._link is not None and self._link.refusals > 0:
            self._link.refusals -= 1
            self._forget()
            raise TransportLoss("hub unreachable")

        async def sink(event: str, payload: dict) -> None:
            if not self._severed:
                await on_event(event, payload)

        try:
            connection = await self._hub.connect(namespace, credentials, sink)
        except Exception:
            self._forget()
            raise
        self._connection_id = connection.connection_id
        self._on_lost = on_lost
        return connection.connection_id

    async def call(self, event: str, payload: dict, *, timeout: float) -> dict:
        if self._severed or self._connection_id is None:
            raise TransportLoss("local link is down")
        try:
            return await asyncio.wait_for(self._hub.dispatch(self._connection_id, event, payload), timeout)
        except asyncio.TimeoutError as ex:
            raise TransportLoss(f"no ack for {event} within {timeout:.1f}s") from ex

    async def close(self) -> None:
        self._severed = True
        self._forget()
        if self._connection_id is not None:
            await self._hub.disconnect(self._connection_id)

    def _forget(self) -> None:
        if self._link is not None:
            self._link.forget(self)

    async def sever(self) -> None:
        """Drop the link as a network failure would: the hub sees a disconnect, the channel sees a loss."""
        if self._severed:
            return
        self._severed = True
        self._forget()
        if self._connection_id is not None:
            await self._hub.disconnect(self._connection_id)
        if self._on_lost is not None:
            await self._on_lost()


class LocalLink:
    """Transport factory for in-process hubs; keeps handles to live transports so a link can be cut."""

    def __init__(self, hub: ConsultationHub):
        self._hub = hub
        self.transports: list[LocalTransport] = []
        self.dials = 0
        self.refusals = 0

    def __call__(self) -> LocalTransport:
        transport = LocalTransport(self._hub, self)
        self.transports.append(transport)
        self.dials += 1
        return transport

    def forget(self, transport: LocalTransport) -> None:
        with contextlib.suppress(ValueError):
            self.transports.remove(transport)

    async def sever_all(self, *, refusals: int = 0) -> None:
        self.refusals = refusals
        live = [t for t in self.transports if t.connection_id is not None]
        logger.debug(f"Severing {len(live)} local transport(s)")
        for transport in live:
            with contextlib.suppress(TransportLoss):
                await transport.sever()
