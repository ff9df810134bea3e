from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable, Iterable

from loguru import logger

from consult_relay.events import EVENT_NAMESPACE, DeliverySequencer, stamp
from consult_relay.models import Identity

EventSink = Callable[[str, dict], Awaitable[None]]


class HubConnection:
    """One authenticated client connection in one namespace.

    Outgoing events drain through a private queue so delivery order to this
    connection always matches enqueue order.
    """

    def __init__(self, connection_id: str, identity: Identity, namespace: str, sink: EventSink):
        self.connection_id = connection_id
        self.identity = identity
        self.namespace = namespace
        self.sessions: set[str] = set()
        self._sink = sink
        self._sequencer = DeliverySequencer()
        self._outbox: asyncio.Queue[tuple[str, dict]] = asyncio.Queue()
        self._task: asyncio.Task | None = None

    @property
    def user_id(self) -> str:
        return self.identity.user_id

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._drain(), name=f"connection:{self.connection_id}")

    def enqueue(self, session_id: str, event: str, payload: dict) -> None:
        seq = self._sequencer.next(session_id)
        self._outbox.put_nowait((event, stamp(payload, session_id, seq)))

    async def close(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _drain(self) -> None:
        while True:
            event, payload = await self._outbox.get()
            try:
                await self._sink(event, payload)
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                # A dead transport surfaces as a disconnect; nothing to retry here.
                logger.warning(f"Delivery of {event} to {self.connection_id} failed: {ex}")


class Fanout:
    def __init__(self):
        self._connections: dict[str, HubConnection] = {}

    def register(self, connection: HubConnection) -> None:
        self._connections[connection.connection_id] = connection

    def unregister(self, connection_id: str) -> HubConnection | None:
        return self._connections.pop(connection_id, None)

    def get(self, connection_id: str) -> HubConnection | None:
        return self._connections.get(connection_id)

    def all(self) -> list[HubConnection]:
        return list(self._connections.values())

    def broadcast(
        self,
        state,
        event: str,
        payload: dict,
        *,
        exclude_user: str | None = None,
        only_users: Iterable[str] | None = None,
    ) -> int:
        """Deliver to every joined connection of the event's namespace. Returns recipient count."""
        namespace = EVENT_NAMESPACE[event]
        allowed = set(only_users) if only_users is not None else None
        delivered = 0
        for participant in state.participants.values():
            if exclude_user is not None and participant.user_id == exclude_user:
                continue
            if allowed is not None and participant.user_id not in allowed:
                continue
            for connection_id in sorted(participant.connection_ids):
                connection = self._connections.get(connection_id)
                if connection is None or connection.namespace != namespace:
                    continue
                connection.enqueue(state.session_id, event, payload)
                delivered += 1
        logger.debug(f"Session {state.session_id}: {event} -> {delivered} connection(s)")
        return delivered
