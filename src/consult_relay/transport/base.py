from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

EventCallback = Callable[[str, dict], Awaitable[None]]
LostCallback = Callable[[], Awaitable[None]]


@runtime_checkable
class Transport(Protocol):
    """One physical connection. A new instance is created for every (re)connect."""

    async def open(
        self,
        namespace: str,
        credentials: dict[str, Any],
        on_event: EventCallback,
        on_lost: LostCallback,
    ) -> str:
        """Connect and authenticate, returning the connection id.

        Raises ``Unauthorized`` for rejected credentials and ``TransportLoss``
        for anything that may succeed on retry.
        """
        ...

    async def call(self, event: str, payload: dict, *, timeout: float) -> dict:
        """Send a command and wait for its ack; ``TransportLoss`` if the link is gone."""
        ...

    async def close(self) -> None: ...


TransportFactory = Callable[[], Transport]
