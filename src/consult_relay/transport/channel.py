from __future__ import annotations

import asyncio
import contextlib
import inspect
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from consult_relay.errors import ConnectionLost, RelayError, TransportLoss, Unauthorized, error_from_payload
from consult_relay.events import CONNECTION_LOST, RECONNECTED
from consult_relay.transport.base import Transport, TransportFactory

EventHandler = Callable[[str, dict], Awaitable[None] | None]
Unsubscribe = Callable[[], None]
ReconnectListener = Callable[[], Awaitable[None]]
AckHandler = Callable[[dict], Awaitable[None]]

WILDCARD = "*"


@dataclass(frozen=True)
class BackoffPolicy:
    base_seconds: float = 1.0
    cap_seconds: float = 30.0
    max_attempts: int = 10


@dataclass
class _StickyCommand:
    event: str
    make_payload: Callable[[], dict]
    on_ack: AckHandler | None = None


def _on_retry(retry_state) -> None:
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(f"Connect attempt {attempt} failed ({exc}); retrying in {wait:.2f}s")


class Channel:
    """A long-lived event channel for one namespace.

    Survives transport loss: a fresh transport is dialled with full-jitter
    backoff and sticky commands are replayed before the channel reports
    ready again.
    """

    def __init__(
        self,
        namespace: str,
        credentials: dict[str, Any],
        transport_factory: TransportFactory,
        *,
        backoff: BackoffPolicy | None = None,
        ack_timeout_seconds: float = 10.0,
    ):
        self.namespace = namespace
        self._credentials = dict(credentials)
        self._factory = transport_factory
        self._backoff = backoff or BackoffPolicy()
        self._ack_timeout_seconds = ack_timeout_seconds
        self._transport: Transport | None = None
        self._connection_id: str | None = None
        self._generation = 0
        self._ready = asyncio.Event()
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._sticky: dict[str, _StickyCommand] = {}
        self._reconnect_listeners: list[ReconnectListener] = []
        self._reconnect_task: asyncio.Task | None = None
        self._reconnecting = False
        self._lost: RelayError | None = None
        self._closed = False

    @property
    def connection_id(self) -> str | None:
        return self._connection_id

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set() and self._lost is None

    async def open(self) -> None:
        await self._connect_with_backoff()
        self._ready.set()

    def subscribe(self, event: str, handler: EventHandler) -> Unsubscribe:
        self._handlers[event].append(handler)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._handlers[event].remove(handler)

        return unsubscribe

    def on_reconnect(self, listener: ReconnectListener) -> Unsubscribe:
        self._reconnect_listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._reconnect_listeners.remove(listener)

        return unsubscribe

    async def send(self, event: str, payload: dict) -> dict:
        """Send a command and return the ack body; a failed ack raises its ``RelayError``."""
        if self._lost is not None:
            raise self._lost
        if self._closed:
            raise TransportLoss("channel is closed")
        if not self._ready.is_set():
            raise TransportLoss(f"{self.namespace} is reconnecting")
        return await self._call(event, payload)

    async def wait_ready(self) -> None:
        """Block until the channel is usable; raises once reconnects are exhausted."""
        await self._ready.wait()
        if self._lost is not None:
            raise self._lost

    async def send_sticky(
        self,
        key: str,
        event: str,
        make_payload: Callable[[], dict],
        on_ack: AckHandler | None = None,
    ) -> dict | None:
        """Send now and again after every reconnect until released.

        Returns ``None`` when the channel is down; the command then goes out
        with the next replay.
        """
        self._sticky[key] = _StickyCommand(event, make_payload, on_ack)
        try:
            return await self.send(event, make_payload())
        except TransportLoss:
            logger.debug(f"{event} queued until {self.namespace} reconnects")
            return None
        except RelayError:
            self._sticky.pop(key, None)
            raise

    def release_sticky(self, key: str) -> bool:
        return self._sticky.pop(key, None) is not None

    async def close(self) -> None:
        self._closed = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reconnect_task
            self._reconnect_task = None
        transport, self._transport = self._transport, None
        self._ready.clear()
        if transport is not None:
            await transport.close()

    async def _call(self, event: str, payload: dict) -> dict:
        transport = self._transport
        if transport is None:
            raise TransportLoss(f"{self.namespace} has no transport")
        ack = await transport.call(event, payload, timeout=self._ack_timeout_seconds)
        if not isinstance(ack, dict):
            raise TransportLoss(f"malformed ack for {event}")
        if ack.get("ok"):
            return {k: v for k, v in ack.items() if k != "ok"}
        raise error_from_payload(ack.get("error"))

    async def _connect_with_backoff(self, *, replay: bool = False) -> None:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransportLoss),
            wait=wait_random_exponential(multiplier=self._backoff.base_seconds, max=self._backoff.cap_seconds),
            stop=stop_after_attempt(self._backoff.max_attempts),
            before_sleep=_on_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._dial()
                    if replay:
                        await self._replay()
        except TransportLoss as ex:
            raise ConnectionLost(
                f"gave up on {self.namespace} after {self._backoff.max_attempts} attempts: {ex.message}"
            ) from ex

    async def _dial(self) -> None:
        transport = self._factory()
        self._generation += 1
        generation = self._generation

        async def on_event(event: str, payload: dict) -> None:
            if generation == self._generation:
                await self._dispatch(event, payload)

        async def on_lost() -> None:
            await self._handle_lost(generation)

        self._connection_id = await transport.open(self.namespace, self._credentials, on_event, on_lost)
        self._transport = transport
        logger.info(f"Channel {self.namespace} connected ({self._connection_id})")

    async def _replay(self) -> None:
        """Re-send sticky commands on a fresh transport; a lost ack drops the transport and raises."""
        for key, sticky in list(self._sticky.items()):
            try:
                result = await self._call(sticky.event, sticky.make_payload())
            except TransportLoss as ex:
                logger.warning(f"Replay of {key} interrupted: {ex.message}")
                await self._drop_transport()
                raise
            except RelayError as ex:
                logger.warning(f"Replay of {key} rejected: {ex.code} {ex.message}")
                self._sticky.pop(key, None)
                continue
            if sticky.on_ack is not None:
                try:
                    await sticky.on_ack(result)
                except Exception as ex:
                    logger.exception(f"Ack handler for {key} on {self.namespace} failed: {ex}")
        if self._transport is None:
            raise TransportLoss(f"{self.namespace} dropped during replay")

    async def _drop_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()

    async def _handle_lost(self, generation: int) -> None:
        if self._closed or generation != self._generation or self._transport is None:
            return
        self._transport = None
        if self._reconnecting:
            # The replay in progress fails on the missing transport and dials again.
            return
        self._ready.clear()
        logger.warning(f"Channel {self.namespace} lost its transport; reconnecting")
        self._reconnect_task = asyncio.create_task(self._reconnect(), name=f"reconnect:{self.namespace}")

    async def _reconnect(self) -> None:
        self._reconnecting = True
        try:
            await self._connect_with_backoff(replay=True)
        except RelayError as ex:
            self._reconnecting = False
            await self._give_up(ex)
            return
        self._reconnecting = False

        self._ready.set()
        for listener in list(self._reconnect_listeners):
            try:
                await listener()
            except Exception as ex:
                logger.exception(f"Reconnect listener on {self.namespace} failed: {ex}")
        await self._dispatch(RECONNECTED, {"connectionId": self._connection_id})

    async def _give_up(self, error: RelayError) -> None:
        self._lost = error
        self._ready.set()
        logger.error(f"Channel {self.namespace} is down for good: {error.code} {error.message}")
        await self._dispatch(CONNECTION_LOST, {"error": error.to_payload()})

    async def _dispatch(self, event: str, payload: dict) -> None:
        for handler in list(self._handlers.get(event, ())) + list(self._handlers.get(WILDCARD, ())):
            try:
                result = handler(event, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as ex:
                logger.exception(f"Handler for {event} on {self.namespace} failed: {ex}")


class ConnectionManager:
    """Owns the channels of one calling application; pass it wherever a channel is needed."""

    def __init__(
        self,
        transport_factory: TransportFactory,
        *,
        backoff: BackoffPolicy | None = None,
        ack_timeout_seconds: float = 10.0,
    ):
        self._factory = transport_factory
        self._backoff = backoff or BackoffPolicy()
        self._ack_timeout_seconds = ack_timeout_seconds
        self._channels: list[Channel] = []

    async def connect(self, namespace: str, credentials: dict[str, Any]) -> Channel:
        channel = Channel(
            namespace,
            credentials,
            self._factory,
            backoff=self._backoff,
            ack_timeout_seconds=self._ack_timeout_seconds,
        )
        await channel.open()
        self._channels.append(channel)
        return channel

    async def close(self) -> None:
        channels, self._channels = self._channels, []
        for channel in channels:
            await channel.close()
