from __future__ import annotations

import asyncio
import contextlib
import inspect
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from loguru import logger

from consult_relay.attachments import AttachmentStore
from consult_relay.client.ledger import MessageLedger
from consult_relay.errors import BadRequest, Conflict, ConnectionLost, RelayError, TransportLoss, Unauthorized
from consult_relay.events import (
    CMD_BACKFILL,
    CMD_CANCEL,
    CMD_DELETE_MESSAGE,
    CMD_END,
    CMD_JOIN,
    CMD_LEAVE,
    CMD_MARK_ALL_READ,
    CMD_MARK_READ,
    CMD_SEND_MESSAGE,
    CMD_START,
    CMD_TYPING,
    CONNECTION_LOST,
    LIFECYCLE_NAMESPACE,
    MESSAGE_CONFIRMED,
    MESSAGE_DELETED,
    MESSAGE_FAILED,
    MESSAGE_READ,
    MESSAGES_NAMESPACE,
    NEW_MESSAGE,
    PARTICIPANT_JOINED,
    PARTICIPANT_LEFT,
    RATING_UNLOCKED,
    SESSION_CANCELLED,
    SESSION_CONFLICT,
    SESSION_ENDED,
    SESSION_STARTED,
    TYPING_STARTED,
    TYPING_STOPPED,
)
from consult_relay.models import (
    ConsultationSession,
    DeliveryState,
    Identity,
    Message,
    MessageKind,
    Role,
    SessionStatus,
    utc_now,
    validate_outgoing,
)
from consult_relay.transport.channel import WILDCARD, Channel, ConnectionManager

Listener = Callable[[str, dict], Awaitable[None] | None]

_SESSION_EVENTS = {SESSION_STARTED, SESSION_ENDED, SESSION_CANCELLED, SESSION_CONFLICT}

SEND_RETRY_PAUSE_SECONDS = 0.5


@dataclass
class SessionView:
    """What this client currently knows about one joined session."""

    session_id: str
    ledger: MessageLedger
    session: ConsultationSession | None = None
    participants: dict[str, Role] = field(default_factory=dict)
    typing: set[str] = field(default_factory=set)
    rating_unlocked: bool = False
    outbox: deque[Message] = field(default_factory=deque)
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    worker: asyncio.Task | None = None
    backfill: asyncio.Task | None = None
    last_seq: dict[str, tuple[str | None, int]] = field(default_factory=dict)


def _sticky_key(session_id: str) -> str:
    return f"join:{session_id}"


class ConsultationClient:
    """Participant-side API over the lifecycle and message channels.

    Sends are optimistic: ``send_message`` returns a PENDING message at once
    and a per-session outbox delivers it in order, retrying across transport
    loss. Lifecycle commands are never retried.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        credentials: dict[str, Any],
        *,
        attachments: AttachmentStore | None = None,
    ):
        self._manager = manager
        self._credentials = dict(credentials)
        self._attachments = attachments
        self._lifecycle: Channel | None = None
        self._messages: Channel | None = None
        self._views: dict[str, SessionView] = {}
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self.identity: Identity | None = None

    async def connect(self) -> None:
        self._lifecycle = await self._manager.connect(LIFECYCLE_NAMESPACE, self._credentials)
        self._messages = await self._manager.connect(MESSAGES_NAMESPACE, self._credentials)
        for channel in (self._lifecycle, self._messages):
            channel.subscribe(WILDCARD, lambda event, payload, c=channel: self._on_event(c, event, payload))

    async def close(self) -> None:
        for view in list(self._views.values()):
            await self._stop_view(view)
        self._views.clear()
        await self._manager.close()

    def on(self, event: str, listener: Listener) -> Callable[[], None]:
        self._listeners[event].append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners[event].remove(listener)

        return unsubscribe

    # -- presence ---------------------------------------------------------

    async def join(self, session_id: str) -> SessionView:
        view = self._views.get(session_id)
        if view is None:
            view = SessionView(session_id=session_id, ledger=MessageLedger(session_id))
            self._views[session_id] = view

        try:
            ack = await self._channel(LIFECYCLE_NAMESPACE).send_sticky(
                _sticky_key(session_id),
                CMD_JOIN,
                lambda: {"sessionId": session_id},
                on_ack=lambda result: self._apply_lifecycle_snapshot(view, result),
            )
            if ack is not None:
                await self._apply_lifecycle_snapshot(view, ack)

            ack = await self._channel(MESSAGES_NAMESPACE).send_sticky(
                _sticky_key(session_id),
                CMD_JOIN,
                lambda: {"sessionId": session_id, "sinceSeq": view.ledger.last_store_seq},
                on_ack=lambda result: self._apply_messages_snapshot(view, result, resumed=True),
            )
            if ack is not None:
                await self._apply_messages_snapshot(view, ack)
        except RelayError:
            self._channel(LIFECYCLE_NAMESPACE).release_sticky(_sticky_key(session_id))
            self._views.pop(session_id, None)
            raise

        if view.worker is None:
            view.worker = asyncio.create_task(self._drain_outbox(view), name=f"outbox:{session_id}")
        return view

    async def leave(self, session_id: str) -> None:
        view = self._views.pop(session_id, None)
        for namespace in (LIFECYCLE_NAMESPACE, MESSAGES_NAMESPACE):
            channel = self._channel(namespace)
            channel.release_sticky(_sticky_key(session_id))
            # A dropped transport already removed this connection from the hub.
            with contextlib.suppress(TransportLoss):
                await channel.send(CMD_LEAVE, {"sessionId": session_id})
        if view is not None:
            await self._stop_view(view)

    # -- lifecycle --------------------------------------------------------

    async def start(self, session_id: str, *, expected_status: SessionStatus | None = None) -> ConsultationSession:
        return await self._transition(CMD_START, session_id, expected_status)

    async def end(self, session_id: str, *, expected_status: SessionStatus | None = None) -> ConsultationSession:
        return await self._transition(CMD_END, session_id, expected_status)

    async def cancel(self, session_id: str, *, expected_status: SessionStatus | None = None) -> ConsultationSession:
        return await self._transition(CMD_CANCEL, session_id, expected_status)

    async def _transition(
        self,
        command: str,
        session_id: str,
        expected_status: SessionStatus | None,
    ) -> ConsultationSession:
        view = self._view(session_id)
        payload: dict[str, Any] = {"sessionId": session_id}
        if expected_status is not None:
            payload["expectedStatus"] = expected_status.value
        try:
            ack = await self._channel(LIFECYCLE_NAMESPACE).send(command, payload)
        except Conflict as ex:
            authoritative = ex.details.get("session")
            if authoritative:
                view.session = ConsultationSession.from_payload(authoritative)
            raise
        view.session = ConsultationSession.from_payload(ack["session"])
        return view.session

    # -- messages ---------------------------------------------------------

    def send_message(
        self,
        session_id: str,
        body: str,
        kind: MessageKind = MessageKind.TEXT,
        attachment_ref: str | None = None,
        *,
        reply_to: str | None = None,
    ) -> Message:
        """Queue a message and return its PENDING local echo immediately."""
        view = self._view(session_id)
        if self.identity is None:
            raise BadRequest(f"join session {session_id} before sending")
        message = Message(
            correlation_id=uuid4().hex,
            session_id=session_id,
            sender_id=self.identity.user_id,
            kind=kind,
            body=validate_outgoing(kind, body, attachment_ref),
            sent_at=utc_now(),
            attachment_ref=attachment_ref,
            reply_to=reply_to,
        )
        view.ledger.add_local(message)
        view.outbox.append(message)
        view.wakeup.set()
        return message

    async def send_attachment(
        self,
        session_id: str,
        data: bytes,
        filename: str,
        content_type: str,
        *,
        caption: str = "",
    ) -> Message:
        if self._attachments is None:
            raise BadRequest("no attachment store configured")
        url = await self._attachments.upload(data, filename, content_type)
        kind = MessageKind.IMAGE if content_type.startswith("image/") else MessageKind.FILE
        return self.send_message(session_id, caption, kind, url)

    def resend(self, session_id: str, correlation_id: str) -> Message:
        """Retry a FAILED message under a fresh correlation id."""
        view = self._view(session_id)
        failed = view.ledger.get(correlation_id)
        if failed is None or failed.delivery_state != DeliveryState.FAILED:
            raise BadRequest(f"message {correlation_id} has not failed")
        view.ledger.remove(correlation_id)
        return self.send_message(
            session_id, failed.body, failed.kind, failed.attachment_ref, reply_to=failed.reply_to
        )

    async def delete_message(self, session_id: str, message_id: str) -> bool:
        """Returns False when the message was already deleted."""
        ack = await self._channel(MESSAGES_NAMESPACE).send(
            CMD_DELETE_MESSAGE, {"sessionId": session_id, "messageId": message_id}
        )
        self._view(session_id).ledger.remove(message_id)
        return not ack.get("alreadyDeleted", False)

    async def pulse_typing(self, session_id: str) -> bool:
        try:
            ack = await self._channel(MESSAGES_NAMESPACE).send(CMD_TYPING, {"sessionId": session_id})
        except TransportLoss:
            return False
        return bool(ack.get("leadingEdge"))

    async def mark_read(self, session_id: str, message_id: str) -> bool:
        view = self._view(session_id)
        ack = await self._channel(MESSAGES_NAMESPACE).send(
            CMD_MARK_READ, {"sessionId": session_id, "messageId": message_id}
        )
        if self.identity is not None:
            view.ledger.mark_read(message_id, self.identity.user_id, utc_now())
        return bool(ack.get("queued"))

    async def mark_all_read(self, session_id: str) -> int:
        """Mark everything confirmed up to now; returns the store horizon covered."""
        view = self._view(session_id)
        ack = await self._channel(MESSAGES_NAMESPACE).send(CMD_MARK_ALL_READ, {"sessionId": session_id})
        horizon = int(ack.get("horizon") or 0)
        if self.identity is not None:
            now = utc_now()
            for message in view.ledger.timeline():
                if message.store_seq is not None and message.store_seq <= horizon:
                    if message.sender_id != self.identity.user_id:
                        view.ledger.mark_read(message.dedupe_key, self.identity.user_id, now)
        return horizon

    # -- read model -------------------------------------------------------

    def messages(self, session_id: str) -> list[Message]:
        return self._view(session_id).ledger.timeline()

    def unread_count(self, session_id: str) -> int:
        """Messages from other participants this user has not marked read."""
        view = self._view(session_id)
        if self.identity is None:
            return 0
        return view.ledger.unread_count(self.identity.user_id)

    def session(self, session_id: str) -> ConsultationSession | None:
        return self._view(session_id).session

    def participants(self, session_id: str) -> dict[str, Role]:
        return dict(self._view(session_id).participants)

    def typing_users(self, session_id: str) -> set[str]:
        return set(self._view(session_id).typing)

    # -- internals --------------------------------------------------------

    def _channel(self, namespace: str) -> Channel:
        channel = self._lifecycle if namespace == LIFECYCLE_NAMESPACE else self._messages
        if channel is None:
            raise TransportLoss("client is not connected")
        return channel

    def _view(self, session_id: str) -> SessionView:
        view = self._views.get(session_id)
        if view is None:
            raise BadRequest(f"session {session_id} has not been joined")
        return view

    async def _apply_lifecycle_snapshot(self, view: SessionView, ack: dict) -> None:
        you = ack.get("you") or {}
        if you:
            self.identity = Identity(user_id=str(you["userId"]), role=Role(you["role"]))
        view.session = ConsultationSession.from_payload(ack["session"])
        view.rating_unlocked = view.session.rating_unlocked and self._is_patient(view)
        view.participants = {p["userId"]: Role(p["role"]) for p in ack.get("participants") or []}

    async def _apply_messages_snapshot(self, view: SessionView, ack: dict, *, resumed: bool = False) -> None:
        you = ack.get("you") or {}
        if you and self.identity is None:
            self.identity = Identity(user_id=str(you["userId"]), role=Role(you["role"]))
        view.typing = set(ack.get("typing") or [])
        fresh = view.ledger.merge_backfill([Message.from_payload(p) for p in ack.get("messages") or []])
        for message in fresh:
            await self._notify(NEW_MESSAGE, message.to_payload())
        if resumed:
            self._requeue_unconfirmed(view)

    def _requeue_unconfirmed(self, view: SessionView) -> None:
        # Sent before the drop but never confirmed; the hub and store dedupe by correlation id.
        queued = {m.correlation_id for m in view.outbox}
        stale = [
            m
            for m in view.ledger.pending()
            if m.correlation_id not in queued and self.identity is not None and m.sender_id == self.identity.user_id
        ]
        if stale:
            logger.info(f"Session {view.session_id}: resending {len(stale)} unconfirmed message(s)")
            view.outbox.extendleft(reversed(stale))
            view.wakeup.set()

    def _is_patient(self, view: SessionView) -> bool:
        return self.identity is not None and self.identity.role == Role.PATIENT

    async def _drain_outbox(self, view: SessionView) -> None:
        while True:
            while not view.outbox:
                view.wakeup.clear()
                await view.wakeup.wait()
            message = view.outbox[0]
            try:
                channel = self._channel(MESSAGES_NAMESPACE)
                await channel.wait_ready()
                ack = await channel.send(CMD_SEND_MESSAGE, message.to_payload())
            except (ConnectionLost, Unauthorized) as ex:
                await self._fail_outbox(view, ex)
                return
            except TransportLoss as ex:
                logger.debug(f"Session {view.session_id}: send {message.correlation_id} deferred: {ex.message}")
                await asyncio.sleep(SEND_RETRY_PAUSE_SECONDS)
                continue
            except RelayError as ex:
                view.outbox.popleft()
                if view.ledger.fail(message.correlation_id) is not None:
                    await self._notify(
                        MESSAGE_FAILED,
                        {"sessionId": view.session_id, "correlationId": message.correlation_id, "error": ex.to_payload()},
                    )
                continue
            view.outbox.popleft()
            if ack.get("duplicate") and ack.get("serverId") and message.delivery_state == DeliveryState.PENDING:
                # Stored earlier but the confirmation never reached us.
                self._schedule_backfill(view, 0)

    async def _fail_outbox(self, view: SessionView, error: RelayError) -> None:
        while view.outbox:
            message = view.outbox.popleft()
            if view.ledger.fail(message.correlation_id) is not None:
                await self._notify(
                    MESSAGE_FAILED,
                    {"sessionId": view.session_id, "correlationId": message.correlation_id, "error": error.to_payload()},
                )

    async def _stop_view(self, view: SessionView) -> None:
        for task in (view.worker, view.backfill):
            if task is None:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        view.worker = None
        view.backfill = None

    def _schedule_backfill(self, view: SessionView, since_seq: int) -> None:
        if view.backfill is not None and not view.backfill.done():
            return
        view.backfill = asyncio.create_task(self._run_backfill(view, since_seq), name=f"backfill:{view.session_id}")

    async def _run_backfill(self, view: SessionView, since_seq: int) -> None:
        try:
            ack = await self._channel(MESSAGES_NAMESPACE).send(
                CMD_BACKFILL, {"sessionId": view.session_id, "sinceSeq": since_seq}
            )
        except RelayError as ex:
            logger.warning(f"Session {view.session_id}: backfill failed: {ex.code} {ex.message}")
            return
        fresh = view.ledger.merge_backfill([Message.from_payload(p) for p in ack.get("messages") or []])
        logger.debug(f"Session {view.session_id}: backfill since {since_seq} added {len(fresh)} message(s)")
        for message in fresh:
            await self._notify(NEW_MESSAGE, message.to_payload())

    def _sequence_gap(self, view: SessionView, channel: Channel, payload: dict) -> bool:
        seq = payload.get("seq")
        if not isinstance(seq, int):
            return False
        connection_id, last = view.last_seq.get(channel.namespace, (None, 0))
        if connection_id != channel.connection_id:
            last = 0
        view.last_seq[channel.namespace] = (channel.connection_id, seq)
        return seq > last + 1

    async def _on_event(self, channel: Channel, event: str, payload: dict) -> None:
        if event == CONNECTION_LOST:
            logger.error(f"{channel.namespace} gave up reconnecting")
            for view in self._views.values():
                view.typing.clear()
            await self._notify(event, {**payload, "namespace": channel.namespace})
            return

        view = self._views.get(str(payload.get("sessionId") or ""))
        if view is None:
            await self._notify(event, {**payload, "namespace": channel.namespace})
            return

        if self._sequence_gap(view, channel, payload):
            logger.warning(f"Session {view.session_id}: event gap on {channel.namespace}, resyncing")
            if channel.namespace == MESSAGES_NAMESPACE:
                self._schedule_backfill(view, 0)
            else:
                asyncio.create_task(self._resync_lifecycle(view))

        if not self._apply(view, event, payload):
            return
        await self._notify(event, payload)

    async def _resync_lifecycle(self, view: SessionView) -> None:
        try:
            ack = await self._channel(LIFECYCLE_NAMESPACE).send(CMD_JOIN, {"sessionId": view.session_id})
        except RelayError as ex:
            logger.warning(f"Session {view.session_id}: lifecycle resync failed: {ex.code}")
            return
        await self._apply_lifecycle_snapshot(view, ack)

    def _apply(self, view: SessionView, event: str, payload: dict) -> bool:
        """Fold one hub event into the view. Returns False for duplicates the UI should not see."""
        if event in _SESSION_EVENTS:
            view.session = ConsultationSession.from_payload(payload["session"])
        elif event == RATING_UNLOCKED:
            view.rating_unlocked = True
        elif event == PARTICIPANT_JOINED:
            view.participants[payload["userId"]] = Role(payload["role"])
        elif event == PARTICIPANT_LEFT:
            view.participants.pop(payload["userId"], None)
            view.typing.discard(payload["userId"])
        elif event == TYPING_STARTED:
            view.typing.add(payload["userId"])
        elif event == TYPING_STOPPED:
            view.typing.discard(payload["userId"])
        elif event == NEW_MESSAGE:
            return view.ledger.receive(Message.from_payload(payload))
        elif event == MESSAGE_CONFIRMED:
            seq = payload.get("seqInStore")
            confirmed = view.ledger.confirm(payload["correlationId"], payload["serverId"], seq)
            if confirmed is None:
                # Sent from another device of ours; fetch it from the store.
                self._schedule_backfill(view, max(0, min(view.ledger.last_store_seq, int(seq or 1) - 1)))
        elif event == MESSAGE_FAILED:
            return view.ledger.fail(payload["correlationId"]) is not None
        elif event == MESSAGE_READ:
            return view.ledger.mark_read(payload["messageId"], payload["readerId"], payload["at"])
        elif event == MESSAGE_DELETED:
            return view.ledger.remove(payload["messageId"]) is not None
        return True

    async def _notify(self, event: str, payload: dict) -> None:
        for listener in list(self._listeners.get(event, ())) + list(self._listeners.get(WILDCARD, ())):
            try:
                result = listener(event, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as ex:
                logger.exception(f"Listener for {event} failed: {ex}")
