from __future__ import annotations

import asyncio
import contextlib

from loguru import logger

from consult_relay.errors import BadRequest, InvalidTransition, NotFound
from consult_relay.events import MESSAGE_CONFIRMED, MESSAGE_DELETED, MESSAGE_FAILED, NEW_MESSAGE
from consult_relay.hub.fanout import Fanout
from consult_relay.hub.state import MessageMeta, SessionState
from consult_relay.models import Message, MessageKind, utc_now, validate_outgoing
from consult_relay.store.base import DurableStore


def message_from_command(session_id: str, sender_id: str, payload: dict) -> Message:
    correlation_id = str(payload.get("correlationId") or "").strip()
    if not correlation_id:
        raise BadRequest("correlationId is required")
    try:
        kind = MessageKind(str(payload.get("kind", MessageKind.TEXT.value)).upper())
    except ValueError as ex:
        raise BadRequest(f"unknown message kind {payload.get('kind')!r}") from ex
    attachment_ref = payload.get("attachmentRef")
    reply_to = payload.get("replyTo")
    if reply_to is not None and (not isinstance(reply_to, str) or not reply_to.strip()):
        raise BadRequest("replyTo must be a message id")
    body = validate_outgoing(kind, str(payload.get("body", "")), attachment_ref)
    return Message(
        correlation_id=correlation_id,
        session_id=session_id,
        sender_id=sender_id,
        kind=kind,
        body=body,
        sent_at=str(payload.get("sentAt") or utc_now()),
        attachment_ref=attachment_ref,
        reply_to=reply_to.strip() if reply_to else None,
    )


class MessageRelay:
    """Live fan-out plus an ordered, per-session durable write queue.

    Recipients see ``new-message`` right away; ``message-confirmed`` follows
    once the store assigns a server id. A failed write is reported to the
    sender's connections only.
    """

    def __init__(self, store: DurableStore, fanout: Fanout):
        self._store = store
        self._fanout = fanout
        self._queues: dict[str, asyncio.Queue[Message]] = {}
        self._writers: dict[str, asyncio.Task] = {}

    def send(self, state: SessionState, sender_id: str, payload: dict) -> dict:
        if state.session.status.is_terminal:
            raise InvalidTransition(f"session {state.session_id} is {state.session.status.value}")
        message = message_from_command(state.session_id, sender_id, payload)
        if message.correlation_id in state.correlations:
            server_id = state.correlations[message.correlation_id]
            logger.debug(f"Session {state.session_id}: duplicate send {message.correlation_id}")
            return {"correlationId": message.correlation_id, "serverId": server_id, "duplicate": True}

        state.correlations[message.correlation_id] = None
        if message.reply_to is None or message.reply_to in state.messages:
            return self._relay(state, message)
        return self._check_reply(state, message)

    def _relay(self, state: SessionState, message: Message) -> dict:
        live = self._fanout.broadcast(state, NEW_MESSAGE, message.to_payload(), exclude_user=message.sender_id)
        self._writer_queue(state).put_nowait(message)
        return {"correlationId": message.correlation_id, "serverId": None, "liveRecipients": live}

    def _check_reply(self, state: SessionState, message: Message) -> asyncio.Future:
        # The read model only knows messages confirmed or backfilled since it was loaded.
        state.lookups_in_flight += 1
        result: asyncio.Future = asyncio.get_running_loop().create_future()
        task = asyncio.create_task(self._store.get_message(message.reply_to))
        task.add_done_callback(lambda done: state.post(lambda: self._reply_checked(state, message, done, result)))
        return result

    def _reply_checked(
        self, state: SessionState, message: Message, done: asyncio.Task, result: asyncio.Future
    ) -> None:
        state.lookups_in_flight -= 1
        error = done.exception() if not done.cancelled() else NotFound("replyTo lookup cancelled")
        if error is None:
            target = done.result()
            if target is None or target.session_id != state.session_id:
                error = BadRequest(f"replyTo {message.reply_to} is not a message in session {state.session_id}")
            else:
                state.messages.setdefault(
                    target.server_id, MessageMeta(sender_id=target.sender_id, deleted=target.deleted)
                )
        if error is None and state.session.status.is_terminal:
            error = InvalidTransition(f"session {state.session_id} is {state.session.status.value}")
        if error is not None:
            state.correlations.pop(message.correlation_id, None)
            if not result.done():
                result.set_exception(error)
            return
        if not result.done():
            result.set_result(self._relay(state, message))

    def delete(self, state: SessionState, message_id: str, actor_id: str) -> asyncio.Future | dict:
        meta = state.messages.get(message_id)
        if (meta is not None and meta.deleted) or message_id in state.deletes_in_flight:
            return {"messageId": message_id, "alreadyDeleted": True}

        state.deletes_in_flight.add(message_id)
        result: asyncio.Future = asyncio.get_running_loop().create_future()
        task = asyncio.create_task(self._delete(state.session_id, message_id, actor_id))
        task.add_done_callback(lambda done: state.post(lambda: self._deleted(state, message_id, done, result)))
        return result

    def backfill(self, state: SessionState, since_seq: int = 0) -> asyncio.Future:
        """Read everything the store holds after ``since_seq``; the single source for missed messages."""
        state.lookups_in_flight += 1
        result: asyncio.Future = asyncio.get_running_loop().create_future()
        task = asyncio.create_task(self._store.backfill_messages(state.session_id, max(0, since_seq)))
        task.add_done_callback(lambda done: state.post(lambda: self._backfilled(state, done, result)))
        return result

    def retire(self, session_id: str) -> None:
        """Drop the writer of a session whose queue is drained."""
        self._queues.pop(session_id, None)
        task = self._writers.pop(session_id, None)
        if task is not None:
            task.cancel()

    @property
    def writer_sessions(self) -> list[str]:
        return sorted(self._writers)

    async def close(self) -> None:
        for task in self._writers.values():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._writers.clear()
        self._queues.clear()

    def _writer_queue(self, state: SessionState) -> asyncio.Queue[Message]:
        queue = self._queues.get(state.session_id)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[state.session_id] = queue
            self._writers[state.session_id] = asyncio.create_task(
                self._write_loop(state, queue),
                name=f"message-writer:{state.session_id}",
            )
        return queue

    async def _write_loop(self, state: SessionState, queue: asyncio.Queue[Message]) -> None:
        while True:
            message = await queue.get()
            try:
                server_id, seq = await self._store.append_message(state.session_id, message)
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                logger.warning(
                    f"Session {state.session_id}: durable write failed for {message.correlation_id}: {ex}"
                )
                state.post(lambda m=message, e=ex: self._failed(state, m, e))
                continue
            state.post(lambda m=message, s=server_id, n=seq: self._confirmed(state, m, s, n))

    def _backfilled(self, state: SessionState, done: asyncio.Task, result: asyncio.Future) -> None:
        state.lookups_in_flight -= 1
        error = done.exception() if not done.cancelled() else NotFound("backfill cancelled")
        if error is not None:
            if not result.done():
                result.set_exception(error)
            return
        messages: list[Message] = done.result()
        for message in messages:
            state.messages.setdefault(message.server_id, MessageMeta(sender_id=message.sender_id))
            state.correlations.setdefault(message.correlation_id, message.server_id)
            state.message_horizon = max(state.message_horizon, message.store_seq or 0)
        if not result.done():
            result.set_result([message.to_payload() for message in messages])

    def _confirmed(self, state: SessionState, message: Message, server_id: str, seq: int) -> None:
        state.correlations[message.correlation_id] = server_id
        state.messages[server_id] = MessageMeta(sender_id=message.sender_id)
        state.message_horizon = max(state.message_horizon, seq)
        self._fanout.broadcast(
            state,
            MESSAGE_CONFIRMED,
            {
                "correlationId": message.correlation_id,
                "serverId": server_id,
                "seqInStore": seq,
                "senderId": message.sender_id,
            },
        )

    def _failed(self, state: SessionState, message: Message, error: Exception) -> None:
        state.correlations.pop(message.correlation_id, None)
        self._fanout.broadcast(
            state,
            MESSAGE_FAILED,
            {"correlationId": message.correlation_id, "error": {"code": "delivery_failed", "message": str(error)}},
            only_users=[message.sender_id],
        )

    async def _delete(self, session_id: str, message_id: str, actor_id: str) -> tuple[str, bool]:
        message = await self._store.get_message(message_id)
        if message is None or message.session_id != session_id:
            raise NotFound(f"message {message_id} not found in session {session_id}")
        if message.sender_id != actor_id:
            raise InvalidTransition("only the sender may delete a message")
        if message.deleted:
            return message.sender_id, False
        return message.sender_id, await self._store.delete_message(message_id)

    def _deleted(self, state: SessionState, message_id: str, done: asyncio.Task, result: asyncio.Future) -> None:
        state.deletes_in_flight.discard(message_id)
        error = done.exception() if not done.cancelled() else NotFound(message_id)
        if error is not None:
            if not result.done():
                result.set_exception(error)
            return

        sender_id, newly_deleted = done.result()
        meta = state.messages.setdefault(message_id, MessageMeta(sender_id=sender_id))
        meta.deleted = True
        if newly_deleted:
            self._fanout.broadcast(state, MESSAGE_DELETED, {"messageId": message_id, "deletedBy": sender_id})
        if not result.done():
            result.set_result({"messageId": message_id, "alreadyDeleted": not newly_deleted})
