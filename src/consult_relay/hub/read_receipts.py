from __future__ import annotations

import asyncio

from loguru import logger

from consult_relay.errors import NotFound
from consult_relay.events import MESSAGE_READ
from consult_relay.hub.fanout import Fanout
from consult_relay.hub.state import SessionState
from consult_relay.models import utc_now
from consult_relay.store.base import DurableStore


class ReadReceiptPropagator:
    """Writes read marks through to the store off the actor, then tells everyone else.

    Commands are acknowledged as soon as the mark is queued so the reader
    never waits on the store.
    """

    def __init__(self, store: DurableStore, fanout: Fanout):
        self._store = store
        self._fanout = fanout

    def mark_read(self, state: SessionState, message_id: str, reader_id: str) -> dict:
        key = (message_id, reader_id)
        if key in state.reads or key in state.reads_in_flight:
            return {"messageId": message_id, "queued": False}
        meta = state.messages.get(message_id)
        if meta is not None and (meta.sender_id == reader_id or meta.deleted):
            return {"messageId": message_id, "queued": False}

        state.reads_in_flight.add(key)
        task = asyncio.create_task(self._write(state.session_id, message_id, reader_id))
        task.add_done_callback(lambda done: state.post(lambda: self._written(state, key, done)))
        return {"messageId": message_id, "queued": True}

    def mark_all_read(self, state: SessionState, reader_id: str) -> dict:
        # Only messages confirmed before this point are covered; later arrivals stay unread.
        horizon = state.message_horizon
        state.lookups_in_flight += 1
        task = asyncio.create_task(self._store.backfill_messages(state.session_id, 0, horizon))
        task.add_done_callback(lambda done: state.post(lambda: self._mark_batch(state, reader_id, done)))
        return {"horizon": horizon}

    def _mark_batch(self, state: SessionState, reader_id: str, done: asyncio.Task) -> None:
        state.lookups_in_flight -= 1
        if done.cancelled():
            return
        error = done.exception()
        if error is not None:
            logger.warning(f"Session {state.session_id}: mark-all-read lookup failed: {error}")
            return
        queued = 0
        for message in done.result():
            if message.sender_id == reader_id or reader_id in message.read_by:
                continue
            if self.mark_read(state, message.server_id, reader_id)["queued"]:
                queued += 1
        logger.debug(f"Session {state.session_id}: mark-all-read for {reader_id} queued {queued} message(s)")

    async def _write(self, session_id: str, message_id: str, reader_id: str) -> str | None:
        """Returns the read timestamp when this call created the mark, else None."""
        message = await self._store.get_message(message_id)
        if message is None or message.session_id != session_id or message.deleted:
            raise NotFound(f"message {message_id} not found in session {session_id}")
        if message.sender_id == reader_id:
            return None
        read_at = utc_now()
        if await self._store.mark_message_read(message_id, reader_id, read_at):
            return read_at
        return None

    def _written(self, state: SessionState, key: tuple[str, str], done: asyncio.Task) -> None:
        state.reads_in_flight.discard(key)
        if done.cancelled():
            return
        error = done.exception()
        message_id, reader_id = key
        if error is not None:
            logger.warning(f"Session {state.session_id}: mark-read {message_id} by {reader_id} failed: {error}")
            return
        state.reads.add(key)
        read_at = done.result()
        if read_at is None:
            return
        self._fanout.broadcast(
            state,
            MESSAGE_READ,
            {"messageId": message_id, "readerId": reader_id, "at": read_at},
            exclude_user=reader_id,
        )
