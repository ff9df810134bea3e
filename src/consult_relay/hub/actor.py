from __future__ import annotations

import asyncio
import contextlib
import inspect
from collections.abc import Callable
from typing import Any

from loguru import logger

Job = Callable[[], Any]


class SessionActor:
    """Runs every job for one session id in submission order on a single task.

    A job may return a future; ``submit`` then awaits it outside the actor so
    that store round-trips never hold up the queue.
    """

    def __init__(self, session_id: str, on_drained: Callable[[SessionActor], None] | None = None):
        self.session_id = session_id
        self.state = None
        self._on_drained = on_drained
        self._queue: asyncio.Queue[tuple[Job, asyncio.Future | None]] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._retired = False

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"session-actor:{self.session_id}")

    async def submit(self, job: Job) -> Any:
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((job, future))
        result = await future
        if isinstance(result, asyncio.Future):
            return await result
        return result

    def post(self, job: Job) -> None:
        self._queue.put_nowait((job, None))

    def retire(self) -> None:
        """Finish the current job and stop. Callers must already have made the actor unreachable."""
        self._retired = True

    async def close(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            if future is not None and not future.done():
                future.cancel()

    async def _run(self) -> None:
        while not self._retired:
            job, future = await self._queue.get()
            try:
                result = job()
                if inspect.isawaitable(result) and not isinstance(result, asyncio.Future):
                    result = await result
            except asyncio.CancelledError:
                if future is not None and not future.done():
                    future.cancel()
                raise
            except Exception as ex:
                if future is not None:
                    if not future.done():
                        future.set_exception(ex)
                else:
                    logger.exception(f"Session {self.session_id}: background job failed: {ex}")
            else:
                if future is not None and not future.done():
                    future.set_result(result)
            if self._on_drained is not None and self._queue.empty():
                self._on_drained(self)
