from __future__ import annotations

from collections.abc import Awaitable, Callable

Handler = Callable[[], Awaitable[None]]


class ChatCommandRouter:
    """Maps ``/command`` lines typed in the chat client to handlers."""

    def __init__(
        self,
        *,
        on_help: Handler,
        on_start: Handler,
        on_end: Handler,
        on_cancel: Handler,
        on_read: Handler,
        on_who: Handler,
        on_history: Handler,
        on_unknown: Callable[[str], None],
    ) -> None:
        self._routes: dict[str, Handler] = {
            "/help": on_help,
            "/start": on_start,
            "/end": on_end,
            "/cancel": on_cancel,
            "/read": on_read,
            "/who": on_who,
            "/history": on_history,
        }
        self._on_unknown = on_unknown

    @property
    def commands(self) -> list[str]:
        return sorted(self._routes) + ["/quit"]

    async def try_handle(self, line: str) -> bool:
        trimmed = line.strip()
        if not trimmed.startswith("/"):
            return False

        handler = self._routes.get(trimmed.split()[0].lower())
        if handler is None:
            self._on_unknown(trimmed)
            return True
        await handler()
        return True
