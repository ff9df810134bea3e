from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

# Libraries underneath the socket.io server log through the stdlib.
_LIBRARY_LOGGERS = ("aiohttp.access", "aiohttp.server", "socketio", "engineio")


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


class ConsoleLogConsumer:
    def __init__(self, colorize: bool | None = None):
        self._colorize = colorize

    def register(self, level: str) -> None:
        logger.add(
            sys.stderr,
            level=level,
            colorize=self._colorize,
            format="<green>{time:HH:mm:ss.SSS}</green> <level>{level:<8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        )

    def describe(self, level: str) -> str:
        return f"console (stderr, {level})"


class FileLogConsumer:
    def __init__(
        self,
        path: str = "relay.log",
        rotation: str = "10 MB",
        retention: int = 5,
        serialize: bool = False,
    ):
        self._path = path
        self._rotation = rotation
        self._retention = retention
        self._serialize = serialize

    def register(self, level: str) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self._path,
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}",
            rotation=self._rotation,
            retention=self._retention,
            serialize=self._serialize,
            enqueue=True,
        )

    def describe(self, level: str) -> str:
        kind = "jsonl" if self._serialize else "file"
        return f"{kind} ({self._path}, {level})"


def _json_lines_consumer(path: str = "relay.jsonl", **kwargs: Any) -> FileLogConsumer:
    return FileLogConsumer(path, serialize=True, **kwargs)


class _StdlibBridge(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.opt(depth=6, exception=record.exc_info).log(level, record.getMessage())


_CONSUMER_TYPES: dict[str, Any] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
    "jsonl": _json_lines_consumer,
}


def default_consumers(component: str) -> list[dict[str, Any]]:
    """The hub logs to stderr and a file; the chat client only to a file so the prompt stays readable."""
    if component == "client":
        return [{"type": "file", "path": "relay-client.log"}]
    return [{"type": "console"}, {"type": "file", "path": "relay-hub.log"}]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
    *,
    component: str = "hub",
) -> list[str]:
    """Configure loguru sinks and route library logging into them.

    Returns a description of each registered consumer.
    """
    logger.remove()

    if consumers is None:
        consumers = default_consumers(component)

    descriptions: list[str] = []
    for config in consumers:
        sink_type = config.get("type", "")
        factory = _CONSUMER_TYPES.get(sink_type)
        if factory is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        kwargs = {k: v for k, v in config.items() if k not in ("type", "level")}
        sink_level = config.get("level", level)

        consumer = factory(**kwargs)
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    if component == "hub":
        bridge = _StdlibBridge()
        for name in _LIBRARY_LOGGERS:
            library_logger = logging.getLogger(name)
            library_logger.handlers = [bridge]
            library_logger.propagate = False

    return descriptions
