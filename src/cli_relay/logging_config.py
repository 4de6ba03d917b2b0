"""Loguru sinks for the relay.

Every record carries a ``thread`` extra naming the chat thread it concerns,
``-`` when it concerns none. ``thread_logger`` binds it. slack_sdk and
aiohttp log through stdlib ``logging``; ``StdlibBridge`` forwards those
records into the same sinks.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

NO_THREAD = "-"

_LIBRARY_LOGGERS = ("slack_sdk", "aiohttp", "asyncio")


def thread_logger(conversation_id: str):
    return logger.bind(thread=conversation_id)


class StdlibBridge(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk out of the logging module so loguru reports the caller.
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


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
            format=(
                "<green>{time:HH:mm:ss}</green> <level>{level:<8}</level> "
                "| <magenta>{extra[thread]}</magenta> | <cyan>{name}</cyan> - <level>{message}</level>"
            ),
        )

    def describe(self, level: str) -> str:
        return f"console (stderr, {level})"


class FileLogConsumer:
    """Rotating file sink. ``serialize`` writes one JSON object per record."""

    def __init__(
        self,
        path: str = "logs/relay.log",
        rotation: str = "10 MB",
        retention: int = 5,
        serialize: bool = False,
        enqueue: bool = True,
    ):
        self._path = path
        self._rotation = rotation
        self._retention = retention
        self._serialize = serialize
        self._enqueue = enqueue

    def register(self, level: str) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self._path,
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {extra[thread]} | {name}:{line} - {message}",
            rotation=self._rotation,
            retention=self._retention,
            serialize=self._serialize,
            enqueue=self._enqueue,
        )

    def describe(self, level: str) -> str:
        kind = "json" if self._serialize else "text"
        return f"file ({self._path}, {kind}, {level})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}

_DEFAULT_CONSUMERS = [
    {"type": "console"},
    {"type": "file"},
]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
    library_level: str = "WARNING",
) -> list[str]:
    """Replace every sink with the configured consumers and route library logging into them.

    ``library_level`` caps the stdlib loggers of the Slack and HTTP stacks.
    Returns a description of each registered consumer.
    """
    logger.remove()
    logger.configure(extra={"thread": NO_THREAD})

    if consumers is None:
        consumers = _DEFAULT_CONSUMERS

    descriptions: list[str] = []
    for config in consumers:
        sink_type = config.get("type", "")
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        kwargs = {k: v for k, v in config.items() if k not in ("type", "level")}
        sink_level = config.get("level", level)

        consumer = cls(**kwargs)
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    logging.basicConfig(handlers=[StdlibBridge()], level=0, force=True)
    for name in _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    return descriptions
