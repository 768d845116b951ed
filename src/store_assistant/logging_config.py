import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

# Records logged outside a chat turn show "-" in the turn column.
_DEFAULT_EXTRA = {"turn": "-"}

_CONSOLE_FORMAT = (
    "<level>{level:<8}</level> | <magenta>{extra[turn]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {extra[turn]} | {name}:{function}:{line} - {message}"


@runtime_checkable
class LogConsumer(Protocol):
    def handler(self, level: str) -> dict[str, Any]: ...
    def describe(self, level: str) -> str: ...


@dataclass(frozen=True)
class ConsoleLogConsumer:
    stream: str = "stderr"

    def handler(self, level: str) -> dict[str, Any]:
        sink = sys.stdout if self.stream == "stdout" else sys.stderr
        return {"sink": sink, "level": level, "format": _CONSOLE_FORMAT}

    def describe(self, level: str) -> str:
        return f"console ({self.stream}, {level})"


@dataclass(frozen=True)
class FileLogConsumer:
    path: str = "logs/store_assistant.log"
    rotation: str = "10 MB"
    retention: int = 3

    def handler(self, level: str) -> dict[str, Any]:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        # enqueue: records arrive from the event loop and from sqlite worker threads
        return {
            "sink": self.path,
            "level": level,
            "format": _FILE_FORMAT,
            "rotation": self.rotation,
            "retention": self.retention,
            "enqueue": True,
        }

    def describe(self, level: str) -> str:
        return f"file ({self.path}, {level})"


@dataclass(frozen=True)
class JsonLogConsumer(FileLogConsumer):
    """One JSON object per line, for log shippers in front of the chat service."""

    path: str = "logs/store_assistant.jsonl"
    rotation: str = "50 MB"
    retention: int = 5

    def handler(self, level: str) -> dict[str, Any]:
        config = super().handler(level)
        del config["format"]
        config["serialize"] = True
        return config

    def describe(self, level: str) -> str:
        return f"json ({self.path}, {level})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
    "json": JsonLogConsumer,
}

# Answers stream to stdout, so by default diagnostics stay out of the terminal.
_DEFAULT_CONSUMERS = [
    {"type": "file"},
]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace all loguru sinks with the configured consumers.

    Each consumer entry is ``{"type": ..., "level": ..., **options}``; options go
    to the consumer's constructor. Returns a description of every sink installed.
    """
    handlers: list[dict[str, Any]] = []
    descriptions: list[str] = []
    unknown: list[str] = []

    for entry in consumers if consumers is not None else _DEFAULT_CONSUMERS:
        options = dict(entry)
        sink_type = options.pop("type", "")
        sink_level = options.pop("level", level)
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            unknown.append(sink_type)
            continue

        consumer = cls(**options)
        handlers.append(consumer.handler(sink_level))
        descriptions.append(consumer.describe(sink_level))

    logger.configure(handlers=handlers, extra=dict(_DEFAULT_EXTRA))
    for sink_type in unknown:
        logger.warning(f"Unknown log consumer type: {sink_type!r}")
    return descriptions
