from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from tempfile import gettempdir
from typing import Any

from pythonjsonlogger import jsonlogger

from .settings import settings

LOGGER_NAME = "road_router"
LOG_FILE_NAME = "router.log.jsonl"

# The process id is kept on every record: searches log from their own worker processes.
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(process)d %(message)s"
_RENAMED_FIELDS = {"asctime": "ts", "levelname": "level"}


def _parse_level(name: str) -> int:
    level = logging.getLevelName(str(name).strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _log_dir_candidates(out_dir: str) -> tuple[Path, ...]:
    return (
        Path(out_dir) / "logs",
        Path.cwd() / "out" / "logs",
        Path(gettempdir()) / "road-astar-router" / "logs",
    )


def _resolve_log_dir(out_dir: str) -> Path | None:
    for log_dir in _log_dir_candidates(out_dir):
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            probe = log_dir / ".writetest"
            probe.touch(exist_ok=True)
            probe.unlink(missing_ok=True)
        except OSError:
            continue
        return log_dir
    return None


def _formatter() -> jsonlogger.JsonFormatter:
    return jsonlogger.JsonFormatter(_LOG_FORMAT, rename_fields=_RENAMED_FIELDS)


def get_logger() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    if getattr(logger, "_configured", False):
        return logger

    logger.setLevel(_parse_level(settings.log_level))
    logger.propagate = False
    formatter = _formatter()

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    logger.addHandler(stream)

    log_dir = _resolve_log_dir(settings.out_dir)
    if log_dir is not None:
        try:
            file_handler = logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8")
        except OSError:
            file_handler = None
        if file_handler is not None:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    logger._configured = True  # type: ignore[attr-defined]
    return logger


LOGGER: logging.Logger | None = None


def log_event(event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Emit one structured record; ``event`` is both the message and a top-level key."""
    global LOGGER
    if LOGGER is None:
        LOGGER = get_logger()
    LOGGER.log(level, event, extra={"event": event, **fields})


@contextmanager
def timed_event(event: str, **fields: Any) -> Iterator[dict[str, Any]]:
    """Log ``event`` with ``duration_ms`` and ``ok`` when the block exits.

    The yielded dict is merged into the record, so callers can attach results
    found inside the block. Exceptions are logged at WARNING and re-raised.
    """
    record: dict[str, Any] = dict(fields)
    t0 = time.perf_counter()
    try:
        yield record
    except Exception as exc:
        record.setdefault("reason_code", getattr(exc, "reason_code", type(exc).__name__))
        record["ok"] = False
        record["duration_ms"] = round((time.perf_counter() - t0) * 1000.0, 2)
        log_event(event, level=logging.WARNING, **record)
        raise
    record["ok"] = True
    record["duration_ms"] = round((time.perf_counter() - t0) * 1000.0, 2)
    log_event(event, **record)
