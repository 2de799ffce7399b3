"""Structured, non-blocking logging for the attribution agent.

Records are pushed onto a bounded queue and rendered as JSON by a listener
thread, so the sampling thread never waits on console I/O in the middle of a
tick.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
from datetime import datetime, timezone
from queue import Full, Queue
from typing import Iterable, override
from uuid import uuid4

LOGGER = logging.getLogger(__name__)

ROOT_LOGGER_NAME = "wattprof"
# Must keep the agent thread prefix so the sampler skips it.
LISTENER_THREAD_NAME = "wattprof-log-listener"

_RESERVED_KEYS: frozenset[str] = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Render log records as single-line JSON objects.

    Every payload carries the run identifier and the monitored process id so
    logs from several profiled processes can be merged afterwards.
    """

    def __init__(self, *, run_id: str | None = None, pid: int | None = None) -> None:
        super().__init__()
        self._run_id = run_id
        self._pid = pid if pid is not None else os.getpid()

    @override
    def format(self, record: logging.LogRecord) -> str:
        context = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_KEYS and key != "run_id"
        }
        payload: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "run_id": getattr(record, "run_id", None) or self._run_id,
            "pid": self._pid,
            "context": context,
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["exception"] = record.exc_text
        return json.dumps(payload, default=str)


class BoundedQueueHandler(logging.handlers.QueueHandler):
    """Queue handler that drops records instead of blocking when full."""

    @override
    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except Full:
            self.handleError(record)

    @override
    def handleError(self, record: logging.LogRecord) -> None:
        return


class NamedQueueListener(logging.handlers.QueueListener):
    """Queue listener whose worker thread carries a recognisable name."""

    @override
    def start(self) -> None:
        super().start()
        thread = self._thread
        if thread is not None:
            thread.name = LISTENER_THREAD_NAME


def resolve_level(level: int | str) -> int:
    """Translate a level name such as ``"debug"`` into its numeric value.

    Unknown names resolve to ``logging.INFO``.
    """

    if isinstance(level, int):
        return level
    candidate = logging.getLevelName(level.strip().upper())
    return candidate if isinstance(candidate, int) else logging.INFO


def configure_structured_logging(
    logger: logging.Logger | None = None,
    *,
    run_id: str | None = None,
    level: int | str = logging.INFO,
    queue_size: int = 1024,
) -> logging.handlers.QueueListener:
    """Attach a JSON queue pipeline to ``logger``.

    Args:
        logger: Logger to configure. Defaults to the ``wattprof`` package
            logger so every module logger inherits the pipeline.
        run_id: Identifier stamped on every record. A random one is generated
            when omitted.
        level: Logging verbosity, numeric or by name.
        queue_size: Capacity of the record queue before records are dropped.

    Returns:
        The started queue listener; pass it to :func:`shutdown_listeners`.
    """

    target = logger or logging.getLogger(ROOT_LOGGER_NAME)
    target.setLevel(resolve_level(level))

    record_queue: Queue[logging.LogRecord] = Queue(maxsize=queue_size)
    target.addHandler(BoundedQueueHandler(record_queue))

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(JsonFormatter(run_id=run_id or str(uuid4())))

    listener = NamedQueueListener(record_queue, stream_handler)
    listener.start()
    return listener


def shutdown_listeners(listeners: Iterable[logging.handlers.QueueListener]) -> None:
    """Stop queue listeners, flushing pending records first."""

    for listener in listeners:
        try:
            listener.stop()
        except Exception as exc:  # pragma: no cover - logging teardown
            LOGGER.warning("Failed to stop logging listener", exc_info=exc)
