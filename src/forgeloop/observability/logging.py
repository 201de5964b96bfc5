"""Per-run structured logging: a queue-fed JSON-lines file under ``<log_dir>/<run_id>/``."""

from __future__ import annotations

import atexit
import json
import logging
import logging.handlers
import queue
import re
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

import structlog

from forgeloop.config.schema import is_sensitive_key
from forgeloop.constants import LOG_DIR

DEFAULT_LOGGER_NAME: Final[str] = "forgeloop"
DEFAULT_LOG_FILENAME: Final[str] = "forgeloop.jsonl"
REDACTED_VALUE: Final[str] = "***REDACTED***"

# Promoted to top-level keys of each line; everything else lands under "fields".
_CORRELATION_KEYS: Final[frozenset[str]] = frozenset({"run_id", "role", "step"})
_RECORD_ATTRS: Final[frozenset[str]] = frozenset(vars(logging.makeLogRecord({}))) | {
    "asctime",
    "message",
    "taskName",
}

_ASSIGNMENT_RE: Final = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_RE: Final = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_PROVIDER_KEY_RE: Final = re.compile(r"\bsk-(?:ant-)?[A-Za-z0-9_-]{12,}\b")

_ACTIVE_LOCK = threading.Lock()
_ACTIVE: RunLog | None = None
_ATEXIT_REGISTERED = False


@dataclass(frozen=True, slots=True)
class RunLogSettings:
    run_id: str
    log_dir: Path | str = str(LOG_DIR)
    level: int | str = "INFO"
    redact_secrets: bool = True
    # Echo the same JSON lines to stderr.
    console: bool = False
    logger_name: str = DEFAULT_LOGGER_NAME
    queue_size: int = 4096
    filename: str = DEFAULT_LOG_FILENAME

    @classmethod
    def from_config(
        cls,
        observability: Mapping[str, Any],
        *,
        run_id: str,
        logger_name: str = DEFAULT_LOGGER_NAME,
    ) -> RunLogSettings:
        return cls(
            run_id=run_id,
            log_dir=observability.get("log_dir", str(LOG_DIR)),
            level=observability.get("log_level", "INFO"),
            redact_secrets=bool(observability.get("redact_secrets", True)),
            console=observability.get("log_format") == "console",
            logger_name=logger_name,
        )


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    """Never blocks the caller: records that do not fit in the queue are counted and dropped."""

    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self.dropped = 0
        self._lock = threading.Lock()

    def prepare(self, record: logging.LogRecord) -> Any:
        # Runs on the emitting thread, where structlog's context is visible.
        for key, value in structlog.contextvars.get_contextvars().items():
            record.__dict__.setdefault(key, value)
        return super().prepare(record)

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._lock:
                self.dropped += 1


class _JsonLineFormatter(logging.Formatter):
    def __init__(self, *, run_id: str, redact_secrets: bool) -> None:
        super().__init__()
        self._run_id = run_id
        self._redact_secrets = redact_secrets

    def format(self, record: logging.LogRecord) -> str:
        scrub = redact if self._redact_secrets else _unchanged
        event: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": scrub(record.getMessage()),
            "run_id": self._run_id,
        }
        fields: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key.startswith("_"):
                continue
            if key not in _CORRELATION_KEYS:
                fields[key] = value
            elif value is not None and str(value).strip():
                event[key] = str(value).strip()
        if fields:
            event["fields"] = scrub(fields)
        return json.dumps(
            event, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
        )


class RunLog:
    """Handle for one open run log; ``close`` drains the queue before releasing the file."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        log_path: Path,
        queue_handler: _DroppingQueueHandler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.logger = logger
        self.log_path = log_path
        self._queue_handler = queue_handler
        self._listener = listener
        self._sinks = sinks
        self._close_lock = threading.Lock()
        self._closed = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()
            self._closed = True


def open_run_log(settings: RunLogSettings) -> RunLog:
    """Start logging into ``<log_dir>/<run_id>/<filename>``, closing any run log already open."""

    run_id = settings.run_id.strip()
    if not run_id:
        raise ValueError("run_id must not be empty")
    if Path(settings.filename).name != settings.filename:
        raise ValueError("filename must not include path separators")
    if settings.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _parse_level(settings.level)
    shutdown_logging()

    log_path = Path(settings.log_dir) / run_id / settings.filename
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = _JsonLineFormatter(run_id=run_id, redact_secrets=settings.redact_secrets)
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if settings.console:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setFormatter(formatter)

    logger = logging.getLogger(settings.logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    queue_handler = _DroppingQueueHandler(queue.Queue(maxsize=settings.queue_size))
    listener = logging.handlers.QueueListener(queue_handler.queue, *sinks)
    listener.start()
    logger.addHandler(queue_handler)
    configure_structlog()

    run_log = RunLog(
        logger=logger,
        log_path=log_path,
        queue_handler=queue_handler,
        listener=listener,
        sinks=tuple(sinks),
    )
    global _ACTIVE, _ATEXIT_REGISTERED
    with _ACTIVE_LOCK:
        _ACTIVE = run_log
        if not _ATEXIT_REGISTERED:
            atexit.register(shutdown_logging)
            _ATEXIT_REGISTERED = True
    return run_log


def setup_logging(
    observability: Mapping[str, Any] | None = None,
    *,
    run_id: str,
    logger_name: str = DEFAULT_LOGGER_NAME,
) -> RunLog:
    """Open the run log described by an ``[observability]`` config section."""

    return open_run_log(
        RunLogSettings.from_config(observability or {}, run_id=run_id, logger_name=logger_name)
    )


def shutdown_logging(run_log: RunLog | None = None) -> None:
    """Close ``run_log``, or the active run log when none is given."""

    global _ACTIVE
    with _ACTIVE_LOCK:
        target = run_log if run_log is not None else _ACTIVE
        if target is _ACTIVE:
            _ACTIVE = None
    if target is not None:
        target.close()


def configure_structlog() -> None:
    """Route ``structlog.get_logger`` events into the stdlib logger tree."""

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


@contextmanager
def run_context(**fields: str | int | None) -> Iterator[None]:
    """Bind ``role``/``step`` (or any other field) to every record emitted inside the block."""

    bound = {key: value for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def redact(value: Any, *, key: str | None = None) -> Any:
    """Mask values under credential-looking keys and inline credentials inside strings."""

    if key is not None and is_sensitive_key(key):
        return REDACTED_VALUE
    if isinstance(value, str):
        masked = _BEARER_RE.sub(f"Bearer {REDACTED_VALUE}", value)
        masked = _ASSIGNMENT_RE.sub(
            lambda match: f"{match.group(1)}{match.group(2)}{REDACTED_VALUE}", masked
        )
        return _PROVIDER_KEY_RE.sub(REDACTED_VALUE, masked)
    if isinstance(value, Mapping):
        return {str(name): redact(item, key=str(name)) for name, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


def _unchanged(value: Any) -> Any:
    return value


def _parse_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    level = logging.getLevelNamesMapping().get(str(value).strip().upper())
    if level is None:
        raise ValueError(f"unsupported logging level {value!r}")
    return level


__all__ = [
    "DEFAULT_LOGGER_NAME",
    "REDACTED_VALUE",
    "RunLog",
    "RunLogSettings",
    "configure_structlog",
    "open_run_log",
    "redact",
    "run_context",
    "setup_logging",
    "shutdown_logging",
]
