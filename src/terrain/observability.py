from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from typing import Any, Final, Iterator, Optional

_run_id_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "terrain_run_id", default=None
)

# Attributes every LogRecord carries; anything else arrived through extra=.
_RECORD_BUILTINS: Final[frozenset[str]] = frozenset(
    logging.makeLogRecord({}).__dict__
) | {"message", "asctime", "taskName", "run_id"}

_TEXT_FORMAT: Final[str] = "%(asctime)s %(levelname)s [%(run_id)s] %(name)s: %(message)s"


def generate_run_id() -> str:
    return uuid.uuid4().hex


def get_run_id() -> Optional[str]:
    return _run_id_ctx.get()


@contextlib.contextmanager
def bind_run_id(run_id: Optional[str] = None) -> Iterator[str]:
    """Tag every record logged inside the block with run_id.

    A blank run_id is replaced by a freshly generated one, which is yielded
    so callers can report it.
    """

    resolved = (run_id or "").strip() or generate_run_id()
    token = _run_id_ctx.set(resolved)
    try:
        yield resolved
    finally:
        _run_id_ctx.reset(token)


class RunIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        # An explicit run_id passed through extra= is left alone.
        if not getattr(record, "run_id", None):
            record.run_id = get_run_id() or "-"
        return True


def _record_extras(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RECORD_BUILTINS}


class JsonFormatter(logging.Formatter):
    """One JSON object per line: level, logger, run id, event name and extras."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        extra = _record_extras(record)
        if record.exc_info:
            extra["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            extra["stack"] = self.formatStack(record.stack_info)

        return json.dumps(
            {
                "timestamp": created.strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
                "level": record.levelname.lower(),
                "run_id": getattr(record, "run_id", None) or "-",
                "logger": record.name,
                "message": record.getMessage(),
                "extra": extra,
            },
            ensure_ascii=False,
            default=str,
        )


_LOGGING_CONFIGURED = False


def configure_logging(log_level: Optional[str] = None, *, json_output: bool = True) -> None:
    """Install a single stdout handler on the root logger, once per process."""

    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RunIdFilter())
    handler.setFormatter(JsonFormatter() if json_output else logging.Formatter(_TEXT_FORMAT))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel((log_level or "INFO").upper())
    _LOGGING_CONFIGURED = True
