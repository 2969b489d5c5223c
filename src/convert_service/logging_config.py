"""Process-wide logging setup.

Logs go to stderr as single lines. Fields passed through ``extra=`` are
appended as ``key=value`` pairs after the message.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

# Attributes every LogRecord carries; anything else came in through extra=.
_STANDARD_ATTRS: set[str] = set(vars(logging.makeLogRecord({}))) | {
    "message",
    "asctime",
    "taskName",
    "color_message",
}

_CONFIGURED_FLAG = "_convert_service_configured"


class ConsoleLogFormatter(logging.Formatter):
    """Render log records as single-line console output.

    Example line:

        2026-10-19T08:15:02.114Z INFO convert_service.jobs.service: Job 1f.. created
    """

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        line = (
            f"{ts.isoformat(timespec='milliseconds').replace('+00:00', 'Z')} "
            f"{record.levelname} {record.name}: {record.getMessage()}"
        )
        extras = {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}
        if extras:
            line += " " + " ".join(f"{k}={v}" for k, v in sorted(extras.items()))
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(level: str | int = "INFO") -> None:
    """Install the console handler on the root logger once per process."""
    root = logging.getLogger()
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    root.setLevel(level)

    if getattr(root, _CONFIGURED_FLAG, False):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(ConsoleLogFormatter())
    root.addHandler(handler)
    setattr(root, _CONFIGURED_FLAG, True)

    # uvicorn installs its own handlers; route them through ours
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv = logging.getLogger(name)
        uv.handlers.clear()
        uv.propagate = True
