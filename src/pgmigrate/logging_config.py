"""Handler setup for the pgmigrate CLI.

The engine modules only log through module loggers or a logger handed to
MigrationManager; nothing below runs unless the CLI calls setup_logging.
LOG_FORMAT=json switches stderr output to one object per line so runs can
be collected by a deploy pipeline.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone


class JSONFormatter(logging.Formatter):
    """Render a record as one JSON object.

    Extra attributes such as ``migration`` are copied next to the standard
    timestamp, level, logger and message keys.
    """

    _BUILTIN_ATTRS = frozenset({
        "args", "created", "exc_info", "exc_text", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs", "message", "msg",
        "name", "pathname", "process", "processName", "relativeCreated",
        "stack_info", "thread", "threadName", "taskName",
    })

    def format(self, record: logging.LogRecord) -> str:
        entry: dict = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in self._BUILTIN_ATTRS and not key.startswith("_"):
                entry[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


DEV_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
DEV_DATEFMT = "%H:%M:%S"


def setup_logging(
    fmt: str | None = None,
    level: int | str | None = None,
) -> None:
    """Point the root logger at stderr.

    *fmt* is ``"json"`` or ``"dev"`` and falls back to ``LOG_FORMAT``.
    *level* accepts a name or number and falls back to ``LOG_LEVEL``, then
    INFO. An unknown level name prints a warning and uses INFO.
    """
    fmt = fmt or os.environ.get("LOG_FORMAT", "dev")
    if level is None:
        level = os.environ.get("LOG_LEVEL", "INFO")
    if isinstance(level, str):
        resolved = getattr(logging, level.upper(), None)
        if not isinstance(resolved, int):
            print(
                f"WARNING: Invalid LOG_LEVEL '{level}', falling back to INFO",
                file=sys.stderr,
            )
            resolved = logging.INFO
        level = resolved

    handler = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(DEV_FORMAT, datefmt=DEV_DATEFMT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # asyncpg is noisy at DEBUG
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
