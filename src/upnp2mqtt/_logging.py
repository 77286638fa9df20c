"""Structured JSON log formatter and logging configuration.

The bridge runs unattended next to a broker, usually in a container, so
the default output is one JSON object per line (NDJSON) tagged with the
``service`` name and ``version``.  ``text`` format is available for
terminals.

Module loggers follow ``logging.getLogger(__name__)``; device-scoped
messages carry the usn and location in the message text so a single
``grep`` follows one device through discovery, subscription and relay.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from typing import Any

from upnp2mqtt._settings import LoggingSettings

_MEGABYTE = 1024 * 1024

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects (NDJSON).

    Fields: ``timestamp`` (UTC, ISO 8601), ``level``, ``logger``,
    ``message``, ``service``, ``version`` (omitted when empty),
    ``exception`` and ``stack_info`` (only when present).
    """

    def __init__(
        self,
        *,
        service: str = "",
        version: str = "",
    ) -> None:
        super().__init__()
        self._service = service
        self._version = version

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self._service,
        }

        if self._version:
            entry["version"] = self._version

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            entry["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(entry, default=str)


def configure_logging(
    settings: LoggingSettings,
    *,
    service: str,
    version: str = "",
) -> None:
    """Configure the root logger from settings.

    Existing root handlers are removed.  A stderr handler is always
    installed; a :class:`RotatingFileHandler` is added when
    ``settings.file`` is set, rotating at ``max_file_size_mb``.

    ``httpx`` and ``aiohttp.access`` log every request at INFO, which
    drowns the bridge's own messages at one NOTIFY per state change;
    both are capped at WARNING unless the root level is DEBUG.
    """
    root = logging.getLogger()

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    if settings.format == "json":
        formatter: logging.Formatter = JsonFormatter(service=service, version=version)
    else:
        formatter = logging.Formatter(_TEXT_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if settings.file is not None:
        file_handler = RotatingFileHandler(
            settings.file,
            maxBytes=settings.max_file_size_mb * _MEGABYTE,
            backupCount=settings.backup_count,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(settings.level)

    noisy_level = logging.DEBUG if settings.level == "DEBUG" else logging.WARNING
    for name in ("httpx", "httpcore", "aiohttp.access"):
        logging.getLogger(name).setLevel(noisy_level)
