"""Console and JSON-lines logging for bulk editor runs.

Interactive runs get a short human-readable line per record. With
``BULK_EDITOR_LOG_JSON=true`` (or ``--log-json``) every record is one JSON
object, so a scheduled job's output can be shipped to a log store as is.
Anything passed through ``extra=`` (``run_id``, ``document``) becomes a
top-level JSON field.
"""

from __future__ import annotations

import logging
import uuid
from typing import TextIO

from pythonjsonlogger.json import JsonFormatter

from bulk_editor.config import LOG_JSON

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s  %(message)s"
_JSON_FIELDS = "%(asctime)s %(levelname)s %(name)s %(message)s"

# request-per-line chatter from the HTTP stack, only shown at DEBUG
_HTTP_LOGGERS = ("httpx", "httpcore")


class JsonLineFormatter(JsonFormatter):
    """JSON formatter that reports the log level as ``severity``."""

    def add_fields(
        self,
        log_record: dict[str, object],
        record: logging.LogRecord,
        message_dict: dict[str, object],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["severity"] = log_record.pop("levelname", record.levelname)


def build_handler(use_json: bool, stream: TextIO | None = None) -> logging.Handler:
    """A stderr handler (or one on ``stream``) with the text or JSON format."""
    handler = logging.StreamHandler(stream)
    if use_json:
        handler.setFormatter(JsonLineFormatter(_JSON_FIELDS, rename_fields={"asctime": "time", "name": "logger"}))
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT, datefmt="%H:%M:%S"))
    return handler


def setup_logging(*, level: str = "INFO", json: bool | None = None, stream: TextIO | None = None) -> logging.Handler:
    """Replace the root handlers with one bulk editor handler and return it.

    ``json=None`` defers to BULK_EDITOR_LOG_JSON.
    """
    use_json = LOG_JSON if json is None else json
    numeric = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(numeric)
    for h in root.handlers[:]:
        root.removeHandler(h)
    handler = build_handler(use_json, stream)
    root.addHandler(handler)

    http_level = logging.DEBUG if numeric <= logging.DEBUG else logging.WARNING
    for name in _HTTP_LOGGERS:
        logging.getLogger(name).setLevel(http_level)
    return handler


def generate_run_id() -> str:
    """Short unique id attached to every progress report of one run."""
    return uuid.uuid4().hex[:16]
