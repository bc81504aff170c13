from __future__ import annotations

import json as jsonlib
import logging
import sys
from typing import Any


class _ExtraFieldFilter(logging.Filter):
    """Guarantee every record carries a serialized ``ffb_extra`` field."""

    def filter(self, record: logging.LogRecord) -> bool:
        extra = getattr(record, "ffb_extra", None)
        if extra is None:
            record.ffb_extra = "{}"
        elif not isinstance(extra, str):
            record.ffb_extra = jsonlib.dumps(extra, default=str, sort_keys=True)
        return True


def configure_logging(json: bool, level: int = logging.INFO) -> None:
    """Configure service-wide logging.

    Args:
        json: Whether to emit JSON-formatted logs.
        level: Root log level.
    """

    root = logging.getLogger()
    root.setLevel(level)

    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(_ExtraFieldFilter())
    if json:
        formatter = logging.Formatter(
            fmt='{"level":"%(levelname)s","time":"%(asctime)s","name":"%(name)s",'
            '"message":"%(message)s","extra":%(ffb_extra)s}',
        )
    else:
        formatter = logging.Formatter(
            fmt="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
        )

    handler.setFormatter(formatter)
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Return a logger with structured extra field support.

    ``logger.log_with_extra(level, msg, project_id=...)`` serializes the keyword
    fields into the ``extra`` slot of the JSON formatter.
    """

    logger = logging.getLogger(name)

    def _log_with_extra(level: int, msg: str, *args: Any, **fields: Any) -> None:
        logger.log(level, msg, *args, extra={"ffb_extra": fields})

    logger.log_with_extra = _log_with_extra  # type: ignore[attr-defined]
    return logger
