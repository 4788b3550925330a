"""
Logging Setup

Log lines for the back-office go to a single "microfinance" logger. By
default each line is one JSON object, so payments, loan changes and logins
can be grepped by collector, action or loan after the fact.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional

# Attributes that log_action attaches to a record, in output order
CONTEXT_FIELDS = ("user_id", "action", "resource", "extra")

PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record; context fields are omitted when unset"""

    def format(self, record):
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "microfinance",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Point the application logger at stdout, or at `log_file` when given.

    `log_format` "json" selects JSONFormatter; any other value gives plain
    "time level logger: message" lines. Calling this again replaces the
    previous handler instead of stacking a second one, and records do not
    propagate to the root logger.
    """
    app_logger = logging.getLogger(logger_name)
    for existing in list(app_logger.handlers):
        app_logger.removeHandler(existing)
        existing.close()

    if log_file:
        handler: logging.Handler = logging.FileHandler(log_file)
    else:
        handler = logging.StreamHandler()
    formatter = JSONFormatter() if log_format == "json" else logging.Formatter(PLAIN_FORMAT)
    handler.setFormatter(formatter)

    app_logger.addHandler(handler)
    app_logger.setLevel(level.upper())
    app_logger.propagate = False
    return app_logger


def get_logger(name: str = "microfinance") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, extra: Optional[dict] = None):
    """
    Emit `message` tagged with who did what to which record.

    Used by the API routers after a protected change succeeds, e.g.
    action="record_payment", resource="collection". Empty tags
    are not written.
    """
    numeric_level = logging.getLevelName(level.upper())
    if not logger.isEnabledFor(numeric_level):
        return

    context = {"user_id": user_id, "action": action, "resource": resource, "extra": extra}
    record = logger.makeRecord(logger.name, numeric_level, __name__, 0, message, (), None)
    for name, value in context.items():
        if value:
            setattr(record, name, value)
    logger.handle(record)
