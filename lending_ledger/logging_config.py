"""
Structured Logging Configuration Module

Provides JSON-formatted structured logging for all ledger operations.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional

_STRUCTURED_FIELDS = ('tenant_id', 'user_id', 'action', 'resource', 'correlation_id')


def _structured_fields(record: logging.LogRecord) -> dict:
    fields = {name: getattr(record, name, None) for name in _STRUCTURED_FIELDS}
    fields['extra'] = getattr(record, 'extra', None)
    return {name: value for name, value in fields.items() if value is not None}


class JSONFormatter(logging.Formatter):
    """One JSON object per line; unset structured fields are left out"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_entry.update(_structured_fields(record))
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


class TextFormatter(logging.Formatter):
    """Human readable formatter that still shows the structured fields"""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record):
        line = super().format(record)
        fields = _structured_fields(record)
        fields.pop('extra', None)
        if fields:
            line += " [" + " ".join(f"{name}={value}" for name, value in fields.items()) + "]"
        return line


def setup_logging(level: str = "INFO", logger_name: str = "lending_ledger",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Route the ledger's loggers to a single handler.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Parent logger of every ledger component
        log_format: "json" or "text"
        log_file: Optional file path, stderr when omitted

    Returns:
        The configured parent logger
    """
    logger = logging.getLogger(logger_name)

    # Calling setup twice must not double every line
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else TextFormatter())
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False
    return logger


def get_logger(name: str = "lending_ledger") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, tenant_id: Optional[str] = None,
               correlation_id: Optional[str] = None, extra: Optional[dict] = None):
    """
    Emit one ledger event with its structured fields attached to the record.

    Args:
        logger: Component logger, e.g. lending_ledger.transactions
        level: Level name (info, warning, error, ...)
        message: Human readable summary
        user_id: Acting user
        action: Ledger operation name
        resource: Affected record, e.g. "loan:<id>"
        tenant_id: Lender the operation runs for
        correlation_id: Caller supplied request id
        extra: Additional structured data
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    # Report the module that called log_action, not this one
    fn, lno, func, sinfo = logger.findCaller(stack_info=False, stacklevel=2)
    record = logger.makeRecord(logger.name, levelno, fn, lno, message, (), None, func=func, sinfo=sinfo)
    fields = {'user_id': user_id, 'action': action, 'resource': resource,
              'tenant_id': tenant_id, 'correlation_id': correlation_id, 'extra': extra}
    for name, value in fields.items():
        if value:
            setattr(record, name, value)
    logger.handle(record)
