"""
Billing service logging

JSON lines in deployed environments, plain text locally. Reconciliation
context (entry point, txnid, gateway transaction id) is bound once with
LoggerAdapter.with_context and rendered by both formats. Callback hashes and
credentials passed as extras are redacted before any handler writes them.
"""
import logging
import sys
from datetime import datetime
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

from core.config import settings

# Shown after the message in text logs, in this order
CONTEXT_FIELDS = ("entry_point", "txnid", "gateway_transaction_id", "invoice_number", "task")

REDACTED_FIELDS = frozenset(
    {"hash", "salt", "merchant_salt", "payu_merchant_salt", "sendgrid_api_key", "api_key", "password"}
)
REDACTED = "[redacted]"


class BillingContextFilter(logging.Filter):
    """Redact secret extras and render the bound context for the text format"""

    def filter(self, record: logging.LogRecord) -> bool:
        for name in REDACTED_FIELDS.intersection(record.__dict__):
            setattr(record, name, REDACTED)

        pairs = [
            f"{name}={record.__dict__[name]}"
            for name in CONTEXT_FIELDS
            if record.__dict__.get(name) not in (None, "")
        ]
        record.context = f" [{' '.join(pairs)}]" if pairs else ""
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding service fields; context extras pass through as keys"""

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.utcnow().isoformat()
        log_record["app"] = settings.app_name
        log_record["environment"] = settings.environment
        log_record["payu_mode"] = settings.payu_mode
        log_record["level"] = record.levelname
        log_record["logger"] = record.name

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        # Text-format rendering of the same context
        log_record.pop("context", None)


def build_handler(log_format: str, stream=None) -> logging.Handler:
    """Console handler with redaction and the configured format"""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.addFilter(BillingContextFilter())

    if log_format == "json":
        formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s", timestamp=True)
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s%(context)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    handler.setFormatter(formatter)
    return handler


def setup_logging() -> None:
    """Configure the root logger from settings"""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.addHandler(build_handler(settings.log_format))

    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.database_echo else logging.WARNING)


class LoggerAdapter(logging.LoggerAdapter):
    """Adapter carrying reconciliation context on every record"""

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        # Caller's dict is left untouched; bound context wins on clashes
        extra = dict(kwargs.get("extra") or {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs

    def with_context(self, **context) -> "LoggerAdapter":
        """New adapter with additional bound fields"""
        new_extra = dict(self.extra)
        new_extra.update(context)
        return LoggerAdapter(self.logger, new_extra)


def get_logger(name: str, **context) -> LoggerAdapter:
    """
    Get a logger with optional bound context

    Example:
        log = get_logger("d7_billing.reconciler").with_context(txnid="TXN_...")
        log.info("Verified webhook callback")
    """
    return LoggerAdapter(logging.getLogger(name), context)


# Initialize logging on import
setup_logging()
