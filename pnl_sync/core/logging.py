"""
Structured logging configuration with JSON output and credential masking.

Provides the audit trail for sync runs and refund attribution.
"""

import logging
import re
import sys
from typing import Any

from pythonjsonlogger import jsonlogger

from pnl_sync.core.config import settings


class SecretMaskingFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter that masks credentials and buyer contact data.

    LWA tokens travel through request logging and error messages, so they are
    redacted before anything reaches a handler.
    """

    LWA_TOKEN_PATTERN = re.compile(r"\bAtz[ar]\|[A-Za-z0-9_\-|.=+/]+")
    CLIENT_SECRET_PATTERN = re.compile(r"\bamzn1\.oa2-cs\.v1\.[A-Za-z0-9]+")
    EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b")

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with masking applied to message and string extras."""
        if hasattr(record, "msg"):
            record.msg = self.mask(str(record.msg))

            for key, value in record.__dict__.items():
                if isinstance(value, str):
                    record.__dict__[key] = self.mask(value)

        return super().format(record)

    @classmethod
    def mask(cls, text: str) -> str:
        """Mask sensitive data patterns in text."""
        text = cls.LWA_TOKEN_PATTERN.sub(lambda m: m.group(0)[:5] + "****", text)
        text = cls.CLIENT_SECRET_PATTERN.sub("amzn1.oa2-cs.v1.****", text)
        text = cls.EMAIL_PATTERN.sub(lambda m: cls._mask_email(m.group(0)), text)
        return text

    @staticmethod
    def _mask_email(email: str) -> str:
        """Mask email address keeping first 2 chars and domain."""
        parts = email.split("@")
        if len(parts) == 2:
            username, domain = parts
            if len(username) > 2:
                masked_username = username[:2] + "*" * (len(username) - 2)
            else:
                masked_username = "*" * len(username)
            return f"{masked_username}@{domain}"
        return "***@***.***"


class TextFormatter(logging.Formatter):
    """
    Simple text formatter for development/console output.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with masking."""
        if hasattr(record, "msg"):
            record.msg = SecretMaskingFormatter.mask(str(record.msg))

        return super().format(record)


def setup_logging() -> None:
    """
    Configure application-wide logging.

    Sets up structured JSON logging for production or text logging for development.
    Respects LOG_LEVEL and LOG_FORMAT from settings.
    """
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)

    if settings.log_format == "json":
        formatter: logging.Formatter = SecretMaskingFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    else:
        formatter = TextFormatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    if settings.is_development and settings.debug:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)

    root_logger.info(
        "Logging configured",
        extra={
            "log_level": settings.log_level,
            "log_format": settings.log_format,
            "environment": settings.app_env,
        },
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


class SyncAuditLogger:
    """
    Specialized logger for the sync audit trail.

    Every run start/finish and every refund attribution decision is logged
    with full context so a run can be reconstructed from logs alone.
    """

    def __init__(self, logger_name: str = "audit") -> None:
        self.logger = logging.getLogger(logger_name)

    def log_sync_started(
        self,
        run_type: str,
        request_id: str,
        **kwargs: Any,
    ) -> None:
        """Log sync run start."""
        self.logger.info(
            "Sync started",
            extra={
                "event": "sync_started",
                "run_type": run_type,
                "request_id": request_id,
                **kwargs,
            },
        )

    def log_sync_completed(
        self,
        run_type: str,
        request_id: str,
        duration_ms: int,
        warnings_count: int,
        **kwargs: Any,
    ) -> None:
        """Log sync run completion."""
        self.logger.info(
            "Sync completed",
            extra={
                "event": "sync_completed",
                "run_type": run_type,
                "request_id": request_id,
                "duration_ms": duration_ms,
                "warnings_count": warnings_count,
                **kwargs,
            },
        )

    def log_sync_failed(
        self,
        run_type: str,
        request_id: str,
        duration_ms: int,
        error: BaseException,
        **kwargs: Any,
    ) -> None:
        """Log sync run failure."""
        self.logger.error(
            "Sync failed",
            extra={
                "event": "sync_failed",
                "run_type": run_type,
                "request_id": request_id,
                "duration_ms": duration_ms,
                "error_type": type(error).__name__,
                "error_message": str(error),
                **kwargs,
            },
        )

    def log_refund_allocated(
        self,
        event_key: str,
        amazon_order_id: str,
        amount: Any,
        items: int,
        **kwargs: Any,
    ) -> None:
        """Log refund distribution across line items."""
        self.logger.info(
            "Refund allocated",
            extra={
                "event": "refund_allocated",
                "event_key": event_key,
                "amazon_order_id": amazon_order_id,
                "amount": str(amount),
                "items": items,
                **kwargs,
            },
        )

    def log_refund_unattributed(
        self,
        event_key: str,
        amazon_order_id: str,
        amount: Any,
        **kwargs: Any,
    ) -> None:
        """Log refund that could not be attributed to line items."""
        self.logger.warning(
            "Refund left unattributed",
            extra={
                "event": "refund_unattributed",
                "event_key": event_key,
                "amazon_order_id": amazon_order_id,
                "amount": str(amount),
                **kwargs,
            },
        )


# Global audit logger instance
audit_logger = SyncAuditLogger()
