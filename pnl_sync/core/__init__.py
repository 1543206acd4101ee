"""Core application modules."""

from pnl_sync.core.cache import TTLCache
from pnl_sync.core.config import ConfigError, SpApiConnectionConfig, resolve_connection_config, settings
from pnl_sync.core.currency import format_currency, round_allocation, round_currency, to_decimal
from pnl_sync.core.idempotency import build_event_key
from pnl_sync.core.logging import audit_logger, get_logger, setup_logging
from pnl_sync.core.time import format_iso, parse_iso, utcnow

__all__ = [
    "settings",
    "ConfigError",
    "SpApiConnectionConfig",
    "resolve_connection_config",
    "get_logger",
    "setup_logging",
    "audit_logger",
    "utcnow",
    "format_iso",
    "parse_iso",
    "to_decimal",
    "format_currency",
    "round_currency",
    "round_allocation",
    "build_event_key",
    "TTLCache",
]
