"""Amazon seller P&L sync: orders, financial events, refund attribution and daily summaries."""

__version__ = "1.0.0"
