"""Core package for the DIAN duplicate-invoice reconciliation service."""

__version__ = "1.0.0"

__all__ = [
    "config",
    "logging",
    "models",
    "errors",
    "numeral",
    "session_store",
    "portal",
    "bundle",
    "ledger",
    "grouper",
    "matching",
    "stats",
    "engine",
    "service",
    "runtime",
    "app",
    "cli",
]
