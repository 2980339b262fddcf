"""
Core Module

Foundational components: configuration constants, logging, exceptions and
the resilience layer (connection pool, batch queue).
"""

from .exceptions import (
    ConfigurationError,
    TenantDisabledError,
    TenantNotFoundError,
    TenantSheetsError,
    ThrottledError,
)
from .logging import (
    bind_log_context,
    clear_log_context,
    get_logger,
    log_stage,
    setup_logging,
)

__all__ = [
    "ConfigurationError",
    "TenantDisabledError",
    "TenantNotFoundError",
    "TenantSheetsError",
    "ThrottledError",
    "bind_log_context",
    "clear_log_context",
    "get_logger",
    "log_stage",
    "setup_logging",
]
