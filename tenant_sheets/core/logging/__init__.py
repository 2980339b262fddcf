from .logger import (
    bind_log_context,
    clear_log_context,
    get_log_context,
    get_logger,
    log_stage,
    setup_logging,
)

__all__ = [
    "bind_log_context",
    "clear_log_context",
    "get_log_context",
    "get_logger",
    "log_stage",
    "setup_logging",
]
