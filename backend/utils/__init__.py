from .logger import setup_logging, get_logger, api_logger, queue_logger
from .retry import RetryConfig, with_retry
from .utcnow import utcnow, to_iso, parse_iso

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",
    "api_logger",
    "queue_logger",

    # Retry
    "RetryConfig",
    "with_retry",

    # Time
    "utcnow",
    "to_iso",
    "parse_iso",
]
