from .logger import setup_logging, get_logger, ledger_logger, verifier_logger, api_logger
from .retry import RetryConfig, call_with_retry
from .rate_limiter import RateLimiter, endpoint_for_url, limiter_for_rate
from .validation import (
    validate_solana_address,
    validate_limit,
    BackfillParams,
)

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",
    "ledger_logger",
    "verifier_logger",
    "api_logger",

    # Retry
    "RetryConfig",
    "call_with_retry",

    # Rate Limiter
    "RateLimiter",
    "endpoint_for_url",
    "limiter_for_rate",

    # Validation
    "validate_solana_address",
    "validate_limit",
    "BackfillParams",
]
