"""
Core utilities and configuration for the supplement scoring pipeline.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: SQLAlchemy async engine and session management
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities
    retry: Retry policy injected into reference store clients
    text: Text normalization and rounding helpers

Usage:
    from core.config import settings
    from core.exceptions import StoreError, NetworkError
    from core.logging import setup_logging
    from core.retry import RetryPolicy

Example:
    # Initialize logging
    setup_logging()

    # Wrap a remote call in the default retry policy
    policy = RetryPolicy.from_settings()
    rows = await policy.run(lambda: fetch_rows(), label="select product_ingredients")
"""

__all__ = [
    "settings",
    "setup_logging",
    "RetryPolicy",
    # Exceptions
    "PipelineError",
    "StoreError",
    "NetworkError",
    "RateLimitError",
    "ConstraintViolationError",
    "AuthenticationError",
    "ReferenceDataError",
    "ScoreComputationError",
    "WriteError",
    "ConditionalUpdateError",
    "CheckpointError",
    "JournalError",
    "SetupError",
    "RetryableError",
    "NonRetryableError",
]
