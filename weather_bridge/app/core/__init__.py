"""
Core package — cross-cutting concerns.

Modules:
    config        — environment variables & settings
    logging_config — structured JSON logging
    errors        — exception hierarchy & handlers
    middleware    — request logging
    cancellation  — explicit cancellation context
    database      — async SQLAlchemy engine and sessions
    health        — connection self-test
"""
