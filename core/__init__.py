"""
Core infrastructure shared by the sync daemon, the out-of-band jobs and the API.

Modules:
    config: Pydantic settings loaded from the environment / .env
    database: Async SQLAlchemy engine, session factory and precondition checks
    exceptions: Structured exception hierarchy
    exit_codes: Process exit codes seen by operators
    logging: Logging setup
    timeutil: Naive-UTC timestamp helpers

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import FetchExhaustedError
"""

__all__ = [
    "config",
    "database",
    "exceptions",
    "exit_codes",
    "logging",
    "timeutil",
]
