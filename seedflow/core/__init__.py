"""Core infrastructure: config, database, logging, middleware, exceptions."""

from seedflow.core.config import Settings, get_settings
from seedflow.core.database import Base, get_db
from seedflow.core.logging import get_logger, request_id_ctx, run_context

__all__ = [
    "Base",
    "Settings",
    "get_db",
    "get_logger",
    "get_settings",
    "request_id_ctx",
    "run_context",
]
