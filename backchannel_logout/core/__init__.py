# Back-Channel Logout Core Module
from .config import Settings, get_settings, settings
from .database import Base, check_db_connection, create_engine, create_session_factory
from .logging import get_logger, setup_logging

__all__ = [
    "Base",
    "Settings",
    "check_db_connection",
    "create_engine",
    "create_session_factory",
    "get_logger",
    "get_settings",
    "settings",
    "setup_logging",
]
