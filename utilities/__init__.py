from .database import (
    db,
    Key,
    KeySystem,
    KeyLoan,
    KeyBundle,
    KeyEvent,
    ActivityLog,
    log_activity,
    utc_now,
)
from .logger import setup_logger

__all__ = [
    "db",
    "Key",
    "KeySystem",
    "KeyLoan",
    "KeyBundle",
    "KeyEvent",
    "ActivityLog",
    "setup_logger",
    "log_activity",
    "utc_now",
]
