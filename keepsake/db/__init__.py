"""
Database layer for Keepsake.

This module provides:
- The shared database handle (close/reopen around restores)
- Session dependency for FastAPI routes
"""

from keepsake.db.database import (
    DatabaseHandle,
    DatabaseUnavailable,
    db_handle,
    get_db,
    init_db,
    probe,
)

__all__ = [
    "DatabaseHandle",
    "DatabaseUnavailable",
    "db_handle",
    "get_db",
    "init_db",
    "probe",
]
