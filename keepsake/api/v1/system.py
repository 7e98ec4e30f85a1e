"""
System API - database status and process restart.

After a restore that could not reconnect the database, the app keeps running
without it until restarted. The process supervisor (desktop shell or
container restart policy) brings the backend back up after /restart exits.
"""

import logging
import os
import threading

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from keepsake.config import settings
from keepsake.db.database import db_handle, get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/system", tags=["system"])

RESTART_DELAY_SECONDS = 1.0


def _schedule_exit(delay: float) -> None:
    timer = threading.Timer(delay, os._exit, args=(0,))
    timer.daemon = True
    timer.start()


@router.get("/database")
async def database_info(db: AsyncSession = Depends(get_db)):
    """Report the tables in the live database and its file size."""
    result = await db.execute(
        text("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
    )
    tables = [row[0] for row in result.fetchall()]
    db_path = settings.database_path
    return {
        "connected": db_handle.is_connected,
        "path": str(db_path),
        "size_bytes": db_path.stat().st_size if db_path.exists() else 0,
        "tables": tables,
    }


@router.post("/restart")
async def restart():
    """Exit the process shortly after responding; the supervisor restarts it."""
    logger.info(f"Restart requested, exiting in {RESTART_DELAY_SECONDS}s")
    _schedule_exit(RESTART_DELAY_SECONDS)
    return {"message": "Restarting..."}
