"""
Backup & Restore API - Full data-root export and import.

Export scope: everything under the data root except protected entries
(config.yml, .jwt_secret, temp/), streamed as tar or tar.gz.
Import mode: wipe the data root (protected entries kept), extract the upload,
then reload config, reconnect the database and issue a fresh session token.
"""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel
from fastapi import APIRouter, Depends, HTTPException, UploadFile, File, Query
from fastapi.responses import StreamingResponse

from keepsake.config import settings
from keepsake.core.errors import InvalidArchive, RestoreFailed, RestoreInProgress
from keepsake.services.archive import archive_extension, cleanup_staging_dir
from keepsake.services.restore import (
    DESTRUCTIVE_STAGES,
    RestoreOrchestrator,
    get_restore_orchestrator,
)
from keepsake.services.stream_bridge import stream_archive

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/backup", tags=["backup"])


def get_data_root() -> Path:
    """Dependency returning the data root (overridable in tests)."""
    return settings.data_path


# ============ Response Models ============


class ImportResponse(BaseModel):
    username: str
    message: str
    token: Optional[str] = None


class RestoreStatusResponse(BaseModel):
    stage: str
    in_progress: bool
    last_failure_stage: Optional[str] = None
    data_root_modified_by_failure: bool = False
    protected_names: List[str]


# ============ Endpoints ============


@router.get("/export")
async def export_backup(
    compress: Optional[bool] = Query(None, description="gzip the archive (defaults to BACKUP_COMPRESS)"),
    data_root: Path = Depends(get_data_root),
):
    """Stream the whole data root as a tar archive.

    The archive is produced while it is being sent, so there is no
    Content-Length. Protected entries are never included.
    """
    if not data_root.is_dir():
        raise HTTPException(status_code=404, detail="Data directory does not exist")

    if compress is None:
        compress = settings.backup_compress

    await asyncio.to_thread(cleanup_staging_dir, data_root / settings.staging_dirname)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filename = f"{settings.backup_filename_prefix}_{timestamp}.{archive_extension(compress)}"
    logger.info(f"Backup export started: {filename}")

    return StreamingResponse(
        stream_archive(data_root, compress=compress),
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/import", response_model=ImportResponse, response_model_exclude_none=True)
async def import_backup(
    backup: Optional[UploadFile] = File(None, description="Backup archive (tar or tar.gz)"),
    file: Optional[UploadFile] = File(None, description="Alias of 'backup'"),
    orchestrator: RestoreOrchestrator = Depends(get_restore_orchestrator),
):
    """Restore the data root from an uploaded archive.

    This will:
    1. Close the database connection
    2. Validate the archive (nothing is touched if it is invalid)
    3. Delete everything in the data root except protected entries
    4. Extract the archive
    5. Reload config, reconnect the database, issue a new token
    """
    upload = backup or file
    if upload is None:
        raise HTTPException(status_code=400, detail="No backup file found in upload")
    if orchestrator.in_progress:
        raise HTTPException(status_code=409, detail="A restore is already in progress")

    if upload.size is not None and upload.size > settings.max_upload_size:
        raise HTTPException(status_code=413, detail="Backup file is too large")
    content = await upload.read()
    if len(content) > settings.max_upload_size:
        raise HTTPException(status_code=413, detail="Backup file is too large")

    try:
        result = await orchestrator.restore(content)
    except InvalidArchive as e:
        raise HTTPException(status_code=400, detail=f"Invalid backup file format: {e}")
    except RestoreInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))
    except RestoreFailed as e:
        logger.error(f"Restore failed during {e.stage}: {e}")
        raise HTTPException(status_code=500, detail=f"Restore failed during {e.stage}: {e}")

    return ImportResponse(username=result.username, message=result.message, token=result.token)


@router.get("/status", response_model=RestoreStatusResponse)
async def restore_status(
    orchestrator: RestoreOrchestrator = Depends(get_restore_orchestrator),
):
    """Report the restore state machine and the protected entry names."""
    last_failure = orchestrator.last_failure_stage
    return RestoreStatusResponse(
        stage=orchestrator.stage.value,
        in_progress=orchestrator.in_progress,
        last_failure_stage=last_failure.value if last_failure else None,
        data_root_modified_by_failure=last_failure in DESTRUCTIVE_STAGES,
        protected_names=sorted(settings.protected_names),
    )
