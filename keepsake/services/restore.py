"""
Restore Orchestrator - sequences the destructive steps of a backup import.

Order: disconnect DB -> validate upload -> wipe data root -> extract ->
reload local config -> probe/reconnect DB -> issue a new session token.

Nothing in the data root is touched until validation has passed. Problems
after the wipe has started are logged and reported in the result rather than
turned into an error, except when the wipe or extraction itself cannot
proceed at all. A restore that fails or is cancelled before the reconnect
step reopens the shared database handle on the way out.
"""

import asyncio
import logging
import shutil
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from keepsake.config import settings
from keepsake.core.errors import (
    BackupError,
    ConfigError,
    InvalidArchive,
    IOFailure,
    ResourceReinitFailure,
    RestoreFailed,
    RestoreInProgress,
)
from keepsake.core.local_config import DEFAULT_USERNAME, ConfigState, config_state
from keepsake.core.tokens import create_token
from keepsake.db.database import DatabaseHandle, db_handle, probe
from keepsake.services.archive import (
    ExcludePredicate,
    cleanup_staging_dir,
    is_protected,
    unpack,
    validate_archive,
)

logger = logging.getLogger(__name__)

# Reserved for restores; exports run on their own threads
restore_executor = ThreadPoolExecutor(
    max_workers=settings.restore_max_workers,
    thread_name_prefix="restore-io",
)

SUCCESS_MESSAGE = "Data restored successfully"


class RestoreStage(str, Enum):
    IDLE = "idle"
    DISCONNECTING = "disconnecting"
    VALIDATING = "validating"
    WIPING = "wiping"
    EXTRACTING = "extracting"
    RELOADING = "reloading"
    RECONNECTING = "reconnecting"
    ISSUING_TOKEN = "issuing_token"
    DONE = "done"
    FAILED = "failed"


# Stages after which the data root may already be modified
DESTRUCTIVE_STAGES = frozenset({RestoreStage.WIPING, RestoreStage.EXTRACTING})

# Stages before the restored database is probed; a restore that stops in one
# of these leaves the shared handle closed unless it is reopened
HANDLE_CLOSED_STAGES = frozenset({
    RestoreStage.DISCONNECTING,
    RestoreStage.VALIDATING,
    RestoreStage.WIPING,
    RestoreStage.EXTRACTING,
    RestoreStage.RELOADING,
})


@dataclass
class RestoreResult:
    username: str
    message: str
    token: Optional[str] = None
    degraded: List[str] = field(default_factory=list)
    wipe_failures: List[str] = field(default_factory=list)
    extracted: int = 0


def wipe_data_root(data_root: Path, exclude: ExcludePredicate = is_protected) -> List[str]:
    """Delete every top-level entry of ``data_root`` except protected ones.

    Best-effort: an entry that cannot be deleted is logged and skipped.
    Returns the paths that could not be removed. Raises IOFailure only if
    the root itself cannot be listed.
    """
    try:
        entries = list(data_root.iterdir())
    except OSError as e:
        raise IOFailure(f"Failed to read data directory: {e}", path=str(data_root)) from e

    failures: List[str] = []
    for path in entries:
        if exclude(path.name):
            continue
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
        except OSError as e:
            logger.warning(f"Failed to delete {path} during restore wipe: {e}")
            failures.append(str(path))

    if failures:
        logger.error(
            f"PARTIAL WIPE: {len(failures)} entr{'y' if len(failures) == 1 else 'ies'} "
            f"in {data_root} could not be deleted; restored data is mixed with old files"
        )
    return failures


class RestoreOrchestrator:
    """Runs one restore at a time against a data root."""

    def __init__(
        self,
        data_root: Path,
        db: DatabaseHandle,
        config: ConfigState,
        exclude: ExcludePredicate = is_protected,
        executor: Optional[ThreadPoolExecutor] = None,
        staging_dir: Optional[Path] = None,
        token_factory: Callable[[str, str], str] = create_token,
    ):
        self.data_root = Path(data_root)
        self.db = db
        self.config = config
        self.exclude = exclude
        self.executor = executor or restore_executor
        self.staging_dir = staging_dir or self.data_root / settings.staging_dirname
        self.token_factory = token_factory
        self.stage = RestoreStage.IDLE
        self.last_failure_stage: Optional[RestoreStage] = None
        self._lock = asyncio.Lock()

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    def _enter(self, stage: RestoreStage) -> None:
        self.stage = stage
        logger.info(f"Restore stage: {stage.value}")

    async def _run_blocking(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, func, *args)

    async def restore(self, blob: bytes) -> RestoreResult:
        """Restore the data root from an uploaded archive.

        Raises:
            RestoreInProgress: another restore is running.
            InvalidArchive: upload rejected; data root untouched.
            RestoreFailed: wipe or extraction could not proceed.
        """
        if self._lock.locked():
            raise RestoreInProgress("A restore is already in progress")
        async with self._lock:
            self.last_failure_stage = None
            try:
                return await self._restore(blob)
            except (BackupError, asyncio.CancelledError):
                self.last_failure_stage = self.stage
                self.stage = RestoreStage.FAILED
                raise
            finally:
                if not self.db.is_connected and self._stopped_with_handle_closed():
                    await self._reconnect_live_handle()

    def _stopped_with_handle_closed(self) -> bool:
        stage = self.last_failure_stage if self.stage is RestoreStage.FAILED else self.stage
        return stage in HANDLE_CLOSED_STAGES

    async def _restore(self, blob: bytes) -> RestoreResult:
        # 1. Open handles on the database file block deleting it on some platforms
        self._enter(RestoreStage.DISCONNECTING)
        try:
            await self.db.close()
        except Exception as e:
            logger.error(f"Failed to close database before restore (continuing): {e}")

        # 2. Validate strictly before anything destructive
        self._enter(RestoreStage.VALIDATING)
        fmt = await self._run_blocking(validate_archive, blob)
        logger.info(f"Restore archive validated ({fmt.value}, {len(blob)} bytes)")

        # 3. Point of no return
        self._enter(RestoreStage.WIPING)
        try:
            wipe_failures = await self._run_blocking(wipe_data_root, self.data_root, self.exclude)
        except IOFailure as e:
            raise RestoreFailed(str(e), stage=RestoreStage.WIPING.value) from e
        await self._run_blocking(cleanup_staging_dir, self.staging_dir)

        # 4. Extraction re-applies the protected-name exclusion
        self._enter(RestoreStage.EXTRACTING)
        try:
            extracted = await self._run_blocking(unpack, blob, self.data_root, self.exclude)
        except (IOFailure, InvalidArchive) as e:
            logger.error(f"Restore extraction failed, data directory is incomplete: {e}")
            raise RestoreFailed(str(e), stage=RestoreStage.EXTRACTING.value) from e
        logger.info(f"Restore extracted {extracted} archive entries into {self.data_root}")

        result = RestoreResult(
            username=DEFAULT_USERNAME,
            message=SUCCESS_MESSAGE,
            wipe_failures=wipe_failures,
            extracted=extracted,
        )

        # 5. Reload config (also rotates the signing secret)
        self._enter(RestoreStage.RELOADING)
        try:
            await self._run_blocking(self.config.reload)
        except (ConfigError, OSError) as e:
            failure = ResourceReinitFailure(f"Config reload failed: {e}")
            logger.error(f"{failure} (restart may be required)")
            result.degraded.append(str(failure))

        # 6. Check the restored database before handing it back to the app
        self._enter(RestoreStage.RECONNECTING)
        try:
            await probe(self.db.url)
            await self.db.connect()
        except Exception as e:
            failure = ResourceReinitFailure(f"Database reconnect failed: {e}")
            logger.error(f"{failure} (restart required to use the restored database)")
            result.degraded.append(str(failure))

        # 7. New session token, since the secret was rotated
        self._enter(RestoreStage.ISSUING_TOKEN)
        config = self.config.get()
        result.username = config.username if config else DEFAULT_USERNAME
        try:
            result.token = self.token_factory(result.username, self.config.get_jwt_secret())
        except (ConfigError, ValueError) as e:
            logger.error(f"Failed to issue session token after restore: {e}")

        if result.degraded or result.wipe_failures:
            result.message = f"{SUCCESS_MESSAGE} (with warnings, a restart may be required)"
        self._enter(RestoreStage.DONE)
        return result

    async def _reconnect_live_handle(self) -> None:
        """Reopen the shared handle after a restore that stopped early."""
        try:
            await self.db.connect()
            logger.info("Database reopened after interrupted restore")
        except Exception as e:
            logger.error(f"Failed to reopen database after interrupted restore: {e}")


# Global instance
restore_orchestrator = RestoreOrchestrator(settings.data_path, db_handle, config_state)


def get_restore_orchestrator() -> RestoreOrchestrator:
    """FastAPI dependency for the process-wide (single-flight) orchestrator."""
    return restore_orchestrator
