"""
Service layer for Keepsake.

This module provides the backup pipeline:
- Archive packing/unpacking
- Streaming export bridge
- Restore orchestration
"""

from keepsake.services.archive import (
    ArchiveFormat,
    is_protected,
    pack,
    unpack,
    validate_archive,
)
from keepsake.services.restore import (
    RestoreOrchestrator,
    RestoreResult,
    RestoreStage,
)
from keepsake.services.stream_bridge import (
    BoundedPipe,
    stream_archive,
)

__all__ = [
    "ArchiveFormat",
    "is_protected",
    "pack",
    "unpack",
    "validate_archive",
    "RestoreOrchestrator",
    "RestoreResult",
    "RestoreStage",
    "BoundedPipe",
    "stream_archive",
]
