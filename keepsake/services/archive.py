"""
Archive packing and unpacking for data-root backups.

Archives are POSIX tar, optionally gzip-compressed, with member names relative
to the data root. Protected entries (local config, signing secret, staging
directory) are excluded in both directions.
"""

import gzip
import io
import logging
import os
import shutil
import tarfile
import time
import zlib
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Callable, Optional

from keepsake.config import settings
from keepsake.core.errors import InvalidArchive, IOFailure

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
# End-of-archive marker: two zero-filled blocks
EOF_MARKER_SIZE = 2 * tarfile.BLOCKSIZE
READ_CHUNK_SIZE = 64 * 1024

ExcludePredicate = Callable[[str], bool]


class ArchiveFormat(str, Enum):
    TAR = "tar"
    TAR_GZ = "tar.gz"


def is_protected(name: str) -> bool:
    """Check whether a base name is in the protected set."""
    return name in settings.protected_names


def archive_extension(compress: bool) -> str:
    return ArchiveFormat.TAR_GZ.value if compress else ArchiveFormat.TAR.value


# ============ Packing ============


class _SeverableWriter:
    """Write-through wrapper whose later writes are discarded once severed."""

    def __init__(self, fileobj: BinaryIO):
        self._fileobj = fileobj
        self.severed = False

    def write(self, data) -> int:
        if self.severed:
            return len(data)
        return self._fileobj.write(data)


def pack(
    source_root: Path,
    fileobj: BinaryIO,
    exclude: ExcludePredicate = is_protected,
    compress: bool = False,
) -> int:
    """Write a tar stream of ``source_root`` into ``fileobj``.

    Only top-level names are tested against ``exclude``; an excluded directory
    is skipped without descending. Returns the number of top-level entries
    packed. Raises IOFailure on the first entry that cannot be read, in which
    case the end-of-archive marker is never written.
    """
    source_root = Path(source_root)
    sink = _SeverableWriter(fileobj)
    mode = "w|gz" if compress else "w|"
    tar = tarfile.open(fileobj=sink, mode=mode, format=tarfile.PAX_FORMAT)
    try:
        packed = _add_top_level(tar, source_root, exclude)
    except BaseException:
        # Closing still finalizes the stream, but the end-of-archive marker and
        # gzip trailer land in the severed sink, so the output stays incomplete
        sink.severed = True
        tar.close()
        raise
    tar.close()
    return packed


def _add_top_level(tar: tarfile.TarFile, source_root: Path, exclude: ExcludePredicate) -> int:
    packed = 0
    try:
        entries = list(os.scandir(source_root))
    except OSError as e:
        raise IOFailure(f"Failed to read {source_root}: {e}", path=str(source_root)) from e

    for entry in entries:
        if exclude(entry.name):
            continue
        path = Path(entry.path)
        arcname = path.relative_to(source_root).as_posix()
        try:
            # Directories carry their full subtree in one call
            tar.add(path, arcname=arcname, recursive=entry.is_dir(follow_symlinks=False))
        except BrokenPipeError:
            raise
        except OSError as e:
            raise IOFailure(f"Failed to pack {path}: {e}", path=str(path)) from e
        packed += 1
    return packed


# ============ Format detection / validation ============


def sniff_format(blob: bytes) -> ArchiveFormat:
    """Detect gzip-wrapped vs plain tar by content, never by file extension."""
    if blob[:2] == GZIP_MAGIC:
        return ArchiveFormat.TAR_GZ
    return ArchiveFormat.TAR


def _open_payload(blob: bytes) -> BinaryIO:
    """Seekable view of the raw tar bytes.

    A gzip blob is decompressed on the fly as it is read, so memory stays
    bounded by the read size rather than the uncompressed archive size.
    """
    raw = io.BytesIO(blob)
    if sniff_format(blob) is ArchiveFormat.TAR_GZ:
        return gzip.GzipFile(fileobj=raw, mode="rb")
    return raw


def _is_empty_tar(payload: BinaryIO) -> bool:
    """True for an all-zero payload of at least the end-of-archive marker size.

    Leaves the read position at an arbitrary offset.
    """
    total = 0
    while True:
        block = payload.read(READ_CHUNK_SIZE)
        if not block:
            break
        if block.strip(b"\0"):
            return False
        total += len(block)
    return total >= EOF_MARKER_SIZE and total % tarfile.BLOCKSIZE == 0


def _check_tar(payload: BinaryIO) -> int:
    """Check that ``payload`` is a complete tar; returns the member count."""
    if _is_empty_tar(payload):
        return 0
    payload.seek(0)
    with tarfile.open(fileobj=payload, mode="r:") as tar:
        members = tar.getmembers()
    if not members:
        raise InvalidArchive("Archive contains no entries")

    # A stream cut off between members parses cleanly, so also require the
    # end-of-archive marker after the last member's data
    last = members[-1]
    end = last.offset_data
    if last.isreg():
        end += -(-last.size // tarfile.BLOCKSIZE) * tarfile.BLOCKSIZE
    payload.seek(end)
    trailer = payload.read(EOF_MARKER_SIZE)
    if len(trailer) < EOF_MARKER_SIZE or trailer.strip(b"\0"):
        raise InvalidArchive("Archive is truncated (missing end-of-archive marker)")
    return len(members)


def validate_archive(blob: bytes) -> ArchiveFormat:
    """Raise InvalidArchive unless ``blob`` is a complete tar or gzip+tar."""
    if not blob:
        raise InvalidArchive("Empty upload")
    fmt = sniff_format(blob)
    try:
        with _open_payload(blob) as payload:
            _check_tar(payload)
    except (tarfile.TarError, EOFError, OSError, zlib.error) as e:
        raise InvalidArchive(f"Not a valid {fmt.value} archive: {e}") from e
    return fmt


# ============ Unpacking ============


def _entry_excluded(member_name: str, exclude: ExcludePredicate) -> bool:
    parts = PurePosixPath(member_name).parts
    if not parts:
        return False
    # Base name decides; the top-level component also counts so nothing is
    # written into a protected directory
    return exclude(parts[-1]) or exclude(parts[0])


def _portable_filter(member: tarfile.TarInfo, dest_path: str) -> tarfile.TarInfo:
    # data_filter rejects absolute paths, ".." and links leaving dest_path
    member = tarfile.data_filter(member, dest_path)
    # None = leave to process defaults (umask, current time, current user)
    return member.replace(mode=None, mtime=None, uid=None, gid=None, uname=None, gname=None, deep=False)


def unpack(
    blob: bytes,
    dest_root: Path,
    exclude: ExcludePredicate = is_protected,
) -> int:
    """Extract ``blob`` into ``dest_root``, skipping excluded entries.

    Returns the number of members written.
    """
    dest_root = Path(dest_root)
    extracted = 0
    try:
        with _open_payload(blob) as payload:
            if _is_empty_tar(payload):
                return 0
            payload.seek(0)
            with tarfile.open(fileobj=payload, mode="r:") as tar:
                for member in tar:
                    if _entry_excluded(member.name, exclude):
                        logger.info(f"Skipped protected archive entry: {member.name}")
                        continue
                    try:
                        tar.extract(member, dest_root, filter=_portable_filter)
                    except tarfile.FilterError as e:
                        logger.warning(f"Refused unsafe archive entry {member.name}: {e}")
                        continue
                    except OSError as e:
                        raise IOFailure(f"Failed to extract {member.name}: {e}", path=member.name) from e
                    extracted += 1
    except (tarfile.ReadError, EOFError, gzip.BadGzipFile, zlib.error) as e:
        raise InvalidArchive(f"Archive became unreadable during extraction: {e}") from e
    return extracted


# ============ Staging directory ============


def cleanup_staging_dir(staging_dir: Path, max_age_hours: Optional[int] = None) -> int:
    """Remove staging entries older than ``max_age_hours``.

    The staging directory itself is kept. Returns the number removed.
    """
    staging_dir = Path(staging_dir)
    if not staging_dir.is_dir():
        return 0
    if max_age_hours is None:
        max_age_hours = settings.staging_max_age_hours

    cutoff = time.time() - max_age_hours * 3600
    removed = 0
    try:
        entries = list(staging_dir.iterdir())
    except OSError as e:
        logger.warning(f"Failed to list staging directory {staging_dir}: {e}")
        return 0
    for entry in entries:
        try:
            if entry.lstat().st_mtime >= cutoff:
                continue
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
            removed += 1
        except OSError as e:
            logger.warning(f"Failed to remove stale staging entry {entry}: {e}")
    if removed:
        logger.info(f"Cleaned up {removed} stale staging entr{'y' if removed == 1 else 'ies'} from {staging_dir}")
    return removed
