"""
Test data factories for data roots and archives.
"""
import gzip
import io
import sqlite3
import tarfile
from pathlib import Path
from typing import Dict, List, Optional


def write_file(path: Path, content: bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def make_sqlite_db(path: Path, rows: Optional[List[str]] = None) -> Path:
    """Create a small SQLite database with a ``notes`` table."""
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    try:
        conn.execute("CREATE TABLE IF NOT EXISTS notes (id INTEGER PRIMARY KEY, body TEXT)")
        conn.executemany("INSERT INTO notes (body) VALUES (?)", [(r,) for r in rows or []])
        conn.commit()
    finally:
        conn.close()
    return path


def make_tar(files: Dict[str, bytes], gz: bool = False, mode: int = 0o644, mtime: int = 0) -> bytes:
    """Build an in-memory archive from ``{member_name: content}``."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz" if gz else "w") as tar:
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = mode
            info.mtime = mtime
            tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


def snapshot(root: Path) -> Dict[str, bytes]:
    """Map of relative file path -> bytes for every regular file under ``root``."""
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


def tar_members(blob: bytes) -> Dict[str, bytes]:
    """Regular-file members of a tar or tar.gz blob."""
    if blob[:2] == b"\x1f\x8b":
        blob = gzip.decompress(blob)
    members = {}
    with tarfile.open(fileobj=io.BytesIO(blob), mode="r:") as tar:
        for info in tar:
            if info.isfile():
                members[info.name] = tar.extractfile(info).read()
    return members
