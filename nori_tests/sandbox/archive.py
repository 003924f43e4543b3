"""In-memory tar archives for injecting files into a stopped container.

The runtime's archive interface is the only way to write into a container's
filesystem before its main process starts. Archives built here are plain
(uncompressed) tar streams, always closed so the end-of-archive marker is
written; the runtime rejects truncated archives.
"""

from __future__ import annotations

import io
import tarfile
import time
from pathlib import Path, PurePosixPath


def pack_file(
    host_path: str | Path,
    arcname: str | None = None,
    uid: int | None = None,
    gid: int | None = None,
) -> bytes:
    """Pack a single host file into a one-entry tar archive.

    Only the base name is kept, so the archive must be extracted into the
    parent directory of the desired in-container path.

    Args:
        host_path: File to pack
        arcname: Entry name override (defaults to the file's base name)
        uid: Owner uid recorded in the entry (so a non-root user can read it)
        gid: Owner gid recorded in the entry

    Returns:
        The complete archive as bytes

    Raises:
        FileNotFoundError: If host_path does not exist
        IsADirectoryError: If host_path is a directory
    """
    path = Path(host_path)
    if path.is_dir():
        raise IsADirectoryError(f"Cannot pack a directory as a file entry: {path}")

    data = path.read_bytes()
    stat = path.stat()

    info = tarfile.TarInfo(name=arcname or path.name)
    info.size = len(data)
    info.mode = stat.st_mode & 0o777
    info.mtime = int(stat.st_mtime)
    if uid is not None:
        info.uid = uid
    if gid is not None:
        info.gid = gid

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def pack_directories(
    relative_dir: str,
    uid: int | None = None,
    gid: int | None = None,
    mode: int = 0o755,
) -> bytes:
    """Pack directory entries for every component of a relative path.

    "a/b/c" yields entries "a", "a/b", "a/b/c". Extracting the archive at an
    existing directory creates the missing tree below it.
    """
    parts = PurePosixPath(relative_dir).parts
    if not parts or PurePosixPath(relative_dir).is_absolute():
        raise ValueError(f"Expected a non-empty relative path, got: {relative_dir!r}")

    now = int(time.time())
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for depth in range(1, len(parts) + 1):
            info = tarfile.TarInfo(name="/".join(parts[:depth]))
            info.type = tarfile.DIRTYPE
            info.mode = mode
            info.mtime = now
            if uid is not None:
                info.uid = uid
            if gid is not None:
                info.gid = gid
            tar.addfile(info)
    return buffer.getvalue()
