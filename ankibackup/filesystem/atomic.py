"""Write-then-rename primitive shared by snapshot commit and the pointer swap.

Both callers need the same crash semantics: bytes are flushed to stable
storage at a non-visible temporary name, then a single ``os.replace`` /
``rename`` publishes them, then the parent directory is flushed so the rename
itself survives a crash. Before the rename a crash leaves the old state; after
it, the new state. Nothing in between is observable.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


def fsync_file(file_path: Path) -> None:
    """Flush a file's contents to stable storage."""
    fd = os.open(file_path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def fsync_directory(dir_path: Path) -> None:
    """Flush a directory entry table so renames/creates inside it are durable."""
    fd = os.open(dir_path, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def fsync_tree(root: Path) -> None:
    """Flush every file and directory under ``root`` (bottom-up), then ``root`` itself."""
    for dirpath, _dirnames, filenames in os.walk(root, topdown=False):
        current = Path(dirpath)
        for filename in filenames:
            fsync_file(current / filename)
        fsync_directory(current)


def durable_rename(src: Path, dst: Path, *, replace: bool = False) -> None:
    """Atomically move ``src`` to ``dst`` and flush the parent directories.

    ``src`` must already be durable (see ``fsync_file`` / ``fsync_tree``).
    Without ``replace`` an existing ``dst`` is an error (``FileExistsError``),
    which is what snapshot commit wants: a visible snapshot is never overwritten.
    """
    if replace:
        os.replace(src, dst)
    elif src.is_dir():
        # rename(2) silently replaces an empty directory, so claim the name
        # first; mkdir fails atomically if anything already holds it.
        os.mkdir(dst)
        try:
            os.rename(src, dst)
        except BaseException:
            os.rmdir(dst)
            raise
    else:
        # A hard link never replaces an existing name.
        os.link(src, dst)
        os.unlink(src)
    fsync_directory(dst.parent)
    if src.parent != dst.parent:
        fsync_directory(src.parent)


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Replace ``path`` with ``data`` atomically.

    The temporary file is created in the same directory so the final rename
    never crosses a filesystem boundary.
    """
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        durable_rename(temp_path, path, replace=True)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
