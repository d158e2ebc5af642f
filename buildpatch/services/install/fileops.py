"""File move/copy/delete and OS attribute primitives."""

import os
import shutil
import stat
import subprocess
import sys
from pathlib import Path

import structlog

logger = structlog.get_logger()

_WRITE_BITS = stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH
_EXEC_BITS = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH


def file_size(path: Path) -> int:
    """Size of ``path`` in bytes, or -1 if it is not a regular file."""
    try:
        return path.stat().st_size if path.is_file() else -1
    except OSError:
        return -1


def set_read_only(path: Path, read_only: bool) -> bool:
    try:
        mode = path.stat().st_mode
        if read_only:
            os.chmod(path, mode & ~_WRITE_BITS)
        else:
            os.chmod(path, mode | stat.S_IWUSR)
        return True
    except OSError as e:
        logger.debug("set_read_only_failed", path=str(path), error=str(e))
        return False


def set_executable(path: Path) -> bool:
    """Add the executable bits. Always succeeds on Windows where there are none."""
    if sys.platform == "win32":
        return True
    try:
        os.chmod(path, path.stat().st_mode | _EXEC_BITS)
        return True
    except OSError as e:
        logger.debug("set_executable_failed", path=str(path), error=str(e))
        return False


def set_compressed(path: Path, compressed: bool) -> bool:
    """Toggle NTFS compression. Unsupported platforms report success."""
    if sys.platform != "win32":
        return True
    try:
        result = subprocess.run(
            ["compact", "/c" if compressed else "/u", str(path)],
            capture_output=True,
            timeout=60,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning("set_compression_failed", path=str(path), compressed=compressed, error=str(e))
        return False
    if result.returncode != 0:
        logger.warning(
            "set_compression_failed",
            path=str(path),
            compressed=compressed,
            returncode=result.returncode,
        )
        return False
    return True


def delete_file(path: Path) -> bool:
    """Delete ``path`` even if read-only. A missing file counts as deleted."""
    if not path.exists():
        return True
    try:
        set_read_only(path, False)
        path.unlink()
        return True
    except OSError as e:
        logger.warning("delete_failed", path=str(path), error=str(e))
        return False


def move_file(dest: Path, src: Path) -> bool:
    """Move ``src`` over ``dest``, replacing it even if read-only."""
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        if dest.exists():
            set_read_only(dest, False)
        os.replace(src, dest)
        return True
    except OSError as e:
        logger.debug("move_failed", src=str(src), dest=str(dest), error=str(e))
        return False


def copy_file(dest: Path, src: Path) -> bool:
    """Copy ``src`` over ``dest``, replacing it even if read-only."""
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        if dest.exists():
            set_read_only(dest, False)
        shutil.copy2(src, dest)
        return True
    except OSError as e:
        logger.debug("copy_failed", src=str(src), dest=str(dest), error=str(e))
        return False
