"""
Filesystem helpers for the secret directory.
"""
import os
import tempfile
from typing import Optional


def atomic_write(path: str, data: bytes, mode: int = 0o600) -> None:
    """Replace ``path`` with ``data`` so readers see the old or new file, never a mix.

    Writes a temp file in the same directory, fsyncs it, renames it over the
    target and fsyncs the directory.
    """
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, mode=0o700, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", dir=directory)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise
    _fsync_dir(directory)


def read_optional(path: str) -> Optional[bytes]:
    """Return the file's bytes, or None if it does not exist."""
    try:
        with open(path, "rb") as f:
            return f.read()
    except FileNotFoundError:
        return None


def restore(path: str, previous: Optional[bytes], mode: int = 0o600) -> None:
    """Put back what read_optional returned: rewrite, or remove if there was nothing."""
    if previous is None:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        _fsync_dir(os.path.dirname(os.path.abspath(path)))
    else:
        atomic_write(path, previous, mode)


def _fsync_dir(directory: str) -> None:
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
