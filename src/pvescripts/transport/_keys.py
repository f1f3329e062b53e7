"""Private key file lifecycle for key-based SSH authentication.

Each invocation gets its own file; nothing is shared or reused. Files are
created with mode 0600 inside a 0700 directory and removed by whoever owns
the invocation (process exit, kill, or a failed spawn).
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path

from pvescripts.logger import logger


def write_key_file(key_material: str, key_dir: Path) -> Path:
    """Write *key_material* to a fresh private file and return its path."""
    key_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
    fd, name = tempfile.mkstemp(prefix="ssh_key_", dir=key_dir)
    try:
        os.fchmod(fd, 0o600)
        data = key_material if key_material.endswith("\n") else key_material + "\n"
        os.write(fd, data.encode())
    except OSError:
        os.close(fd)
        remove_key_file(Path(name))
        raise
    os.close(fd)
    return Path(name)


def remove_key_file(path: Path | None) -> None:
    """Delete a key file. Missing files are fine (cleanup may run twice)."""
    if path is None:
        return
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        logger.warning("Failed to remove SSH key file", path=str(path), err=str(exc))
        return
    logger.debug("Removed SSH key file", path=str(path))


@contextlib.contextmanager
def key_file_cleanup(path: Path | None):
    """Remove *path* when the block exits, however it exits."""
    try:
        yield path
    finally:
        remove_key_file(path)
