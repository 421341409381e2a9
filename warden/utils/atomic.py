"""
Atomic file writes.

Every persisted record (pointer, generation records, quarantine flag) is
written to a temp file in the same directory, fsynced, then renamed over the
target, so a reader sees either the old file or the new one.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Union

from ..constants import Permissions


def fsync_directory(directory: Union[str, Path]) -> None:
    """Flush a directory entry so a rename survives power loss."""
    try:
        fd = os.open(str(directory), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def atomic_write_bytes(
    filepath: Union[str, Path],
    content: bytes,
    mode: int = Permissions.STATE_FILE,
) -> None:
    """Write file atomically with the given permissions."""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(
        dir=filepath.parent,
        prefix=f".{filepath.name}.",
        suffix=".tmp"
    )

    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        os.chmod(temp_path, mode)
        os.replace(temp_path, filepath)

    except BaseException:
        try:
            os.unlink(temp_path)
        except FileNotFoundError:
            pass
        raise

    fsync_directory(filepath.parent)


def atomic_write_json(
    filepath: Union[str, Path],
    data: Any,
    mode: int = Permissions.STATE_FILE,
) -> None:
    """Serialize data as indented JSON and write it atomically."""
    content = json.dumps(data, indent=2, sort_keys=True).encode('utf-8') + b'\n'
    atomic_write_bytes(filepath, content, mode=mode)
