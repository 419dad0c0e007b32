"""
Filesystem primitives: advisory locks, atomic writes and locked JSON documents.

Every shared JSON file (provision registry, project index, legacy config) is
mutated as acquire-exclusive-lock → read → modify → write-temp → rename →
release, so concurrent deployer invocations never drop each other's updates.

Usage:
    with locked_json(path, default={}) as doc:
        doc["alpha"] = {...}
    # written atomically on exit, unless the block raised
"""

from __future__ import annotations

import copy
import fcntl
import json
import logging
import os
import tempfile
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from deployer.errors import StorageError

logger = logging.getLogger(__name__)


def lock_path_for(path: Path) -> Path:
    """Sidecar lock file for ``path`` (survives the target being replaced)."""
    return path.with_name(f".{path.name}.lock")


@contextmanager
def file_lock(path: Path, *, shared: bool = False) -> Generator[None, None, None]:
    """Hold an flock on ``path`` for the duration of the block."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
    except OSError as e:
        raise StorageError(f"Cannot open lock file {path}: {e}") from e
    try:
        fcntl.flock(fd, fcntl.LOCK_SH if shared else fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


def atomic_write_bytes(path: Path, data: bytes, mode: int = 0o644) -> None:
    """Write ``data`` to a temp file beside ``path`` and rename it into place."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp, mode)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
    except OSError as e:
        raise StorageError(f"Cannot write {path}: {e}") from e


def atomic_write_text(path: Path, text: str, mode: int = 0o644) -> None:
    atomic_write_bytes(path, text.encode("utf-8"), mode)


def read_json(path: Path, default: Any = None) -> Any:
    """Load a JSON document, returning ``default`` if the file does not exist."""
    if not path.exists():
        return default
    try:
        with open(path) as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise StorageError(f"Corrupt JSON in {path}: {e}") from e
    except OSError as e:
        raise StorageError(f"Cannot read {path}: {e}") from e


def write_json(path: Path, data: Any, mode: int = 0o644) -> None:
    atomic_write_text(path, json.dumps(data, indent=2, sort_keys=True) + "\n", mode)


@contextmanager
def locked_json(
    path: Path, default: Any = None, mode: int = 0o644
) -> Generator[Any, None, None]:
    """Lock-scoped read-modify-write of a JSON document.

    The yielded object is written back when the block exits normally.
    """
    with file_lock(lock_path_for(path)):
        doc = read_json(path)
        if doc is None:
            doc = copy.deepcopy(default) if default is not None else {}
        yield doc
        write_json(path, doc, mode)
