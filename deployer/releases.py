"""
Release store — versioned release directories and the ``current`` pointer.

Layout under one project directory:

    <project>/releases/<version>/     immutable release trees
    <project>/current                 symlink to releases/<version>, or a file
                                      holding the version id where symlinks
                                      are unavailable
    <project>/shared/.env             environment shared across releases
    <project>/metadata.json           ProjectMetadata

Version ids are ``vYYYYMMDD.HHMMSSffffff`` (UTC). They sort lexicographically
in creation order; allocation is serialized and bumps the timestamp when the
clock has not moved past the latest id.

Usage:
    store = ReleaseStore(cfg.project_dir("alpha"))
    version = store.allocate_version()       # creates releases/<version>/
    store.set_current(version)
    store.prune(keep=5)
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, ValidationError

from deployer.errors import ConflictError, NotFoundError, StorageError
from deployer.fsutil import atomic_write_text, file_lock, locked_json, read_json, write_json

logger = logging.getLogger(__name__)

VERSION_FORMAT = "v%Y%m%d.%H%M%S%f"
# Older installs wrote second-resolution ids (vYYYYMMDD.HHMMSS); both sort correctly
LEGACY_VERSION_FORMAT = "v%Y%m%d.%H%M%S"
VERSION_RE = re.compile(r"^v\d{8}\.\d{6}(\d{6})?$")

CURRENT = "current"


def parse_version(version: str) -> datetime:
    if not VERSION_RE.match(version):
        raise ValueError(f"Not a release version: {version}")
    fmt = VERSION_FORMAT if len(version) > len("v20000101.000000") else LEGACY_VERSION_FORMAT
    return datetime.strptime(version, fmt).replace(tzinfo=UTC)


def format_version(moment: datetime) -> str:
    return moment.astimezone(UTC).strftime(VERSION_FORMAT)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ProjectState(StrEnum):
    PROVISIONING = "provisioning"
    UPDATING = "updating"
    ROLLING_BACK = "rolling_back"
    ACTIVE = "active"
    REMOVED = "removed"


class ProjectMetadata(BaseModel):
    """Persisted project state. Mutated only by the orchestrator."""

    name: str
    repo: str
    branch: str
    state: ProjectState = ProjectState.PROVISIONING
    current_version: str | None = None
    previous_version: str | None = None
    rolled_back_from: str | None = None
    domain: str | None = None
    port: int | None = None
    database: str | None = None
    created_at: str = ""
    updated_at: str | None = None
    rolled_back_at: str | None = None

    def summary(self) -> dict:
        """Fields kept in the project index."""
        return {
            "repo": self.repo,
            "branch": self.branch,
            "state": self.state.value,
            "current_version": self.current_version,
            "domain": self.domain,
            "database": self.database,
        }


@dataclass(frozen=True)
class Release:
    version: str
    path: Path

    @property
    def created_at(self) -> datetime:
        return parse_version(self.version)


class ReleaseStore:
    """Release directories, the current pointer and metadata for one project."""

    def __init__(
        self,
        project_dir: Path,
        *,
        symlinks: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.project_dir = Path(project_dir)
        self.symlinks = symlinks
        self.clock = clock

    @property
    def name(self) -> str:
        return self.project_dir.name

    @property
    def releases_dir(self) -> Path:
        return self.project_dir / "releases"

    @property
    def current_path(self) -> Path:
        return self.project_dir / CURRENT

    @property
    def shared_dir(self) -> Path:
        return self.project_dir / "shared"

    @property
    def env_file(self) -> Path:
        return self.shared_dir / ".env"

    @property
    def metadata_file(self) -> Path:
        return self.project_dir / "metadata.json"

    def exists(self) -> bool:
        return self.project_dir.exists()

    def release_path(self, version: str) -> Path:
        if not VERSION_RE.match(version):
            raise NotFoundError(f"Not a release version: {version}")
        return self.releases_dir / version

    # ── Releases ─────────────────────────────────────────────────────

    def list_releases(self) -> list[Release]:
        """Existing releases, oldest first."""
        if not self.releases_dir.is_dir():
            return []
        return [
            Release(entry.name, entry)
            for entry in sorted(self.releases_dir.iterdir(), key=lambda p: p.name)
            if entry.is_dir() and VERSION_RE.match(entry.name)
        ]

    def versions(self) -> list[str]:
        return [r.version for r in self.list_releases()]

    def allocate_version(self) -> str:
        """Reserve a new version id and create its (empty) release directory."""
        with file_lock(self.project_dir / ".releases.lock"):
            candidate = self.clock()
            existing = self.versions()
            if existing:
                latest = parse_version(existing[-1])
                if candidate <= latest:
                    candidate = latest + timedelta(microseconds=1)
            version = format_version(candidate)
            try:
                self.releases_dir.mkdir(parents=True, exist_ok=True)
                self.release_path(version).mkdir()
            except OSError as e:
                raise StorageError(f"Cannot create release {version}: {e}") from e
        logger.info("Allocated release %s for %s", version, self.name)
        return version

    def remove_release(self, version: str) -> None:
        if version == self.resolve_current():
            raise ConflictError(f"Release {version} is current for {self.name}")
        path = self.release_path(version)
        if path.exists():
            shutil.rmtree(path)
            logger.info("Removed release %s of %s", version, self.name)

    def prune(self, keep: int) -> list[str]:
        """Keep at most ``keep`` releases, always including the current one.

        Returns the versions deleted. Deletion failures are logged and skipped.
        """
        if keep < 1:
            raise ValueError("keep must be at least 1")
        current = self.resolve_current()
        others = [v for v in reversed(self.versions()) if v != current]
        budget = keep - 1 if current else keep
        removed = []
        for version in others[budget:]:
            try:
                shutil.rmtree(self.release_path(version))
            except OSError as e:
                logger.warning("Could not prune release %s of %s: %s", version, self.name, e)
                continue
            removed.append(version)
        if removed:
            logger.info("Pruned %d old release(s) of %s", len(removed), self.name)
        return removed

    # ── Current pointer ──────────────────────────────────────────────

    def resolve_current(self) -> str | None:
        """Version the current pointer references, or None if there is none."""
        pointer = self.current_path
        try:
            if pointer.is_symlink():
                version = Path(os.readlink(pointer)).name
            elif pointer.is_file():
                version = pointer.read_text().strip()
            else:
                return None
        except OSError as e:
            raise StorageError(f"Cannot read current pointer of {self.name}: {e}") from e
        if not VERSION_RE.match(version) or not (self.releases_dir / version).is_dir():
            logger.warning("Current pointer of %s references missing release %s", self.name, version)
            return None
        return version

    def current_release(self) -> Path | None:
        version = self.resolve_current()
        return self.release_path(version) if version else None

    def set_current(self, version: str) -> None:
        """Repoint ``current`` at ``version``: write a temp pointer, rename it over the old one."""
        if not self.release_path(version).is_dir():
            raise NotFoundError(f"Release {version} of {self.name} does not exist")
        if self.symlinks and self._swap_symlink(version):
            return
        atomic_write_text(self.current_path, version + "\n")
        logger.info("Current release of %s is now %s", self.name, version)

    def _swap_symlink(self, version: str) -> bool:
        tmp = self.project_dir / f".{CURRENT}.{os.getpid()}.tmp"
        try:
            tmp.unlink(missing_ok=True)
            os.symlink(Path("releases") / version, tmp)
        except (OSError, NotImplementedError) as e:
            logger.warning("Symlinks unavailable (%s), using a pointer file for %s", e, self.name)
            self.symlinks = False
            return False
        try:
            os.replace(tmp, self.current_path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StorageError(f"Cannot repoint current for {self.name}: {e}") from e
        logger.info("Current release of %s is now %s", self.name, version)
        return True

    # ── Metadata ─────────────────────────────────────────────────────

    def load_metadata(self) -> ProjectMetadata | None:
        data = read_json(self.metadata_file)
        if data is None:
            return None
        try:
            return ProjectMetadata.model_validate(data)
        except ValidationError as e:
            raise StorageError(f"Invalid metadata for {self.name}: {e}") from e

    def save_metadata(self, meta: ProjectMetadata) -> None:
        write_json(self.metadata_file, meta.model_dump(mode="json"))


class ProjectIndex:
    """``projects.json``: name → summary of every deployed project."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def list(self) -> dict[str, dict]:
        return read_json(self.path) or {}

    def __contains__(self, name: str) -> bool:
        return name in self.list()

    def put(self, meta: ProjectMetadata) -> None:
        with locked_json(self.path) as data:
            data[meta.name] = meta.summary()

    def remove(self, name: str) -> bool:
        with locked_json(self.path) as data:
            removed = data.pop(name, None) is not None
        return removed
