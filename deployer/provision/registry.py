"""
Provisioning registry — which database account each project owns, per engine.

File: <projects>/_databases/registry.json (chmod 600)
    {"postgres": {"alpha": {"database": ..., "username": ..., "password": ...,
                            "host": ..., "port": ..., "createdAt": ...}},
     "mysql": {...}}

Every mutation is lock-scoped (read, modify, write under an exclusive flock).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from deployer.fsutil import locked_json, read_json

logger = logging.getLogger(__name__)

ENGINE_KINDS = ("mysql", "postgres")


def _now() -> str:
    return datetime.now(UTC).isoformat()


class ProvisionRecord(BaseModel):
    """A registry entry. ``password`` is None when a prior attempt never recorded one."""

    model_config = ConfigDict(populate_by_name=True)

    database: str
    username: str
    password: str | None = None
    host: str = ""
    port: int = 0
    created_at: str = Field(default_factory=_now, alias="createdAt")

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True)


class ProvisionRegistry:
    def __init__(self, path: Path):
        self.path = Path(path)

    def _empty(self) -> dict[str, dict]:
        return {kind: {} for kind in ENGINE_KINDS}

    def load(self) -> dict[str, dict]:
        data = read_json(self.path) or {}
        for kind in ENGINE_KINDS:
            data.setdefault(kind, {})
        return data

    def get(self, kind: str, project: str) -> ProvisionRecord | None:
        entry = self.load().get(kind, {}).get(project)
        if entry is None:
            return None
        return ProvisionRecord.model_validate(entry)

    def put(self, kind: str, project: str, record: ProvisionRecord) -> None:
        with locked_json(self.path, default=self._empty(), mode=0o600) as data:
            data.setdefault(kind, {})[project] = record.to_json()

    def remove(self, kind: str, project: str) -> bool:
        with locked_json(self.path, default=self._empty(), mode=0o600) as data:
            removed = data.get(kind, {}).pop(project, None) is not None
        return removed

    def find(self, project: str) -> list[tuple[str, ProvisionRecord]]:
        """All (kind, record) pairs provisioned for ``project``."""
        data = self.load()
        return [
            (kind, ProvisionRecord.model_validate(entries[project]))
            for kind, entries in sorted(data.items())
            if project in entries
        ]

    def all(self) -> list[tuple[str, str, ProvisionRecord]]:
        """Every (kind, project, record) in the registry."""
        data = self.load()
        return [
            (kind, project, ProvisionRecord.model_validate(entry))
            for kind, entries in sorted(data.items())
            for project, entry in sorted(entries.items())
        ]
