"""
ProvisionReconciler — converge a database engine onto the provisioning registry.

Each call observes three facts and looks the action up in DECISIONS:

    registry has password | engine account exists | login with registry password
    ----------------------+-----------------------+------------------------------
    yes                   | yes                   | yes  -> REUSE
    yes                   | yes                   | no   -> RESET_TO_REGISTRY
    yes                   | no                    | -    -> CREATE_WITH_REGISTRY
    no                    | yes                   | -    -> ROTATE_EXISTING
    no                    | no                    | -    -> CREATE_NEW

Every branch then ensures the database and grants exist and re-probes login as
a post-condition. Newly generated passwords are written to the registry before
the engine is touched, so a crash mid-call lands in a row of the table that the
next call repairs with at most one reset.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from deployer.errors import ConflictError, NotFoundError
from deployer.fsutil import file_lock
from deployer.provision.engines import DatabaseEngine, engine_for
from deployer.provision.registry import ProvisionRecord, ProvisionRegistry

if TYPE_CHECKING:
    from deployer.config import DeployerConfig

logger = logging.getLogger(__name__)


class Action(StrEnum):
    REUSE = "reuse"
    RESET_TO_REGISTRY = "reset_to_registry"
    CREATE_WITH_REGISTRY = "create_with_registry"
    ROTATE_EXISTING = "rotate_existing"
    CREATE_NEW = "create_new"


# (registry has password, account exists, login succeeds) -> action
# login is None when it was not probed
DECISIONS: dict[tuple[bool, bool, bool | None], Action] = {
    (True, True, True): Action.REUSE,
    (True, True, False): Action.RESET_TO_REGISTRY,
    (True, False, None): Action.CREATE_WITH_REGISTRY,
    (False, True, None): Action.ROTATE_EXISTING,
    (False, False, None): Action.CREATE_NEW,
}


def generate_password() -> str:
    return secrets.token_hex(16)


def database_name(project: str) -> str:
    return re.sub(r"[^a-zA-Z0-9]", "_", project).lower()


@dataclass
class ProvisionResult:
    kind: str
    project: str
    database: str
    username: str
    password: str
    host: str
    port: int
    url: str
    action: Action

    def credentials(self) -> dict[str, str | int]:
        return {
            "type": self.kind,
            "database": self.database,
            "username": self.username,
            "password": self.password,
            "host": self.host,
            "port": self.port,
            "url": self.url,
        }


class ProvisionReconciler:
    """Idempotent database account provisioning."""

    def __init__(
        self,
        registry: ProvisionRegistry,
        engines: dict[str, DatabaseEngine],
        lock_dir: Path,
    ):
        self.registry = registry
        self.engines = engines
        self.lock_dir = Path(lock_dir)

    @classmethod
    def from_config(cls, cfg: DeployerConfig) -> ProvisionReconciler:
        return cls(
            ProvisionRegistry(cfg.databases_dir / "registry.json"),
            {kind: engine_for(kind, cfg) for kind in ("postgres", "mysql")},
            cfg.databases_dir,
        )

    def engine(self, kind: str) -> DatabaseEngine:
        try:
            return self.engines[kind]
        except KeyError:
            raise ValueError(f"Unsupported database type: {kind}") from None

    def _project_lock(self, kind: str, project: str) -> Path:
        return self.lock_dir / f".provision-{kind}-{database_name(project)}.lock"

    def observe(self, kind: str, record: ProvisionRecord) -> tuple[bool, bool, bool | None]:
        engine = self.engine(kind)
        has_password = bool(record.password)
        exists = engine.account_exists(record.username)
        login = None
        if has_password and exists:
            login = engine.can_login(record.username, record.password)
        return has_password, exists, login

    def provision(self, project: str, kind: str) -> ProvisionResult:
        """Converge (project, kind) and return working credentials."""
        engine = self.engine(kind)
        # Serialize reconciles of the same project; the registry has its own lock
        with file_lock(self._project_lock(kind, project)):
            record = self.registry.get(kind, project)
            if record is None:
                db = database_name(project)
                record = ProvisionRecord(database=db, username=f"user_{db}")
            self._check_ownership(kind, project, record)
            record.host = engine.host
            record.port = engine.port

            state = self.observe(kind, record)
            action = DECISIONS[state]
            logger.info("Provisioning %s/%s: %s", kind, project, action.value)
            self._apply(action, kind, project, engine, record)

            engine.ensure_database(record.database, record.username)
            engine.grant(record.database, record.username)

            if not engine.can_login(record.username, record.password, record.database):
                raise ConflictError(
                    f"{kind} account {record.username} cannot log in to {record.database} "
                    "with the registry password after reconciliation"
                )
            self.registry.put(kind, project, record)

        return ProvisionResult(
            kind=kind,
            project=project,
            database=record.database,
            username=record.username,
            password=record.password,
            host=record.host,
            port=record.port,
            url=engine.url(record.username, record.password, record.database),
            action=action,
        )

    def _check_ownership(self, kind: str, project: str, record: ProvisionRecord) -> None:
        """Refuse names another project already holds (e.g. my-app and my_app)."""
        for other_kind, other, existing in self.registry.all():
            if other_kind != kind or other == project:
                continue
            if existing.username == record.username or existing.database == record.database:
                raise ConflictError(
                    f"{kind} database {record.database} / account {record.username} "
                    f"already belongs to project {other}"
                )

    def _apply(
        self,
        action: Action,
        kind: str,
        project: str,
        engine: DatabaseEngine,
        record: ProvisionRecord,
    ) -> None:
        if action is Action.REUSE:
            return

        if action is Action.RESET_TO_REGISTRY:
            engine.set_password(record.username, record.password)
            if not engine.can_login(record.username, record.password):
                # Never invent a third password: the operator has to look at this
                raise ConflictError(
                    f"{kind} account {record.username} still rejects the registry password "
                    "after a reset"
                )
            return

        if action is Action.CREATE_WITH_REGISTRY:
            engine.create_account(record.username, record.password)
            return

        # Both remaining rows need a fresh password, recorded before the engine changes
        record.password = generate_password()
        self.registry.put(kind, project, record)
        if action is Action.ROTATE_EXISTING:
            engine.set_password(record.username, record.password)
        else:
            engine.create_account(record.username, record.password)

    def remove(self, project: str, kind: str | None = None) -> list[str]:
        """Drop the project's databases and accounts. Returns the kinds removed."""
        removed = []
        for found_kind, record in self.registry.find(project):
            if kind and found_kind != kind:
                continue
            with file_lock(self._project_lock(found_kind, project)):
                self.engine(found_kind).drop(record.database, record.username)
                self.registry.remove(found_kind, project)
            removed.append(found_kind)
        return removed

    def has_record(self, project: str, kind: str) -> bool:
        return self.registry.get(kind, project) is not None

    def lookup(self, project: str) -> tuple[str, ProvisionRecord]:
        found = self.registry.find(project)
        if not found:
            raise NotFoundError(f"No database found for project {project}")
        return found[0]

    def backup(self, project: str, dest: Path) -> Path:
        kind, record = self.lookup(project)
        dest.parent.mkdir(parents=True, exist_ok=True)
        self.engine(kind).dump(record.database, record.username, record.password or "", dest)
        logger.info("Backed up %s database %s to %s", kind, record.database, dest)
        return dest

    def restore(self, project: str, src: Path) -> None:
        if not src.exists():
            raise NotFoundError(f"Backup file not found: {src}")
        kind, record = self.lookup(project)
        self.engine(kind).load(record.database, record.username, record.password or "", src)
        logger.info("Restored %s database %s from %s", kind, record.database, src)

    def list_records(self) -> list[tuple[str, str, ProvisionRecord]]:
        return self.registry.all()
