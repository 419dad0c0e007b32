"""Shared fixtures for provisioning tests: an in-memory database engine."""

from __future__ import annotations

from pathlib import Path

import pytest

from deployer.config import DatabaseServerConfig
from deployer.errors import EngineError
from deployer.provision.engines import DatabaseEngine
from deployer.provision.reconciler import ProvisionReconciler
from deployer.provision.registry import ProvisionRegistry


class FakeEngine(DatabaseEngine):
    """Keeps accounts/databases in dicts. ``fail_once`` makes one named method raise."""

    kind = "postgres"
    url_scheme = "postgresql"

    def __init__(self):
        super().__init__(DatabaseServerConfig(public_host="shared-postgres"))
        self.accounts: dict[str, str] = {}
        self.databases: dict[str, str] = {}
        self.grants: set[tuple[str, str]] = set()
        self.calls: list[str] = []
        self.fail_once: str | None = None
        # Accounts whose password cannot be changed (simulates an engine-side policy)
        self.frozen: set[str] = set()

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if self.fail_once == name:
            self.fail_once = None
            raise EngineError(f"simulated crash in {name}")

    def account_exists(self, username):
        self._call("account_exists")
        return username in self.accounts

    def create_account(self, username, password):
        self._call("create_account")
        if username in self.accounts:
            raise EngineError(f"role {username} already exists")
        self.accounts[username] = password

    def set_password(self, username, password):
        self._call("set_password")
        if username not in self.accounts:
            raise EngineError(f"role {username} does not exist")
        if username not in self.frozen:
            self.accounts[username] = password

    def can_login(self, username, password, database=None):
        self.calls.append("can_login")
        if self.accounts.get(username) != password:
            return False
        return database is None or database in self.databases

    def ensure_database(self, database, owner):
        self._call("ensure_database")
        self.databases.setdefault(database, owner)

    def grant(self, database, username):
        self._call("grant")
        self.grants.add((database, username))

    def drop(self, database, username):
        self._call("drop")
        self.databases.pop(database, None)
        self.accounts.pop(username, None)

    def dump(self, database, username, password, dest: Path):
        dest.write_text(f"-- dump of {database}\n")

    def load(self, database, username, password, src: Path):
        self.calls.append(f"load:{src.read_text()}")


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def registry(tmp_path: Path) -> ProvisionRegistry:
    return ProvisionRegistry(tmp_path / "_databases" / "registry.json")


@pytest.fixture
def reconciler(registry: ProvisionRegistry, engine: FakeEngine, tmp_path: Path) -> ProvisionReconciler:
    return ProvisionReconciler(registry, {"postgres": engine}, tmp_path / "_databases")
