"""
Credential resolution — ordered sources, first match wins.

Priority:
    1. Process environment (CI/CD overrides)
    2. Encrypted vault (default for interactive use)
    3. Legacy plaintext config.json (read-only fallback, deprecated)

Usage:
    resolver = CredentialResolver.from_config(cfg)
    creds = resolver.get(PROXY_CREDENTIALS)         # {"email": ..., "password": ...} or None
    resolver.get_credential_source(PROXY_CREDENTIALS)  # "override" | "encrypted" | "legacy" | "none"
    resolver.migrate(PROXY_CREDENTIALS)             # legacy → vault, explicit only
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from deployer.fsutil import locked_json, read_json
from deployer.vault import SecretsVault

if TYPE_CHECKING:
    from deployer.config import DeployerConfig

logger = logging.getLogger(__name__)

SOURCE_OVERRIDE = "override"
SOURCE_ENCRYPTED = "encrypted"
SOURCE_LEGACY = "legacy"
SOURCE_NONE = "none"


@dataclass(frozen=True)
class CredentialSpec:
    """Describes one credential set and where each source keeps its fields.

    A spec without ``fields`` is open-ended: any non-empty mapping matches, and
    the environment tier collects every variable starting with ``env_prefix``.
    """

    name: str  # vault secret name
    fields: tuple[str, ...]
    env_vars: dict[str, str] = field(default_factory=dict)  # field -> env var
    legacy_keys: dict[str, str] = field(default_factory=dict)  # field -> config.json key
    env_prefix: str = ""


PROXY_CREDENTIALS = CredentialSpec(
    name="npm_credentials",
    fields=("email", "password"),
    env_vars={"email": "NPM_EMAIL", "password": "NPM_PASSWORD"},
    legacy_keys={"email": "npmEmail", "password": "npmPassword"},
)

DATABASE_FIELDS = ("type", "database", "username", "password", "host", "port", "url")


def _env_token(project: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", project).upper()


def database_spec(project: str) -> CredentialSpec:
    """Database credentials of one project, vault secret ``<project>_db``.

    Override with DEPLOYER_DB_<PROJECT>_<FIELD>, e.g. DEPLOYER_DB_MY_APP_PASSWORD.
    """
    token = _env_token(project)
    return CredentialSpec(
        name=f"{project}_db",
        fields=DATABASE_FIELDS,
        env_vars={f: f"DEPLOYER_DB_{token}_{f.upper()}" for f in DATABASE_FIELDS},
    )


def project_env_spec(project: str) -> CredentialSpec:
    """Extra environment of one project, vault secret ``<project>_env``.

    Override with DEPLOYER_ENV_<PROJECT>_<KEY>, e.g. DEPLOYER_ENV_MY_APP_APP_NAME.
    """
    return CredentialSpec(
        name=f"{project}_env", fields=(), env_prefix=f"DEPLOYER_ENV_{_env_token(project)}_"
    )


def _complete(spec: CredentialSpec, values: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Return the spec's fields if every one of them is present and non-empty."""
    if not values:
        return None
    if not spec.fields:
        return dict(values)
    picked = {f: values.get(f) for f in spec.fields}
    if all(picked.values()):
        return picked
    return None


class CredentialSource:
    """One tier of the resolution chain."""

    label = SOURCE_NONE

    def lookup(self, spec: CredentialSpec) -> dict[str, Any] | None:
        raise NotImplementedError


class EnvironmentSource(CredentialSource):
    label = SOURCE_OVERRIDE

    def __init__(self, environ: Mapping[str, str] | None = None):
        self.environ = os.environ if environ is None else environ

    def lookup(self, spec: CredentialSpec) -> dict[str, Any] | None:
        if spec.env_prefix:
            found = {
                key[len(spec.env_prefix) :]: value
                for key, value in self.environ.items()
                if key.startswith(spec.env_prefix) and value
            }
            return _complete(spec, found)
        if not spec.env_vars:
            return None
        return _complete(spec, {f: self.environ.get(var) for f, var in spec.env_vars.items()})


class VaultSource(CredentialSource):
    label = SOURCE_ENCRYPTED

    def __init__(self, vault: SecretsVault):
        self.vault = vault

    def lookup(self, spec: CredentialSpec) -> dict[str, Any] | None:
        # CryptoError propagates: a corrupt vault needs an operator, not a silent fallback
        value = self.vault.retrieve(spec.name)
        if not isinstance(value, dict):
            return None
        return _complete(spec, value)


class LegacySource(CredentialSource):
    """Plaintext config.json from older installs. Read-only here; see migrate()."""

    label = SOURCE_LEGACY

    def __init__(self, config_file: Path):
        self.config_file = config_file
        self._warned = False

    def load(self) -> dict[str, Any]:
        data = read_json(self.config_file, {})
        return data if isinstance(data, dict) else {}

    def raw_lookup(self, spec: CredentialSpec) -> dict[str, Any] | None:
        if not spec.legacy_keys:
            return None
        data = self.load()
        return _complete(spec, {f: data.get(key) for f, key in spec.legacy_keys.items()})

    def lookup(self, spec: CredentialSpec) -> dict[str, Any] | None:
        found = self.raw_lookup(spec)
        if found and not self._warned:
            logger.warning(
                "Using plaintext credentials from %s is deprecated. "
                "Run 'deployer config migrate' to move them to encrypted storage.",
                self.config_file,
            )
            self._warned = True
        return found


class CredentialResolver:
    """Resolve credentials through an ordered list of sources."""

    def __init__(
        self,
        vault: SecretsVault,
        sources: Sequence[CredentialSource],
        legacy: LegacySource | None = None,
    ):
        self.vault = vault
        self.sources = list(sources)
        self.legacy = legacy

    @classmethod
    def from_config(
        cls,
        cfg: DeployerConfig,
        vault: SecretsVault | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> CredentialResolver:
        vault = vault or SecretsVault.from_config(cfg, environ)
        legacy = LegacySource(cfg.legacy_config_file)
        return cls(vault, [EnvironmentSource(environ), VaultSource(vault), legacy], legacy=legacy)

    def resolve(self, spec: CredentialSpec) -> tuple[str, dict[str, Any] | None]:
        for source in self.sources:
            found = source.lookup(spec)
            if found is not None:
                return source.label, found
        return SOURCE_NONE, None

    def get(self, spec: CredentialSpec) -> dict[str, Any] | None:
        return self.resolve(spec)[1]

    def get_credential_source(self, spec: CredentialSpec) -> str:
        return self.resolve(spec)[0]

    def has_credentials(self, spec: CredentialSpec) -> bool:
        return self.get(spec) is not None

    def set(self, spec: CredentialSpec, values: Mapping[str, Any]) -> None:
        """Store a credential set in the vault."""
        complete = _complete(spec, values)
        if complete is None:
            raise ValueError(f"{spec.name} requires non-empty {', '.join(spec.fields)}")
        self.vault.store(spec.name, complete)

    def has_legacy_credentials(self, spec: CredentialSpec) -> bool:
        return self.legacy is not None and self.legacy.raw_lookup(spec) is not None

    def migrate(self, spec: CredentialSpec) -> bool:
        """Copy legacy plaintext credentials into the vault and strip them from config.json.

        Returns True if anything was migrated.
        """
        if self.legacy is None or not self.legacy.config_file.exists():
            return False
        with locked_json(self.legacy.config_file, default={}, mode=0o600) as data:
            values = _complete(spec, {f: data.get(key) for f, key in spec.legacy_keys.items()})
            if values is None:
                return False
            # Vault first: if this fails the plaintext copy is still there
            self.vault.store(spec.name, values)
            for key in spec.legacy_keys.values():
                data.pop(key, None)
        logger.info("Migrated %s from %s to encrypted storage", spec.name, self.legacy.config_file)
        return True
