"""Tests for deployer.credentials — ordered credential resolution."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from deployer.credentials import (
    PROXY_CREDENTIALS,
    CredentialResolver,
    EnvironmentSource,
    LegacySource,
    VaultSource,
    database_spec,
    project_env_spec,
)
from deployer.errors import CryptoError
from deployer.vault import SecretsVault


@pytest.fixture
def vault(tmp_path: Path) -> SecretsVault:
    return SecretsVault(tmp_path / ".registry" / "vault")


@pytest.fixture
def legacy_file(tmp_path: Path) -> Path:
    return tmp_path / ".registry" / "config.json"


def _resolver(vault: SecretsVault, legacy_file: Path, environ: dict | None = None) -> CredentialResolver:
    legacy = LegacySource(legacy_file)
    return CredentialResolver(
        vault,
        [EnvironmentSource(environ or {}), VaultSource(vault), legacy],
        legacy=legacy,
    )


def _write_legacy(path: Path, **data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"npmUrl": "http://localhost:81", **data}))


class TestSources:
    def test_environment_requires_all_fields(self):
        src = EnvironmentSource({"NPM_EMAIL": "a@b.c"})
        assert src.lookup(PROXY_CREDENTIALS) is None

    def test_environment_complete(self):
        src = EnvironmentSource({"NPM_EMAIL": "a@b.c", "NPM_PASSWORD": "pw"})
        assert src.lookup(PROXY_CREDENTIALS) == {"email": "a@b.c", "password": "pw"}

    def test_vault_ignores_partial_entry(self, vault: SecretsVault):
        vault.store("npm_credentials", {"email": "a@b.c"})
        assert VaultSource(vault).lookup(PROXY_CREDENTIALS) is None

    def test_vault_crypto_error_propagates(self, vault: SecretsVault):
        vault.store("npm_credentials", {"email": "a", "password": "b"})
        (vault.secrets_dir / "npm_credentials.enc").write_text("AAAA")
        with pytest.raises(CryptoError):
            VaultSource(vault).lookup(PROXY_CREDENTIALS)

    def test_legacy_missing_file(self, legacy_file: Path):
        assert LegacySource(legacy_file).lookup(PROXY_CREDENTIALS) is None


class TestResolutionOrder:
    def test_none(self, vault, legacy_file):
        r = _resolver(vault, legacy_file)
        assert r.get(PROXY_CREDENTIALS) is None
        assert r.get_credential_source(PROXY_CREDENTIALS) == "none"
        assert r.has_credentials(PROXY_CREDENTIALS) is False

    def test_override_wins(self, vault, legacy_file):
        vault.store("npm_credentials", {"email": "vault@x", "password": "v"})
        _write_legacy(legacy_file, npmEmail="legacy@x", npmPassword="l")
        r = _resolver(vault, legacy_file, {"NPM_EMAIL": "env@x", "NPM_PASSWORD": "e"})
        assert r.get(PROXY_CREDENTIALS) == {"email": "env@x", "password": "e"}
        assert r.get_credential_source(PROXY_CREDENTIALS) == "override"

    def test_vault_before_legacy(self, vault, legacy_file):
        vault.store("npm_credentials", {"email": "vault@x", "password": "v"})
        _write_legacy(legacy_file, npmEmail="legacy@x", npmPassword="l")
        r = _resolver(vault, legacy_file)
        assert r.get(PROXY_CREDENTIALS)["email"] == "vault@x"
        assert r.get_credential_source(PROXY_CREDENTIALS) == "encrypted"

    def test_legacy_fallback_warns_once(self, vault, legacy_file, caplog):
        _write_legacy(legacy_file, npmEmail="legacy@x", npmPassword="l")
        r = _resolver(vault, legacy_file)
        with caplog.at_level(logging.WARNING, logger="deployer.credentials"):
            assert r.get(PROXY_CREDENTIALS) == {"email": "legacy@x", "password": "l"}
            assert r.get_credential_source(PROXY_CREDENTIALS) == "legacy"
        warnings = [rec for rec in caplog.records if "deprecated" in rec.getMessage()]
        assert len(warnings) == 1


class TestSetAndMigrate:
    def test_set_stores_encrypted(self, vault, legacy_file):
        r = _resolver(vault, legacy_file)
        r.set(PROXY_CREDENTIALS, {"email": "a@b.c", "password": "pw"})
        assert vault.retrieve("npm_credentials") == {"email": "a@b.c", "password": "pw"}
        assert r.get_credential_source(PROXY_CREDENTIALS) == "encrypted"

    def test_set_rejects_incomplete(self, vault, legacy_file):
        with pytest.raises(ValueError):
            _resolver(vault, legacy_file).set(PROXY_CREDENTIALS, {"email": "a@b.c"})

    def test_migrate_moves_legacy_into_vault(self, vault, legacy_file):
        _write_legacy(legacy_file, npmEmail="legacy@x", npmPassword="l")
        r = _resolver(vault, legacy_file)
        assert r.has_legacy_credentials(PROXY_CREDENTIALS) is True

        assert r.migrate(PROXY_CREDENTIALS) is True

        remaining = json.loads(legacy_file.read_text())
        assert "npmEmail" not in remaining
        assert "npmPassword" not in remaining
        assert remaining["npmUrl"] == "http://localhost:81"
        assert vault.retrieve("npm_credentials") == {"email": "legacy@x", "password": "l"}
        assert r.get_credential_source(PROXY_CREDENTIALS) == "encrypted"
        assert r.has_legacy_credentials(PROXY_CREDENTIALS) is False

    def test_migrate_nothing_to_do(self, vault, legacy_file):
        r = _resolver(vault, legacy_file)
        assert r.migrate(PROXY_CREDENTIALS) is False
        assert not legacy_file.exists()

    def test_resolution_never_migrates(self, vault, legacy_file):
        _write_legacy(legacy_file, npmEmail="legacy@x", npmPassword="l")
        r = _resolver(vault, legacy_file)
        r.get(PROXY_CREDENTIALS)
        assert vault.retrieve("npm_credentials") is None
        assert "npmEmail" in json.loads(legacy_file.read_text())


class TestProjectSpecs:
    def test_env_prefix_collects_matching_variables(self):
        src = EnvironmentSource(
            {"DEPLOYER_ENV_MY_APP_APP_NAME": "x", "DEPLOYER_ENV_MY_APP_EMPTY": "", "OTHER": "y"}
        )
        assert src.lookup(project_env_spec("my-app")) == {"APP_NAME": "x"}

    def test_open_spec_accepts_any_vault_mapping(self, vault, legacy_file):
        vault.store("alpha_env", {"FEATURE_X": 1})
        resolver = _resolver(vault, legacy_file)
        assert resolver.get(project_env_spec("alpha")) == {"FEATURE_X": 1}
        assert resolver.get_credential_source(project_env_spec("alpha")) == "encrypted"

    def test_project_env_override_wins(self, vault, legacy_file):
        vault.store("alpha_env", {"APP_NAME": "vault"})
        resolver = _resolver(vault, legacy_file, {"DEPLOYER_ENV_ALPHA_APP_NAME": "env"})
        assert resolver.get(project_env_spec("alpha")) == {"APP_NAME": "env"}

    def test_database_spec_names(self):
        spec = database_spec("my-app")
        assert spec.name == "my-app_db"
        assert spec.env_vars["password"] == "DEPLOYER_DB_MY_APP_PASSWORD"

    def test_partial_database_override_falls_through(self, vault, legacy_file):
        creds = {"type": "postgres", "database": "a", "username": "u", "password": "p",
                 "host": "h", "port": 5432, "url": "postgresql://u:p@h:5432/a"}
        vault.store("alpha_db", creds)
        resolver = _resolver(vault, legacy_file, {"DEPLOYER_DB_ALPHA_PASSWORD": "other"})
        assert resolver.get(database_spec("alpha")) == creds


class TestFromConfig:
    def test_builds_three_tiers(self, tmp_path: Path):
        from deployer.config import DeployerConfig

        cfg = DeployerConfig(projects_dir=tmp_path)
        r = CredentialResolver.from_config(cfg, environ={})
        assert [s.label for s in r.sources] == ["override", "encrypted", "legacy"]
        assert r.vault.vault_dir == tmp_path / ".registry" / "vault"
