"""Tests for deployer.config — defaults, YAML file and environment overrides."""

from pathlib import Path

import pytest

from deployer.config import DatabaseServerConfig, DeployerConfig


class TestDatabaseServerConfig:
    def test_defaults(self):
        db = DatabaseServerConfig()
        assert db.port == 5432
        assert db.admin_user == "postgres"
        assert db.advertised_host == "127.0.0.1"

    def test_advertised_host_prefers_public(self):
        db = DatabaseServerConfig(host="10.0.0.5", public_host="shared-postgres")
        assert db.advertised_host == "shared-postgres"

    def test_dict_no_password(self):
        assert "password" not in DatabaseServerConfig().dict

    def test_dict_with_password(self):
        d = DatabaseServerConfig(host="localhost", admin_password="secret").dict
        assert d["dbname"] == "postgres"
        assert d["host"] == "localhost"
        assert d["password"] == "secret"


class TestDeployerConfig:
    def test_defaults(self):
        cfg = DeployerConfig()
        assert cfg.max_releases == 5
        assert cfg.health_timeout == 30.0
        assert cfg.create_health_timeout == 60.0
        assert cfg.health_interval == 1.0
        assert cfg.checkout_timeout == 120
        assert cfg.build_timeout == 600
        assert cfg.mysql.port == 3306
        assert cfg.mysql.container == "shared-mysql"

    def test_derived_paths(self, tmp_path: Path):
        cfg = DeployerConfig(projects_dir=tmp_path)
        assert cfg.registry_dir == tmp_path / ".registry"
        assert cfg.vault_dir == tmp_path / ".registry" / "vault"
        assert cfg.legacy_config_file == tmp_path / ".registry" / "config.json"
        assert cfg.projects_index == tmp_path / ".registry" / "projects.json"
        assert cfg.databases_dir == tmp_path / "_databases"
        assert cfg.project_dir("alpha") == tmp_path / "alpha"

    def test_frozen(self):
        cfg = DeployerConfig()
        with pytest.raises(AttributeError):
            cfg.max_releases = 3  # type: ignore[misc]

    def test_database_server(self):
        cfg = DeployerConfig()
        assert cfg.database_server("postgres") is cfg.postgres
        with pytest.raises(ValueError):
            cfg.database_server("oracle")


class TestFromEnv:
    def test_overrides(self, tmp_path: Path):
        cfg = DeployerConfig.from_env({
            "DEPLOYER_PROJECTS_DIR": str(tmp_path),
            "DEPLOYER_DOMAIN_SUFFIX": "apps.example.com",
            "DEPLOYER_MAX_RELEASES": "3",
            "DEPLOYER_HEALTH_TIMEOUT": "12.5",
            "DEPLOYER_BUILD_TIMEOUT": "900",
            "DEPLOYER_PG_HOST": "db.internal",
            "DEPLOYER_PG_PORT": "5433",
            "DEPLOYER_MYSQL_ADMIN_PASSWORD": "rootpw",
        })
        assert cfg.projects_dir == tmp_path
        assert cfg.domain_suffix == "apps.example.com"
        assert cfg.max_releases == 3
        assert cfg.health_timeout == 12.5
        assert cfg.build_timeout == 900
        assert cfg.postgres.host == "db.internal"
        assert cfg.postgres.port == 5433
        assert cfg.mysql.admin_password == "rootpw"
        assert cfg.mysql.port == 3306

    def test_empty_environment_gives_defaults(self):
        assert DeployerConfig.from_env({}) == DeployerConfig()

    def test_bad_number(self):
        with pytest.raises(ValueError):
            DeployerConfig.from_env({"DEPLOYER_MAX_RELEASES": "many"})


class TestLoad:
    def test_missing_file_uses_defaults(self, tmp_path: Path):
        cfg = DeployerConfig.load(tmp_path / "nope.yaml", environ={})
        assert cfg == DeployerConfig()

    def test_yaml_file(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "projects_dir: /srv/projects\n"
            "domain: apps.example.com\n"
            "max_releases: 7\n"
            "health:\n  timeout: 45\n  interval: 2\n"
            "timeouts:\n  checkout: 60\n"
            "databases:\n  postgres:\n    host: pg.internal\n    admin_password: pw\n"
        )
        cfg = DeployerConfig.load(path, environ={})
        assert cfg.projects_dir == Path("/srv/projects")
        assert cfg.domain_suffix == "apps.example.com"
        assert cfg.max_releases == 7
        assert cfg.health_timeout == 45.0
        assert cfg.health_interval == 2.0
        assert cfg.checkout_timeout == 60
        assert cfg.postgres.host == "pg.internal"
        assert cfg.postgres.admin_password == "pw"
        assert cfg.postgres.public_host == "shared-postgres"

    def test_camel_case_keys(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("projectsDir: /srv/p\nmaxReleases: 2\n")
        cfg = DeployerConfig.load(path, environ={})
        assert cfg.projects_dir == Path("/srv/p")
        assert cfg.max_releases == 2

    def test_environment_beats_file(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("max_releases: 7\n")
        cfg = DeployerConfig.load(path, environ={"DEPLOYER_MAX_RELEASES": "4"})
        assert cfg.max_releases == 4

    def test_config_path_from_environment(self, tmp_path: Path):
        path = tmp_path / "custom.yaml"
        path.write_text("max_releases: 9\n")
        cfg = DeployerConfig.load(environ={"DEPLOYER_CONFIG": str(path)})
        assert cfg.max_releases == 9

    def test_invalid_yaml(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("max_releases: [unclosed\n")
        with pytest.raises(ValueError, match="Invalid config"):
            DeployerConfig.load(path, environ={})

    def test_non_mapping(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="expected a mapping"):
            DeployerConfig.load(path, environ={})
