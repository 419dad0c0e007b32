"""
Configuration for the deployer.

Values come from (lowest to highest priority) built-in defaults, an optional
YAML file and DEPLOYER_* environment variables. There is no module-level
cache: callers build a DeployerConfig once and hand it to each component.

Usage:
    from deployer.config import DeployerConfig
    cfg = DeployerConfig.load()
    print(cfg.projects_dir)     # /home/user/projects or $DEPLOYER_PROJECTS_DIR
    print(cfg.registry_dir)     # <projects>/.registry
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "deployer" / "config.yaml"


@dataclass(frozen=True)
class DatabaseServerConfig:
    """Shared database server that project accounts are provisioned on."""

    host: str = "127.0.0.1"
    port: int = 5432
    admin_user: str = "postgres"
    admin_password: str = ""
    container: str = "shared-postgres"
    # Host the applications use to reach the server (container name on the proxy network)
    public_host: str = ""

    @property
    def advertised_host(self) -> str:
        return self.public_host or self.host

    @property
    def dict(self) -> dict[str, str | int]:
        """Return psycopg2.connect() kwargs for the admin account."""
        d: dict[str, str | int] = {
            "dbname": "postgres",
            "host": self.host,
            "port": self.port,
            "user": self.admin_user,
        }
        if self.admin_password:
            d["password"] = self.admin_password
        return d


def _default_postgres() -> DatabaseServerConfig:
    return DatabaseServerConfig(public_host="shared-postgres")


def _default_mysql() -> DatabaseServerConfig:
    return DatabaseServerConfig(
        port=3306, admin_user="root", container="shared-mysql", public_host="shared-mysql"
    )


@dataclass(frozen=True)
class DeployerConfig:
    """Top-level deployer configuration."""

    projects_dir: Path = field(default_factory=lambda: Path.home() / "projects")
    domain_suffix: str = ""
    default_branch: str = "main"

    # Releases
    max_releases: int = 5

    # Health gate (seconds)
    health_timeout: float = 30.0
    create_health_timeout: float = 60.0
    health_interval: float = 1.0

    # External command budgets (seconds)
    checkout_timeout: int = 120
    build_timeout: int = 600
    runtime_timeout: int = 120

    # Database servers
    postgres: DatabaseServerConfig = field(default_factory=_default_postgres)
    mysql: DatabaseServerConfig = field(default_factory=_default_mysql)

    @property
    def registry_dir(self) -> Path:
        return self.projects_dir / ".registry"

    @property
    def databases_dir(self) -> Path:
        return self.projects_dir / "_databases"

    @property
    def vault_dir(self) -> Path:
        return self.registry_dir / "vault"

    @property
    def legacy_config_file(self) -> Path:
        return self.registry_dir / "config.json"

    @property
    def projects_index(self) -> Path:
        return self.registry_dir / "projects.json"

    def project_dir(self, name: str) -> Path:
        return self.projects_dir / name

    def database_server(self, kind: str) -> DatabaseServerConfig:
        if kind == "postgres":
            return self.postgres
        if kind == "mysql":
            return self.mysql
        raise ValueError(f"Unsupported database type: {kind}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> DeployerConfig:
        """Build a config from defaults plus environment variables only."""
        return _apply_env(cls(), os.environ if environ is None else environ)

    @classmethod
    def load(
        cls,
        path: Path | str | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> DeployerConfig:
        """Build a config from defaults, the YAML file (if any), then the environment."""
        env = os.environ if environ is None else environ
        if path is None:
            path = env.get("DEPLOYER_CONFIG") or DEFAULT_CONFIG_PATH
        cfg = _apply_file(cls(), Path(path))
        return _apply_env(cfg, env)


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        logger.debug("No config file at %s, using defaults", path)
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (yaml.YAMLError, OSError) as e:
        raise ValueError(f"Invalid config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Invalid config file {path}: expected a mapping")
    return data


def _server_from_mapping(base: DatabaseServerConfig, data: Mapping[str, Any]) -> DatabaseServerConfig:
    return replace(
        base,
        host=str(data.get("host", base.host)),
        port=int(data.get("port", base.port)),
        admin_user=str(data.get("admin_user", base.admin_user)),
        admin_password=str(data.get("admin_password", base.admin_password)),
        container=str(data.get("container", base.container)),
        public_host=str(data.get("public_host", base.public_host)),
    )


def _apply_file(cfg: DeployerConfig, path: Path) -> DeployerConfig:
    data = _load_yaml(path)
    if not data:
        return cfg

    # config.json from older installs used camelCase keys
    projects_dir = data.get("projects_dir", data.get("projectsDir"))
    domain = data.get("domain_suffix", data.get("domain", data.get("domainSuffix")))
    max_releases = data.get("max_releases", data.get("maxReleases"))
    health = data.get("health", {}) or {}
    timeouts = data.get("timeouts", {}) or {}
    databases = data.get("databases", {}) or {}

    return replace(
        cfg,
        projects_dir=Path(projects_dir).expanduser() if projects_dir else cfg.projects_dir,
        domain_suffix=str(domain) if domain else cfg.domain_suffix,
        default_branch=str(data.get("default_branch", cfg.default_branch)),
        max_releases=int(max_releases) if max_releases else cfg.max_releases,
        health_timeout=float(health.get("timeout", cfg.health_timeout)),
        create_health_timeout=float(health.get("create_timeout", cfg.create_health_timeout)),
        health_interval=float(health.get("interval", cfg.health_interval)),
        checkout_timeout=int(timeouts.get("checkout", cfg.checkout_timeout)),
        build_timeout=int(timeouts.get("build", cfg.build_timeout)),
        runtime_timeout=int(timeouts.get("runtime", cfg.runtime_timeout)),
        postgres=_server_from_mapping(cfg.postgres, databases.get("postgres", {}) or {}),
        mysql=_server_from_mapping(cfg.mysql, databases.get("mysql", {}) or {}),
    )


def _server_from_env(
    base: DatabaseServerConfig, env: Mapping[str, str], prefix: str
) -> DatabaseServerConfig:
    return replace(
        base,
        host=env.get(f"{prefix}_HOST", base.host),
        port=int(env.get(f"{prefix}_PORT", base.port)),
        admin_user=env.get(f"{prefix}_ADMIN_USER", base.admin_user),
        admin_password=env.get(f"{prefix}_ADMIN_PASSWORD", base.admin_password),
        container=env.get(f"{prefix}_CONTAINER", base.container),
        public_host=env.get(f"{prefix}_PUBLIC_HOST", base.public_host),
    )


def _apply_env(cfg: DeployerConfig, env: Mapping[str, str]) -> DeployerConfig:
    projects_dir = env.get("DEPLOYER_PROJECTS_DIR")
    return replace(
        cfg,
        projects_dir=Path(projects_dir).expanduser() if projects_dir else cfg.projects_dir,
        domain_suffix=env.get("DEPLOYER_DOMAIN_SUFFIX", cfg.domain_suffix),
        default_branch=env.get("DEPLOYER_DEFAULT_BRANCH", cfg.default_branch),
        max_releases=int(env.get("DEPLOYER_MAX_RELEASES", cfg.max_releases)),
        health_timeout=float(env.get("DEPLOYER_HEALTH_TIMEOUT", cfg.health_timeout)),
        create_health_timeout=float(
            env.get("DEPLOYER_CREATE_HEALTH_TIMEOUT", cfg.create_health_timeout)
        ),
        health_interval=float(env.get("DEPLOYER_HEALTH_INTERVAL", cfg.health_interval)),
        checkout_timeout=int(env.get("DEPLOYER_CHECKOUT_TIMEOUT", cfg.checkout_timeout)),
        build_timeout=int(env.get("DEPLOYER_BUILD_TIMEOUT", cfg.build_timeout)),
        runtime_timeout=int(env.get("DEPLOYER_RUNTIME_TIMEOUT", cfg.runtime_timeout)),
        postgres=_server_from_env(cfg.postgres, env, "DEPLOYER_PG"),
        mysql=_server_from_env(cfg.mysql, env, "DEPLOYER_MYSQL"),
    )
