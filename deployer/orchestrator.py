"""
DeploymentOrchestrator — create, update, rollback and remove projects.

State per project (metadata.json):

    absent → provisioning → active
    active → updating → active
    active → rolling_back → active
    active → removed

Every public operation returns an OperationResult. Expected failures
(DeployerError subclasses) are captured into the result after compensating
cleanup has run; anything else propagates.

Usage:
    orch = DeploymentOrchestrator.from_config(DeployerConfig.load())
    result = orch.create("alpha", "https://github.com/acme/alpha.git", db="postgres")
    result = orch.update("alpha")
    result = orch.rollback("alpha")
"""

from __future__ import annotations

import functools
import logging
import shutil
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from deployer import envfile
from deployer.config import DeployerConfig
from deployer.credentials import CredentialResolver, database_spec, project_env_spec
from deployer.errors import (
    ConflictError,
    DeployerError,
    DeployTimeoutError,
    NotFoundError,
    StorageError,
)
from deployer.fsutil import file_lock
from deployer.provision import ProvisionReconciler
from deployer.releases import ProjectIndex, ProjectMetadata, ProjectState, ReleaseStore
from deployer.runtime import (
    TRANSITIONAL_SUFFIX,
    ComposeRuntime,
    DockerBuilder,
    GitCheckout,
    HealthProbe,
    HealthReport,
    RuntimeDescriptor,
    image_tag,
)
from deployer.vault import SecretsVault

logger = logging.getLogger(__name__)

CANONICAL_COMPOSE = "docker-compose.yml"
TRANSITIONAL_COMPOSE = "docker-compose.next.yml"
BRANCH_FALLBACKS = {"main": "master", "master": "main"}


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class OperationResult:
    ok: bool
    metadata: ProjectMetadata | None = None
    error: DeployerError | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"ok": self.ok}
        if self.metadata is not None:
            out["metadata"] = self.metadata.model_dump(mode="json")
        if self.error is not None:
            out["error"] = {"kind": self.error.kind, "message": str(self.error)}
        out.update(self.details)
        return out


def operation(fn: Callable[..., OperationResult]) -> Callable[..., OperationResult]:
    """Capture DeployerError raised by ``fn`` into a failed OperationResult."""

    @functools.wraps(fn)
    def wrapper(self, name: str, *args, **kwargs) -> OperationResult:
        try:
            return fn(self, name, *args, **kwargs)
        except DeployerError as e:
            logger.error("%s %s failed: %s", fn.__name__, name, e)
            return OperationResult(ok=False, metadata=self._metadata_or_none(name), error=e)

    return wrapper


class DeploymentOrchestrator:
    """Drives the release lifecycle over the store, reconciler, credentials and runtime."""

    def __init__(
        self,
        cfg: DeployerConfig,
        *,
        vault: SecretsVault,
        credentials: CredentialResolver,
        reconciler: ProvisionReconciler,
        vcs: GitCheckout,
        builder: DockerBuilder,
        runtime: ComposeRuntime,
        probe: HealthProbe,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cfg = cfg
        self.vault = vault
        self.credentials = credentials
        self.reconciler = reconciler
        self.vcs = vcs
        self.builder = builder
        self.runtime = runtime
        self.probe = probe
        self.sleep = sleep
        self.clock = clock
        self.index = ProjectIndex(cfg.projects_index)

    @classmethod
    def from_config(
        cls, cfg: DeployerConfig, environ: Mapping[str, str] | None = None
    ) -> DeploymentOrchestrator:
        vault = SecretsVault.from_config(cfg, environ)
        return cls(
            cfg,
            vault=vault,
            credentials=CredentialResolver.from_config(cfg, vault=vault, environ=environ),
            reconciler=ProvisionReconciler.from_config(cfg),
            vcs=GitCheckout(timeout=cfg.checkout_timeout),
            builder=DockerBuilder(timeout=cfg.build_timeout),
            runtime=ComposeRuntime(timeout=cfg.runtime_timeout),
            probe=HealthProbe(cfg.projects_dir),
        )

    # ── Helpers ──────────────────────────────────────────────────────

    def store(self, name: str) -> ReleaseStore:
        return ReleaseStore(self.cfg.project_dir(name))

    def _lock(self, name: str):
        # Outside the project directory: create and remove delete that tree
        return file_lock(self.cfg.registry_dir / "locks" / f"{name}.lock")

    def _metadata_or_none(self, name: str) -> ProjectMetadata | None:
        try:
            return self.store(name).load_metadata()
        except DeployerError:
            return None

    def _require(self, store: ReleaseStore) -> ProjectMetadata:
        meta = store.load_metadata()
        if meta is None:
            raise NotFoundError(f"Project {store.name} not found")
        return meta

    def descriptor(
        self, meta: ProjectMetadata, version: str, transitional: bool = False
    ) -> RuntimeDescriptor:
        store = self.store(meta.name)
        release = store.release_path(version)
        return RuntimeDescriptor(
            project=meta.name,
            identity=meta.name + TRANSITIONAL_SUFFIX if transitional else meta.name,
            release_path=release,
            image=image_tag(meta.name, version),
            compose_file=store.project_dir
            / (TRANSITIONAL_COMPOSE if transitional else CANONICAL_COMPOSE),
            env_file=release / ".env" if store.env_file.exists() else None,
            port=meta.port,
            # The transitional instance is not routed, so it has no domain to probe
            domain=None if transitional else meta.domain,
        )

    def _canonical(self, store: ReleaseStore, meta: ProjectMetadata) -> RuntimeDescriptor | None:
        version = store.resolve_current()
        return self.descriptor(meta, version) if version else None

    def wait_healthy(self, descriptor: RuntimeDescriptor, timeout: float) -> HealthReport:
        """Poll the probe until it passes. Raises DeployTimeoutError once ``timeout`` elapses."""
        deadline = self.clock() + timeout
        while True:
            report = self.probe.check(descriptor)
            if report.healthy:
                logger.info("%s is healthy", descriptor.identity)
                return report
            if self.clock() >= deadline:
                raise DeployTimeoutError(
                    f"{descriptor.identity} did not become healthy within {timeout:g}s: "
                    f"{report.reason()}"
                )
            logger.debug("%s not healthy yet: %s", descriptor.identity, report.reason())
            self.sleep(self.cfg.health_interval)

    def _checkout(self, repo: str, branch: str, dest: Path, explicit: bool) -> str:
        """Check out ``branch``; fall back main↔master when the branch was not chosen explicitly."""
        try:
            self.vcs.checkout(repo, branch, dest)
            return branch
        except NotFoundError:
            fallback = BRANCH_FALLBACKS.get(branch)
            if explicit or fallback is None:
                raise
            logger.info("Branch %s not found, trying %s", branch, fallback)
            self._empty_dir(dest)
            self.vcs.checkout(repo, fallback, dest)
            return fallback

    @staticmethod
    def _empty_dir(path: Path) -> None:
        shutil.rmtree(path, ignore_errors=True)
        path.mkdir(parents=True, exist_ok=True)

    def _compensate(self, what: str, step: Callable[[], object]) -> None:
        """Run one cleanup step; a failing step is logged so the rest still run."""
        try:
            step()
        except Exception as e:
            logger.warning("Cleanup step '%s' failed: %s", what, e)

    def _environment(
        self, name: str, release: Path, credentials: Mapping[str, Any] | None
    ) -> dict[str, str]:
        generated: dict[str, str] = {}
        if credentials:
            generated.update(envfile.database_env(credentials))
        overrides = self.credentials.get(project_env_spec(name))
        if overrides:
            generated.update({k: str(v) for k, v in overrides.items()})
        return envfile.build_environment(release, generated)

    # ── create ───────────────────────────────────────────────────────

    @operation
    def create(
        self,
        name: str,
        repo: str,
        branch: str | None = None,
        db: str | None = None,
        domain: str | None = None,
        port: int | None = None,
    ) -> OperationResult:
        with self._lock(name):
            store = self.store(name)
            if store.exists() or name in self.index:
                raise ConflictError(f"Project {name} already exists")
            if db is not None:
                self.reconciler.engine(db)  # reject an unknown kind before touching anything

            if domain is None and self.cfg.domain_suffix:
                domain = f"{name}.{self.cfg.domain_suffix}"
            started: RuntimeDescriptor | None = None
            # Set only when this call created the registry entry; a kept database is not ours to drop
            provisioned = False
            try:
                version = store.allocate_version()
                release = store.release_path(version)
                used_branch = self._checkout(
                    repo, branch or self.cfg.default_branch, release, explicit=branch is not None
                )
                self.builder.build(release, image_tag(name, version))

                credentials = None
                if db is not None:
                    kept = self.reconciler.has_record(name, db)
                    result = self.reconciler.provision(name, db)
                    provisioned = not kept
                    self.credentials.set(database_spec(name), result.credentials())
                    credentials = self.credentials.get(database_spec(name))

                envfile.write_shared(store, self._environment(name, release, credentials))
                envfile.install(store, version)
                store.set_current(version)

                now = _now()
                meta = ProjectMetadata(
                    name=name,
                    repo=repo,
                    branch=used_branch,
                    state=ProjectState.PROVISIONING,
                    current_version=version,
                    domain=domain,
                    port=port,
                    database=db,
                    created_at=now,
                    updated_at=now,
                )
                store.save_metadata(meta)

                started = self.descriptor(meta, version)
                self.runtime.start(started)
                self.wait_healthy(started, self.cfg.create_health_timeout)

                meta.state = ProjectState.ACTIVE
                store.save_metadata(meta)
                self.index.put(meta)
            except Exception:
                logger.warning("Create of %s failed, rolling back partial state", name)
                if started is not None:
                    self._compensate("stop runtime", lambda: self.runtime.teardown(started))
                if provisioned:
                    self._compensate("drop database", lambda: self.reconciler.remove(name, db))
                    self._compensate(
                        "delete credentials", lambda: self.vault.delete(database_spec(name).name)
                    )
                self._compensate("remove project directory", lambda: shutil.rmtree(store.project_dir))
                self._compensate("remove index entry", lambda: self.index.remove(name))
                raise

        logger.info("Created %s at release %s", name, version)
        return OperationResult(ok=True, metadata=meta)

    # ── update ───────────────────────────────────────────────────────

    @operation
    def update(self, name: str, branch: str | None = None) -> OperationResult:
        with self._lock(name):
            store = self.store(name)
            meta = self._require(store)
            old_version = store.resolve_current()
            if old_version is None:
                raise StorageError(f"Project {name} has no current release")
            old = self.descriptor(meta, old_version)

            meta.state = ProjectState.UPDATING
            store.save_metadata(meta)

            version = store.allocate_version()
            release = store.release_path(version)
            transitional: RuntimeDescriptor | None = None
            try:
                used_branch = self._checkout(
                    meta.repo, branch or meta.branch, release, explicit=branch is not None
                )
                self.builder.build(release, image_tag(name, version))
                envfile.install(store, version)

                transitional = self.descriptor(meta, version, transitional=True)
                self.runtime.start(transitional)
                self.wait_healthy(transitional, self.cfg.health_timeout)
            except Exception:
                logger.warning("Update of %s failed, keeping %s", name, old_version)
                if transitional is not None:
                    self._compensate("stop transitional", lambda: self.runtime.teardown(transitional))
                self._compensate("remove release", lambda: store.remove_release(version))
                self._restore_state(store, meta, ProjectState.ACTIVE)
                raise

            try:
                store.set_current(version)
                # Same compose project as the old instance: the recreate stops the old container
                self.runtime.restart(self.descriptor(meta, version))
            except Exception:
                logger.warning("Cutover of %s failed, restoring %s", name, old_version)
                self._compensate("restore current", lambda: store.set_current(old_version))
                self._compensate("restart previous", lambda: self.runtime.restart(old))
                self._compensate("stop transitional", lambda: self.runtime.teardown(transitional))
                self._compensate("remove release", lambda: store.remove_release(version))
                self._restore_state(store, meta, ProjectState.ACTIVE)
                raise
            # Only the transitional instance is left to stop
            self._compensate("stop transitional", lambda: self.runtime.teardown(transitional))

            meta.previous_version = old_version
            meta.current_version = version
            meta.branch = used_branch
            meta.state = ProjectState.ACTIVE
            meta.updated_at = _now()
            store.save_metadata(meta)
            self.index.put(meta)
            pruned = store.prune(self.cfg.max_releases)

        logger.info("Updated %s from %s to %s", name, old_version, version)
        return OperationResult(ok=True, metadata=meta, details={"pruned": pruned})

    def _restore_state(
        self, store: ReleaseStore, meta: ProjectMetadata, state: ProjectState
    ) -> None:
        meta.state = state
        self._compensate("restore metadata", lambda: store.save_metadata(meta))

    # ── rollback ─────────────────────────────────────────────────────

    def rollback_target(self, store: ReleaseStore, version: str | None) -> str:
        current = store.resolve_current()
        if version is not None:
            if not store.release_path(version).is_dir():
                raise NotFoundError(f"Release {version} of {store.name} not found (pruned?)")
            return version
        older = [v for v in store.versions() if current is None or v < current]
        if not older:
            raise NotFoundError(f"No release of {store.name} precedes {current}")
        return older[-1]

    @operation
    def rollback(self, name: str, version: str | None = None) -> OperationResult:
        with self._lock(name):
            store = self.store(name)
            meta = self._require(store)
            current = store.resolve_current()
            target = self.rollback_target(store, version)
            if target == current:
                raise ConflictError(f"Release {target} is already current for {name}")

            meta.state = ProjectState.ROLLING_BACK
            store.save_metadata(meta)
            descriptor = self.descriptor(meta, target)
            try:
                self.builder.build(descriptor.release_path, descriptor.image)
                envfile.install(store, target)
                self.runtime.restart(descriptor)
                store.set_current(target)
                self.wait_healthy(descriptor, self.cfg.health_timeout)
            except Exception:
                logger.warning("Rollback of %s to %s failed, restoring %s", name, target, current)
                if current is not None:
                    self._compensate("restore current", lambda: store.set_current(current))
                    self._compensate(
                        "restart current", lambda: self.runtime.restart(self.descriptor(meta, current))
                    )
                self._restore_state(store, meta, ProjectState.ACTIVE)
                raise

            meta.rolled_back_from = current
            meta.previous_version = current
            meta.current_version = target
            meta.rolled_back_at = _now()
            meta.updated_at = meta.rolled_back_at
            meta.state = ProjectState.ACTIVE
            store.save_metadata(meta)
            self.index.put(meta)

        logger.info("Rolled back %s from %s to %s", name, current, target)
        return OperationResult(ok=True, metadata=meta)

    # ── remove ───────────────────────────────────────────────────────

    @operation
    def remove(self, name: str, keep_data: bool = False) -> OperationResult:
        with self._lock(name):
            store = self.store(name)
            meta = store.load_metadata()
            if meta is None and not store.exists() and name not in self.index:
                raise NotFoundError(f"Project {name} not found")

            if meta is not None:
                canonical = self._canonical(store, meta)
                if canonical is not None:
                    # A leftover transitional instance from an interrupted update goes too
                    self.runtime.teardown(self.descriptor(meta, canonical.version, transitional=True))
                    self.runtime.teardown(canonical, volumes=not keep_data)

            if not keep_data:
                dropped = self.reconciler.remove(name)
                if dropped:
                    logger.info("Dropped %s database(s) of %s", ", ".join(dropped), name)
                self.vault.delete(database_spec(name).name)
                self.vault.delete(project_env_spec(name).name)

            try:
                if store.exists():
                    shutil.rmtree(store.project_dir)
            except OSError as e:
                raise StorageError(f"Cannot remove {store.project_dir}: {e}") from e
            self.index.remove(name)

            if meta is not None:
                meta.state = ProjectState.REMOVED
                meta.updated_at = _now()

        logger.info("Removed %s", name)
        return OperationResult(ok=True, metadata=meta)

    # ── Inspection and pass-throughs ─────────────────────────────────

    @operation
    def status(self, name: str) -> OperationResult:
        store = self.store(name)
        meta = self._require(store)
        canonical = self._canonical(store, meta)
        details = {
            "current": store.resolve_current(),
            "releases": store.versions(),
            "runtime": self.runtime.status(canonical) if canonical else "no current release",
        }
        return OperationResult(ok=True, metadata=meta, details=details)

    def list_projects(self) -> OperationResult:
        try:
            projects = self.index.list()
        except DeployerError as e:
            return OperationResult(ok=False, error=e)
        return OperationResult(ok=True, details={"projects": projects})

    @operation
    def health(self, name: str) -> OperationResult:
        store = self.store(name)
        meta = self._require(store)
        canonical = self._canonical(store, meta)
        if canonical is None:
            raise NotFoundError(f"Project {name} has no current release")
        report = self.probe.check(canonical)
        return OperationResult(ok=report.healthy, metadata=meta, details={"health": report.to_dict()})

    def _pass_through(self, name: str, action: str) -> OperationResult:
        with self._lock(name):
            store = self.store(name)
            meta = self._require(store)
            canonical = self._canonical(store, meta)
            if canonical is None:
                raise NotFoundError(f"Project {name} has no current release")
            getattr(self.runtime, action)(canonical)
        return OperationResult(ok=True, metadata=meta)

    @operation
    def start(self, name: str) -> OperationResult:
        return self._pass_through(name, "start")

    @operation
    def stop(self, name: str) -> OperationResult:
        return self._pass_through(name, "stop")

    @operation
    def restart(self, name: str) -> OperationResult:
        return self._pass_through(name, "restart")
