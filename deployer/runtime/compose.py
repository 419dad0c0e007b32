"""
Container runtime driven through ``docker compose``.

Each runtime instance is a compose project named after its identity: the
canonical instance uses the project name, the transitional instance started
during an update uses ``<name>-next``. The descriptor is rendered into a
compose file beside the releases, so rebinding an instance to another release
is a rewrite of that file followed by ``up``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import yaml  # type: ignore[import-untyped]

from deployer import shell
from deployer.fsutil import atomic_write_text

logger = logging.getLogger(__name__)

TRANSITIONAL_SUFFIX = "-next"


@dataclass(frozen=True)
class RuntimeDescriptor:
    """Everything the runtime needs to run one instance of a release."""

    project: str
    identity: str
    release_path: Path
    image: str
    compose_file: Path
    env_file: Path | None = None
    port: int | None = None
    domain: str | None = None

    @property
    def version(self) -> str:
        return self.release_path.name

    @property
    def transitional(self) -> bool:
        return self.identity != self.project


class ComposeRuntime:
    """Start, stop and inspect release instances with docker compose."""

    def __init__(self, timeout: float = 120, network: str | None = None):
        self.timeout = timeout
        self.network = network

    def render(self, descriptor: RuntimeDescriptor) -> dict:
        service: dict = {
            "image": descriptor.image,
            "container_name": descriptor.identity,
            "restart": "unless-stopped",
            "working_dir": "/app",
            "labels": {
                "deployer.project": descriptor.project,
                "deployer.release": descriptor.version,
            },
        }
        if descriptor.env_file:
            service["env_file"] = [str(descriptor.env_file)]
        if descriptor.port:
            service["expose"] = [str(descriptor.port)]
        doc: dict = {"name": descriptor.identity, "services": {"app": service}}
        if self.network:
            service["networks"] = [self.network]
            doc["networks"] = {self.network: {"external": True}}
        return doc

    def write(self, descriptor: RuntimeDescriptor) -> Path:
        content = yaml.safe_dump(self.render(descriptor), sort_keys=False)
        atomic_write_text(descriptor.compose_file, content)
        return descriptor.compose_file

    def _compose(self, descriptor: RuntimeDescriptor, *args: str) -> str:
        cmd = [
            "docker", "compose",
            "-p", descriptor.identity,
            "-f", str(descriptor.compose_file),
            *args,
        ]
        return shell.run(cmd, timeout=self.timeout, cwd=descriptor.compose_file.parent).stdout

    def start(self, descriptor: RuntimeDescriptor) -> None:
        self.write(descriptor)
        logger.info("Starting %s on release %s", descriptor.identity, descriptor.version)
        self._compose(descriptor, "up", "-d")

    def restart(self, descriptor: RuntimeDescriptor) -> None:
        """Rebind the instance to the descriptor's release and recreate its container."""
        self.write(descriptor)
        logger.info("Restarting %s on release %s", descriptor.identity, descriptor.version)
        self._compose(descriptor, "up", "-d", "--force-recreate", "--remove-orphans")

    def stop(self, descriptor: RuntimeDescriptor) -> None:
        if not descriptor.compose_file.exists():
            logger.debug("No compose file for %s, nothing to stop", descriptor.identity)
            return
        logger.info("Stopping %s", descriptor.identity)
        self._compose(descriptor, "stop")

    def teardown(self, descriptor: RuntimeDescriptor, volumes: bool = False) -> None:
        """Remove the instance's containers. Transitional instances also lose their compose file."""
        if not descriptor.compose_file.exists():
            return
        args = ["down", "--remove-orphans"]
        if volumes:
            args.append("--volumes")
        logger.info("Tearing down %s", descriptor.identity)
        self._compose(descriptor, *args)
        if descriptor.transitional:
            descriptor.compose_file.unlink(missing_ok=True)

    def status(self, descriptor: RuntimeDescriptor) -> str:
        out = shell.run(
            ["docker", "ps", "-a", "--filter", f"name=^{descriptor.identity}$",
             "--format", "{{.Status}}"],
            timeout=self.timeout,
        ).stdout.strip()
        return out or "not created"
