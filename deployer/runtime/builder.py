"""Container image builds for releases."""

from __future__ import annotations

import logging
from pathlib import Path

from deployer import shell
from deployer.errors import ExternalToolError

logger = logging.getLogger(__name__)


def image_tag(project: str, version: str) -> str:
    return f"deployer/{project.lower()}:{version}"


class DockerBuilder:
    """Build a release directory into a tagged image with ``docker build``."""

    def __init__(self, timeout: float = 600):
        self.timeout = timeout

    def build(self, release_dir: Path, tag: str) -> None:
        if not (release_dir / "Dockerfile").exists():
            raise ExternalToolError(f"No Dockerfile in {release_dir}")
        logger.info("Building %s from %s", tag, release_dir)
        shell.run(["docker", "build", "-t", tag, str(release_dir)], timeout=self.timeout)
