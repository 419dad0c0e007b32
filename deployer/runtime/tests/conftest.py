"""Shared fixtures for runtime tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from deployer.runtime.compose import RuntimeDescriptor


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    release = tmp_path / "alpha" / "releases" / "v20240101.000000000000"
    release.mkdir(parents=True)
    return tmp_path / "alpha"


@pytest.fixture
def descriptor(project_dir: Path) -> RuntimeDescriptor:
    release = project_dir / "releases" / "v20240101.000000000000"
    return RuntimeDescriptor(
        project="alpha",
        identity="alpha",
        release_path=release,
        image="deployer/alpha:v20240101.000000000000",
        compose_file=project_dir / "docker-compose.yml",
        env_file=release / ".env",
        port=3000,
        domain="alpha.example.com",
    )


@pytest.fixture
def transitional(descriptor: RuntimeDescriptor, project_dir: Path) -> RuntimeDescriptor:
    return RuntimeDescriptor(
        project="alpha",
        identity="alpha-next",
        release_path=descriptor.release_path,
        image=descriptor.image,
        compose_file=project_dir / "docker-compose.next.yml",
    )
