"""
External collaborators of the orchestrator: source checkout, image build,
container runtime and health probing.

Usage:
    from deployer.runtime import ComposeRuntime, DockerBuilder, GitCheckout, HealthProbe
"""

from deployer.runtime.builder import DockerBuilder, image_tag
from deployer.runtime.compose import TRANSITIONAL_SUFFIX, ComposeRuntime, RuntimeDescriptor
from deployer.runtime.health import HealthCheck, HealthProbe, HealthReport
from deployer.runtime.vcs import GitCheckout

__all__ = [
    "TRANSITIONAL_SUFFIX",
    "ComposeRuntime",
    "DockerBuilder",
    "GitCheckout",
    "HealthCheck",
    "HealthProbe",
    "HealthReport",
    "RuntimeDescriptor",
    "image_tag",
]
