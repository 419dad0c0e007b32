"""
Health probe — named checks against a running release instance.

Checks:
    container_status   the container is up and, if it declares a HEALTHCHECK,
                       reports healthy
    resource_usage     CPU and memory below 90% (passes when stats are unavailable)
    http_endpoint      https://<domain> (then http://) answers below 500;
                       only when the instance has a domain
    disk_space         the projects filesystem is below the usage threshold

Probes never raise for a failing check: failures are reported in the
HealthReport and the caller decides what to do.
"""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import httpx

from deployer import shell
from deployer.errors import DeployerError
from deployer.runtime.compose import RuntimeDescriptor

logger = logging.getLogger(__name__)

_MEMORY_RE = re.compile(r"([\d.]+)\s*([KMG]iB|B)\s*/\s*([\d.]+)\s*([KMG]iB|B)")
_UNITS = {"B": 1, "KiB": 1024, "MiB": 1024**2, "GiB": 1024**3}


@dataclass
class HealthCheck:
    name: str
    passed: bool
    message: str = ""

    def to_dict(self) -> dict:
        return {"name": self.name, "passed": self.passed, "message": self.message}


@dataclass
class HealthReport:
    checks: list[HealthCheck]
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def healthy(self) -> bool:
        return bool(self.checks) and all(c.passed for c in self.checks)

    def failures(self) -> list[HealthCheck]:
        return [c for c in self.checks if not c.passed]

    def reason(self) -> str:
        return "; ".join(f"{c.name}: {c.message}" for c in self.failures())

    def to_dict(self) -> dict:
        return {
            "healthy": self.healthy,
            "checks": [c.to_dict() for c in self.checks],
            "timestamp": self.timestamp,
        }


def parse_memory(value: str, unit: str) -> float:
    return float(value) * _UNITS[unit]


class HealthProbe:
    def __init__(
        self,
        disk_path: Path,
        timeout: float = 10,
        disk_threshold: float = 90.0,
        usage_threshold: float = 90.0,
    ):
        self.disk_path = Path(disk_path)
        self.timeout = timeout
        self.disk_threshold = disk_threshold
        self.usage_threshold = usage_threshold

    def check(self, descriptor: RuntimeDescriptor) -> HealthReport:
        checks = [
            self.container_status(descriptor.identity),
            self.resource_usage(descriptor.identity),
        ]
        if descriptor.domain:
            checks.append(self.http_endpoint(descriptor.domain))
        checks.append(self.disk_space())
        return HealthReport(checks)

    def _docker(self, *args: str) -> str:
        return shell.run(["docker", *args], timeout=self.timeout).stdout.strip()

    def container_status(self, identity: str) -> HealthCheck:
        name = "container_status"
        try:
            status = self._docker(
                "ps", "--filter", f"name=^{identity}$", "--format", "{{.Status}}"
            )
            if not status.startswith("Up"):
                return HealthCheck(name, False, status or "Container not running")
            health = self._docker(
                "inspect", "--format",
                "{{if .State.Health}}{{.State.Health.Status}}{{else}}none{{end}}",
                identity,
            )
        except DeployerError as e:
            return HealthCheck(name, False, str(e))
        if health in ("healthy", "none"):
            return HealthCheck(name, True, f"Running ({status})")
        # "starting" is not yet a pass: the gate keeps polling
        return HealthCheck(name, False, f"Container health: {health}")

    def resource_usage(self, identity: str) -> HealthCheck:
        name = "resource_usage"
        try:
            out = self._docker(
                "stats", "--no-stream", "--format", "{{.CPUPerc}},{{.MemUsage}}", identity
            )
        except DeployerError:
            return HealthCheck(name, True, "Unable to check resources")
        if not out or "," not in out:
            return HealthCheck(name, True, "Unable to check resources")

        cpu, memory = out.split(",", 1)
        warnings = []
        try:
            if float(cpu.rstrip("%")) > self.usage_threshold:
                warnings.append("High CPU usage")
        except ValueError:
            pass
        match = _MEMORY_RE.search(memory)
        if match:
            used = parse_memory(match.group(1), match.group(2))
            total = parse_memory(match.group(3), match.group(4))
            if total and used / total * 100 > self.usage_threshold:
                warnings.append("High memory usage")
        if warnings:
            return HealthCheck(name, False, ", ".join(warnings))
        return HealthCheck(name, True, f"CPU: {cpu}, Memory: {memory}")

    def http_endpoint(self, domain: str) -> HealthCheck:
        name = "http_endpoint"
        errors = []
        for scheme in ("https", "http"):
            url = f"{scheme}://{domain}"
            try:
                resp = httpx.get(url, timeout=self.timeout, follow_redirects=True)
            except httpx.HTTPError as e:
                errors.append(f"{url}: {e}")
                continue
            if resp.status_code < 500:
                return HealthCheck(name, True, f"{url} returned {resp.status_code}")
            errors.append(f"{url} returned {resp.status_code}")
        return HealthCheck(name, False, "; ".join(errors))

    def disk_space(self) -> HealthCheck:
        name = "disk_space"
        path = self.disk_path
        while not path.exists() and path != path.parent:
            path = path.parent
        try:
            usage = shutil.disk_usage(path)
        except OSError as e:
            return HealthCheck(name, False, str(e))
        percent = usage.used / usage.total * 100 if usage.total else 0.0
        message = f"{percent:.0f}% used on {self.disk_path}"
        return HealthCheck(name, percent < self.disk_threshold, message)
