from __future__ import annotations

import re
import secrets
from typing import Any

import docker
import requests
from docker.errors import DockerException, NotFound

from .artifacts import RegistryClient
from .errors import RegistryUnavailable, WorkloadError
from .health import HealthStatus, check_health
from .workload import Replica, WorkloadHandle, aggregate


TARGET_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")

LABEL_TARGET = "rrc.target"
LABEL_IMAGE = "rrc.image"

# The SDK lets transport errors from requests through unwrapped.
DOCKER_ERRORS = (DockerException, requests.RequestException)


def validate_target(name: str) -> None:
    if not TARGET_RE.match(name):
        raise ValueError(
            "Invalid target name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )


def validate_health_path(path: str) -> None:
    # Keep it a path (not a full URL) so probes cannot be pointed elsewhere.
    if not path.startswith("/"):
        raise ValueError("health_path must start with '/'.")
    if "://" in path or ".." in path:
        raise ValueError("health_path must be a simple absolute path (no scheme, no '..').")


def container_http_base(container_name: str, internal_port: int) -> str:
    """HTTP base URL usable from within the same docker network."""
    return f"http://{container_name}:{int(internal_port)}"


class DockerWorkload(WorkloadHandle):
    """Replicas of one target as labelled containers on a docker network."""

    def __init__(
        self,
        target: str,
        internal_port: int = 80,
        health_path: str = "/health",
        network: str = "rrc",
        client: docker.DockerClient | None = None,
        probe_timeout_s: float = 2.0,
    ) -> None:
        validate_target(target)
        validate_health_path(health_path)
        self.target = target
        self.internal_port = internal_port
        self.health_path = health_path
        self.network = network
        self.probe_timeout_s = probe_timeout_s
        self._docker = client

    def _client(self) -> docker.DockerClient:
        if self._docker is None:
            self._docker = docker.from_env()
        return self._docker

    def ensure_network(self) -> None:
        c = self._client()
        try:
            c.networks.get(self.network)
        except NotFound:
            c.networks.create(self.network, driver="bridge")

    def list_replicas(self) -> list[Replica]:
        try:
            containers = self._client().containers.list(
                all=True, filters={"label": [f"{LABEL_TARGET}={self.target}"]}
            )
        except DOCKER_ERRORS as e:
            raise WorkloadError(f"Cannot list replicas of {self.target}: {e}") from e
        containers.sort(key=lambda x: (x.attrs.get("Created", ""), x.name))
        return [Replica(id=x.id, image_reference=x.labels.get(LABEL_IMAGE, "")) for x in containers]

    def create_replicas(self, image_reference: str, count: int) -> list[Replica]:
        created: list[Replica] = []
        try:
            self.ensure_network()
            c = self._client()
            for _ in range(max(0, count)):
                name = f"rrc-{self.target}-{secrets.token_hex(3)}"
                labels: dict[str, str] = {LABEL_TARGET: self.target, LABEL_IMAGE: image_reference}
                container = c.containers.run(
                    image_reference,
                    detach=True,
                    name=name,
                    network=self.network,
                    labels=labels,
                    # Replacement is the controller's job; keep Docker's restart policy off.
                    restart_policy={"Name": "no"},
                )
                created.append(Replica(id=container.id, image_reference=image_reference))
        except DOCKER_ERRORS as e:
            raise WorkloadError(
                f"Started {len(created)} of {count} replicas of {image_reference}: {e}"
            ) from e
        return created

    def delete_replicas(self, replica_ids: list[str]) -> None:
        c = self._client()
        for rid in replica_ids:
            try:
                c.containers.get(rid).remove(force=True)
            except NotFound:
                continue
            except DOCKER_ERRORS as e:
                raise WorkloadError(f"Cannot remove replica {rid}: {e}") from e

    def probe(self, replica_ids: list[str]) -> HealthStatus:
        return aggregate([self._probe_one(rid) for rid in replica_ids])

    def _probe_one(self, replica_id: str) -> HealthStatus:
        try:
            cont = self._client().containers.get(replica_id)
            cont.reload()
        except NotFound:
            return HealthStatus.UNHEALTHY
        except DOCKER_ERRORS:
            return HealthStatus.UNKNOWN
        if cont.status != "running":
            return HealthStatus.UNHEALTHY
        url = f"{container_http_base(cont.name, self.internal_port)}{self.health_path}"
        status, _msg, _latency = check_health(url, self.probe_timeout_s)
        return status


class DockerRegistryClient(RegistryClient):
    """Digest lookup through the local docker daemon's registry access."""

    def __init__(self, client: docker.DockerClient | None = None) -> None:
        self._docker = client

    def _client(self) -> docker.DockerClient:
        if self._docker is None:
            self._docker = docker.from_env()
        return self._docker

    def lookup_digest(self, image_reference: str) -> str | None:
        try:
            data: Any = self._client().images.get_registry_data(image_reference)
        except NotFound:
            return None
        except DOCKER_ERRORS as e:
            raise RegistryUnavailable(f"Registry lookup failed for {image_reference}: {e}") from e
        return data.id
