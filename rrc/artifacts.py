"""Source revision -> immutable, digest-addressed artifact."""
from __future__ import annotations

import base64
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Event, Lock

import httpx

from .errors import NotFound, RegistryUnavailable, RolloutError

DEFAULT_REGISTRY = "registry-1.docker.io"

MANIFEST_ACCEPT = ", ".join(
    [
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.docker.distribution.manifest.v2+json",
    ]
)


@dataclass(frozen=True)
class Artifact:
    source_revision: str
    image_reference: str
    digest: str

    @property
    def pinned_reference(self) -> str:
        """Image reference pinned to the digest, e.g. ``repo@sha256:...``."""
        repo = self.image_reference.split("@", 1)[0]
        last = repo.rsplit("/", 1)[-1]
        if ":" in last:
            repo = repo.rsplit(":", 1)[0]
        return f"{repo}@{self.digest}"


def parse_image_reference(image_ref: str) -> tuple[str, str, str]:
    """Split an image reference into (registry, repository, tag-or-digest).

    ``nginx`` -> (registry-1.docker.io, library/nginx, latest)
    ``ghcr.io/org/app:abc123`` -> (ghcr.io, org/app, abc123)
    """
    if not image_ref or image_ref.strip() != image_ref:
        raise ValueError(f"Invalid image reference: {image_ref!r}")
    if "://" in image_ref:
        image_ref = image_ref.split("://", 1)[1]

    parts = image_ref.split("/", 1)
    if len(parts) == 2 and ("." in parts[0] or ":" in parts[0] or parts[0] == "localhost"):
        registry, remainder = parts
    else:
        registry, remainder = DEFAULT_REGISTRY, image_ref

    if "@" in remainder:
        repository, ref = remainder.split("@", 1)
    elif ":" in remainder.rsplit("/", 1)[-1]:
        repository, ref = remainder.rsplit(":", 1)
    else:
        repository, ref = remainder, "latest"

    if registry == DEFAULT_REGISTRY and "/" not in repository:
        repository = f"library/{repository}"
    return registry, repository, ref


class BuildCatalog:
    """Maps a source revision to the image reference the build system pushed.

    Builds are tagged by convention, so the reference is derived from the
    revision; whether the build really exists is decided by the registry.
    """

    def __init__(self, repository: str, tag_template: str = "{revision}") -> None:
        self.repository = repository.rstrip("/")
        self.tag_template = tag_template

    def reference_for(self, source_revision: str) -> str:
        revision = source_revision.strip()
        if not revision:
            raise NotFound("Empty source revision")
        return f"{self.repository}:{self.tag_template.format(revision=revision)}"


class RegistryClient(ABC):
    """Key-value view of a container registry: tag -> digest."""

    @abstractmethod
    def lookup_digest(self, image_reference: str) -> str | None:
        """Return the content digest for the reference, or None if absent.

        Raises RegistryUnavailable on transient failures.
        """


class HttpRegistryClient(RegistryClient):
    """Registry v2 HTTP API client.

    ``base_url`` overrides the registry host taken from the reference
    (useful for mirrors and local registries).
    """

    def __init__(
        self,
        base_url: str | None = None,
        username: str | None = None,
        password: str | None = None,
        timeout_s: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.username = username
        self.password = password
        self._client = client or httpx.Client(timeout=timeout_s, follow_redirects=True)

    def _manifest_url(self, image_reference: str) -> str:
        registry, repository, ref = parse_image_reference(image_reference)
        base = self.base_url or f"https://{registry}"
        return f"{base}/v2/{repository}/manifests/{ref}"

    def _auth_header(self) -> dict[str, str]:
        if not (self.username and self.password):
            return {}
        token = base64.b64encode(f"{self.username}:{self.password}".encode()).decode()
        return {"Authorization": f"Basic {token}"}

    def lookup_digest(self, image_reference: str) -> str | None:
        url = self._manifest_url(image_reference)
        headers = {"Accept": MANIFEST_ACCEPT, **self._auth_header()}
        try:
            resp = self._client.head(url, headers=headers)
        except httpx.HTTPError as e:
            raise RegistryUnavailable(f"Registry lookup failed for {image_reference}: {type(e).__name__}: {e}") from e

        if resp.status_code == 404:
            return None
        if resp.status_code == 429 or resp.status_code >= 500:
            raise RegistryUnavailable(f"Registry returned HTTP {resp.status_code} for {image_reference}")
        if resp.status_code != 200:
            # 401/403 for a missing private repo look the same as a missing build.
            return None
        digest = resp.headers.get("Docker-Content-Digest")
        if not digest:
            raise RegistryUnavailable(f"Registry returned no digest for {image_reference}")
        return digest

    def close(self) -> None:
        self._client.close()


class _InFlight:
    def __init__(self) -> None:
        self.done = Event()
        self.artifact: Artifact | None = None
        self.error: BaseException | None = None


class ArtifactResolver:
    """Resolves source revisions to artifacts, caching forever.

    Digests are immutable, so cache entries never expire. Concurrent
    resolutions of the same revision share one registry lookup; failures
    are handed to every waiter and are not cached.
    """

    def __init__(self, catalog: BuildCatalog, registry: RegistryClient) -> None:
        self.catalog = catalog
        self.registry = registry
        self._lock = Lock()
        self._cache: dict[str, Artifact] = {}
        self._in_flight: dict[str, _InFlight] = {}

    def cached(self, source_revision: str) -> Artifact | None:
        with self._lock:
            return self._cache.get(source_revision)

    def resolve(self, source_revision: str) -> Artifact:
        with self._lock:
            hit = self._cache.get(source_revision)
            if hit:
                return hit
            pending = self._in_flight.get(source_revision)
            owner = pending is None
            if owner:
                pending = _InFlight()
                self._in_flight[source_revision] = pending

        if not owner:
            pending.done.wait()
            err = pending.error
            if isinstance(err, RolloutError):
                # Each caller attaches its own recovery context.
                raise type(err)(err.message) from err
            if err is not None:
                raise err
            assert pending.artifact is not None
            return pending.artifact

        try:
            artifact = self._lookup(source_revision)
        except BaseException as e:
            pending.error = e
            with self._lock:
                self._in_flight.pop(source_revision, None)
            pending.done.set()
            raise

        pending.artifact = artifact
        with self._lock:
            self._cache[source_revision] = artifact
            self._in_flight.pop(source_revision, None)
        pending.done.set()
        return artifact

    def _lookup(self, source_revision: str) -> Artifact:
        reference = self.catalog.reference_for(source_revision)
        try:
            digest = self.registry.lookup_digest(reference)
        except RolloutError:
            raise
        except ValueError as e:
            raise NotFound(f"No build for revision {source_revision!r}: {e}") from e
        if not digest:
            raise NotFound(f"No build for revision {source_revision!r} ({reference})")
        return Artifact(source_revision=source_revision, image_reference=reference, digest=digest)
