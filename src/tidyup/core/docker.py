"""Container-engine cleanup over the Docker Engine API on a Unix socket."""

from __future__ import annotations

import logging
import os
import time
from datetime import datetime
from typing import Any

import httpx

from tidyup.config import DockerConfig
from tidyup.models import CandidateEntry, ScanResult

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
_BASE_URL = "http://docker"


class DockerError(Exception):
    """Raised when the Docker daemon cannot be reached or rejects a request."""


def socket_paths(home: str | None = None) -> list[str]:
    home = home or os.path.expanduser("~")
    return [
        "/var/run/docker.sock",
        "/run/docker.sock",
        os.path.join(home, ".docker", "run", "docker.sock"),
        os.path.join(home, ".colima", "default", "docker.sock"),
    ]


def find_socket(home: str | None = None) -> str | None:
    """Return the first Docker control socket that exists."""
    for path in socket_paths(home):
        if os.path.exists(path):
            return path
    return None


class DockerClient:
    """Minimal Docker Engine API client.

    Pass *transport* to talk to something other than a real socket
    (tests use :class:`httpx.MockTransport`).
    """

    def __init__(
        self,
        socket_path: str | None = None,
        transport: httpx.BaseTransport | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.socket_path = socket_path
        if transport is None:
            if socket_path is None:
                raise DockerError("No Docker socket found")
            transport = httpx.HTTPTransport(uds=socket_path)
        self._client = httpx.Client(transport=transport, base_url=_BASE_URL, timeout=timeout)

    @classmethod
    def connect(cls, home: str | None = None) -> DockerClient | None:
        """Client for the first socket found, or None when Docker is absent."""
        path = find_socket(home)
        if path is None:
            return None
        return cls(path)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> DockerClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DockerError(f"{method} {url} failed: status {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise DockerError(f"{method} {url} failed: {e}") from e
        return response

    def _json(self, url: str, **params: Any) -> Any:
        response = self._request("GET", url, params=params or None)
        try:
            return response.json()
        except ValueError as e:
            raise DockerError(f"GET {url}: invalid JSON response") from e

    def is_available(self) -> bool:
        try:
            self._request("GET", "/_ping")
        except DockerError:
            return False
        return True

    def list_images(self) -> list[dict[str, Any]]:
        return self._json("/images/json", all="true") or []

    def list_containers(self, all: bool = True) -> list[dict[str, Any]]:
        return self._json("/containers/json", all=str(all).lower(), size="true") or []

    def list_volumes(self) -> list[dict[str, Any]]:
        return (self._json("/volumes") or {}).get("Volumes") or []

    def build_cache(self) -> list[dict[str, Any]]:
        return (self._json("/system/df") or {}).get("BuildCache") or []

    def remove_image(self, image_id: str) -> None:
        self._request("DELETE", f"/images/{image_id}")

    def remove_container(self, container_id: str) -> None:
        self._request("DELETE", f"/containers/{container_id}", params={"v": "true"})

    def remove_volume(self, name: str) -> None:
        self._request("DELETE", f"/volumes/{name}")

    def prune_build_cache(self) -> int:
        """Prune unused build cache and return the bytes reclaimed."""
        response = self._request("POST", "/build/prune")
        try:
            return int(response.json().get("SpaceReclaimed", 0))
        except (ValueError, AttributeError) as e:
            raise DockerError("failed to decode prune response") from e


def _is_dangling(image: dict[str, Any]) -> bool:
    tags = image.get("RepoTags") or []
    return not tags or all(t == "<none>:<none>" for t in tags)


def _parse_created(value: str) -> float:
    if not value:
        return 0.0
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


class DockerScanner:
    """Finds reclaimable images, containers, volumes and build cache."""

    def __init__(self, client: DockerClient, config: DockerConfig | None = None, now=time.time) -> None:
        self.client = client
        self.config = config or DockerConfig()
        self._now = now
        self._pruned = False

    def scan(self) -> ScanResult:
        """Scan every enabled resource kind.

        An unreachable daemon yields an empty result; a failing list call
        is recorded as an error on the result.
        """
        result = ScanResult(category="docker")
        if not self.client.is_available():
            log.info("Docker daemon not reachable, skipping")
            return result
        parts = [
            (self.config.clean_images, self.scan_images),
            (self.config.clean_containers, self.scan_containers),
            (self.config.clean_volumes, self.scan_volumes),
            (self.config.clean_build_cache, self.scan_build_cache),
        ]
        for enabled, scan in parts:
            if not enabled:
                continue
            try:
                result.merge_into(scan())
            except DockerError as e:
                log.warning("Docker scan failed: %s", e)
                result.add_error(str(e))
        result.category = "docker"
        return result

    def scan_images(self) -> ScanResult:
        result = ScanResult(category="docker_images")
        min_age = self.config.image_age_days * 86400
        for image in self.client.list_images():
            image_id = image.get("Id", "")
            tags = [t for t in image.get("RepoTags") or [] if t != "<none>:<none>"]
            if not image_id or any(t in self.config.keep_images for t in tags):
                continue
            if self.config.only_dangling_images and not _is_dangling(image):
                continue
            created = float(image.get("Created", 0))
            if min_age and self._now() - created < min_age:
                continue
            result.add(
                CandidateEntry(
                    path=f"docker:image:{_short(image_id)}",
                    size=int(image.get("Size", 0)),
                    mod_time=created,
                    category="docker_images",
                    reason=f"Docker image ({', '.join(tags) or 'dangling'})",
                    hash=image_id,
                )
            )
        return result

    def scan_containers(self) -> ScanResult:
        result = ScanResult(category="docker_containers")
        min_age = self.config.container_age_days * 86400
        for container in self.client.list_containers(all=True):
            container_id = container.get("Id", "")
            state = container.get("State", "")
            names = [n.lstrip("/") for n in container.get("Names") or []]
            # Running containers are never candidates.
            if not container_id or state == "running":
                continue
            if any(n in self.config.keep_containers for n in names):
                continue
            if self.config.only_stopped_containers and state not in ("exited", "dead"):
                continue
            created = float(container.get("Created", 0))
            if min_age and self._now() - created < min_age:
                continue
            size = int(container.get("SizeRw") or 0) or int(container.get("SizeRootFs") or 0)
            name = names[0] if names else "unnamed"
            result.add(
                CandidateEntry(
                    path=f"docker:container:{_short(container_id)}",
                    size=size,
                    mod_time=created,
                    category="docker_containers",
                    reason=f"Stopped container ({name}, state: {state})",
                    hash=container_id,
                )
            )
        return result

    def scan_volumes(self) -> ScanResult:
        result = ScanResult(category="docker_volumes")
        for volume in self.client.list_volumes():
            name = volume.get("Name", "")
            if not name or name in self.config.keep_volumes:
                continue
            usage = volume.get("UsageData") or {}
            if self.config.only_unused_volumes and usage.get("RefCount", 0) > 0:
                continue
            result.add(
                CandidateEntry(
                    path=f"docker:volume:{name}",
                    size=max(int(usage.get("Size", 0)), 0),
                    mod_time=_parse_created(volume.get("CreatedAt", "")),
                    category="docker_volumes",
                    reason=f"Unused Docker volume (driver: {volume.get('Driver', 'local')})",
                    hash=name,
                )
            )
        return result

    def scan_build_cache(self) -> ScanResult:
        result = ScanResult(category="docker_build_cache")
        for record in self.client.build_cache():
            record_id = record.get("ID", "")
            if not record_id or record.get("InUse"):
                continue
            result.add(
                CandidateEntry(
                    path=f"docker:buildcache:{_short(record_id)}",
                    size=int(record.get("Size", 0)),
                    mod_time=_parse_created(record.get("LastUsedAt") or record.get("CreatedAt", "")),
                    category="docker_build_cache",
                    reason=f"Build cache ({record.get('Type', 'unknown')})",
                    hash=record_id,
                )
            )
        return result

    def remove(self, entry: CandidateEntry) -> None:
        """Remove the resource *entry* stands for.

        Build cache records cannot be removed one by one, so the first
        one triggers a single prune for the whole run.

        Raises:
            DockerError: If the daemon refuses or cannot be reached.
        """
        try:
            _, kind, ident = entry.path.split(":", 2)
        except ValueError:
            raise DockerError(f"not a docker address: {entry.path}") from None
        target = entry.hash or ident
        match kind:
            case "image":
                self.client.remove_image(target)
            case "container":
                self.client.remove_container(target)
            case "volume":
                self.client.remove_volume(target)
            case "buildcache":
                if not self._pruned:
                    reclaimed = self.client.prune_build_cache()
                    self._pruned = True
                    log.info("Docker build cache pruned, %d bytes reclaimed", reclaimed)
            case _:
                raise DockerError(f"unknown docker resource kind: {kind}")


def _short(ident: str) -> str:
    return ident.removeprefix("sha256:")[:12]
