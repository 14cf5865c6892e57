from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
from typing import Any, Iterator, Protocol

import docker
import requests
from docker.errors import APIError, DockerException, ImageNotFound, NotFound as DockerNotFound
from docker.utils import parse_repository_tag

from .errors import ContainerRuntimeError, NotFound, RuntimeUnavailable
from .manifest import ContainerSpec
from .settings import settings


FINGERPRINT_LABEL = "dcr.fingerprint"

# Docker state -> lifecycle state exposed to callers.
STATE_MAP = {
    "created": "created",
    "running": "running",
    "restarting": "running",
    "paused": "paused",
    "exited": "stopped",
    "removing": "removing",
    "dead": "error",
}


@dataclass(frozen=True)
class ObservedContainer:
    id: str
    name: str
    image: str
    state: str
    ports: tuple[str, ...] = ()
    created_at: str = ""
    fingerprint: str | None = None

    @property
    def short_id(self) -> str:
        return self.id[:12]


class LogStream:
    """Line iterator over a runtime log handle. ``close()`` releases the handle
    and may be called from another thread to unblock a follow-mode reader."""

    def __init__(self, chunks: Any, on_close: Any = None):
        self._chunks = chunks
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> Iterator[str]:
        buf = b""
        try:
            for chunk in self._chunks:
                if self._closed:
                    return
                if isinstance(chunk, str):
                    chunk = chunk.encode("utf-8")
                buf += chunk
                while b"\n" in buf:
                    line, buf = buf.split(b"\n", 1)
                    yield line.rstrip(b"\r").decode("utf-8", errors="replace")
        except (OSError, ValueError, requests.exceptions.RequestException, DockerException) as e:
            # Reading from a handle closed under our feet ends the stream.
            if not self._closed:
                raise ContainerRuntimeError(str(e), action="logs") from e
            return
        if buf and not self._closed:
            yield buf.rstrip(b"\r").decode("utf-8", errors="replace")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        closer = self._on_close or getattr(self._chunks, "close", None)
        if closer is not None:
            try:
                closer()
            except (OSError, AttributeError, ValueError):
                pass


class RuntimeAdapter(Protocol):
    """Capability set every container backend provides."""

    def list(self, timeout: float | None = None) -> list[ObservedContainer]: ...

    def create(self, spec: ContainerSpec, timeout: float | None = None) -> ObservedContainer: ...

    def inspect(self, container_id: str, timeout: float | None = None) -> ObservedContainer: ...

    def start(self, container_id: str, timeout: float | None = None) -> None: ...

    def stop(self, container_id: str, timeout: float | None = None) -> None: ...

    def restart(self, container_id: str, timeout: float | None = None) -> None: ...

    def remove(self, container_id: str, timeout: float | None = None) -> None: ...

    def logs(
        self, container_id: str, follow: bool = False, tail: int | None = None, timeout: float | None = None
    ) -> LogStream: ...


def _state(raw: str | None) -> str:
    return STATE_MAP.get((raw or "").lower(), "error")


def _ports_from_attrs(attrs: dict[str, Any]) -> tuple[str, ...]:
    """Declared bindings survive a stop, live ones do not; prefer the former."""
    bindings = (attrs.get("HostConfig") or {}).get("PortBindings") or {}
    if not bindings:
        bindings = (attrs.get("NetworkSettings") or {}).get("Ports") or {}
    out: list[str] = []
    for key in sorted(bindings):
        hosts = bindings.get(key) or []
        host_ports = sorted({h.get("HostPort") for h in hosts if h.get("HostPort")})
        if not host_ports:
            out.append(key)
        for hp in host_ports:
            out.append(f"{hp}:{key}")
    return tuple(out)


def observed_from_container(container: Any) -> ObservedContainer:
    attrs = container.attrs or {}
    config = attrs.get("Config") or {}
    labels = config.get("Labels") or {}
    state = (attrs.get("State") or {}).get("Status") or getattr(container, "status", None)
    return ObservedContainer(
        id=container.id,
        name=(container.name or attrs.get("Name") or "").lstrip("/"),
        image=config.get("Image") or "",
        state=_state(state),
        ports=_ports_from_attrs(attrs),
        created_at=attrs.get("Created") or "",
        fingerprint=labels.get(FINGERPRINT_LABEL),
    )


class DockerRuntime:
    """Runtime adapter for a Docker-compatible engine (Docker, Podman's docker API).

    Containers are labeled so we can re-discover them after restarts; only
    labeled containers are ever listed, so unrelated host containers are never
    pruned.
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        client: Any = None,
        managed_label: str | None = None,
    ):
        self.base_url = base_url
        self.timeout = float(timeout if timeout is not None else settings.runtime_timeout_s)
        self.managed_label = managed_label or settings.managed_label
        self._injected = client
        self._clients: dict[float, Any] = {}
        self._lock = Lock()

    def _client(self, timeout: float | None = None) -> Any:
        if self._injected is not None:
            return self._injected
        t = float(timeout if timeout is not None else self.timeout)
        with self._lock:
            c = self._clients.get(t)
            if c is not None:
                return c
            try:
                if self.base_url:
                    c = docker.DockerClient(base_url=self.base_url, timeout=int(max(1, t)))
                else:
                    c = docker.from_env(timeout=int(max(1, t)))
            except DockerException as e:
                raise RuntimeUnavailable(f"Docker is not available: {e}") from e
            self._clients[t] = c
            return c

    @contextmanager
    def _translate(self, action: str, ref: str | None = None) -> Iterator[None]:
        try:
            yield
        except (DockerNotFound, ImageNotFound) as e:
            if action == "create":
                what = "image not found" if isinstance(e, ImageNotFound) else "not found"
                raise ContainerRuntimeError(f"{what}: {e.explanation or e}", name=ref, action=action) from e
            raise NotFound(ref or "?", action=action) from e
        except APIError as e:
            raise ContainerRuntimeError(str(e.explanation or e), name=ref, action=action) from e
        except requests.exceptions.ConnectionError as e:
            raise RuntimeUnavailable(f"Docker is not reachable: {e}") from e
        except requests.exceptions.Timeout as e:
            raise ContainerRuntimeError("timed out", name=ref, action=action) from e
        except DockerException as e:
            raise ContainerRuntimeError(str(e), name=ref, action=action) from e

    def list(self, timeout: float | None = None) -> list[ObservedContainer]:
        with self._translate("list"):
            containers = self._client(timeout).containers.list(
                all=True,
                filters={"label": [f"{self.managed_label}=true"]},
                ignore_removed=True,
            )
            return [observed_from_container(c) for c in containers]

    def _ensure_image(self, image: str, timeout: float | None) -> None:
        client = self._client(timeout)
        try:
            client.images.get(image)
            return
        except ImageNotFound:
            pass
        repo, tag = parse_repository_tag(image)
        client.images.pull(repo, tag=tag or "latest")

    def create(self, spec: ContainerSpec, timeout: float | None = None) -> ObservedContainer:
        with self._translate("create", spec.name):
            self._ensure_image(spec.image, timeout)
            ports: dict[str, int | None] = {p.key: p.host_port for p in spec.ports}
            restart_policy: dict[str, Any] = {"Name": spec.restart_policy}
            if spec.restart_policy == "on-failure":
                restart_policy["MaximumRetryCount"] = 0
            container = self._client(timeout).containers.create(
                spec.image,
                command=list(spec.command) if spec.command is not None else None,
                name=spec.name,
                environment=[f"{k}={v}" for k, v in spec.env],
                ports=ports or None,
                volumes=list(spec.volumes) or None,
                restart_policy=restart_policy,
                network=spec.networks[0] if spec.networks else None,
                labels={
                    self.managed_label: "true",
                    FINGERPRINT_LABEL: spec.fingerprint(),
                },
                detach=True,
            )
            self._connect_networks(container, spec, timeout)
            container.reload()
            return observed_from_container(container)

    def _connect_networks(self, container: Any, spec: ContainerSpec, timeout: float | None) -> None:
        """Attach the networks after the first; a half-wired container is removed again."""
        client = self._client(timeout)
        for name in spec.networks[1:]:
            try:
                client.networks.get(name).connect(container)
            except DockerException as e:
                container.remove(force=True, v=True)
                if isinstance(e, DockerNotFound):
                    raise ContainerRuntimeError(f"network not found: {name}", name=spec.name, action="create") from e
                raise

    def _get(self, container_id: str, timeout: float | None) -> Any:
        return self._client(timeout).containers.get(container_id)

    def inspect(self, container_id: str, timeout: float | None = None) -> ObservedContainer:
        with self._translate("inspect", container_id):
            return observed_from_container(self._get(container_id, timeout))

    def start(self, container_id: str, timeout: float | None = None) -> None:
        with self._translate("start", container_id):
            self._get(container_id, timeout).start()

    def stop(self, container_id: str, timeout: float | None = None) -> None:
        with self._translate("stop", container_id):
            self._get(container_id, timeout).stop(timeout=settings.stop_timeout_s)

    def restart(self, container_id: str, timeout: float | None = None) -> None:
        with self._translate("restart", container_id):
            self._get(container_id, timeout).restart(timeout=settings.stop_timeout_s)

    def remove(self, container_id: str, timeout: float | None = None) -> None:
        with self._translate("remove", container_id):
            self._get(container_id, timeout).remove(force=True, v=True)

    def logs(
        self, container_id: str, follow: bool = False, tail: int | None = None, timeout: float | None = None
    ) -> LogStream:
        with self._translate("logs", container_id):
            cont = self._get(container_id, timeout)
            chunks = cont.logs(
                stdout=True,
                stderr=True,
                stream=True,
                follow=follow,
                tail=tail if tail is not None else "all",
            )
            return LogStream(chunks)
