"""Manifest parsing: YAML bytes -> validated, immutable desired state.

Accepted document shapes::

    containers:
      - name: web
        image: nginx:latest
        ports: ["8080:80"]          # or "8080:80,8443:443"
        env: {MODE: prod}           # or ["MODE=prod"]
        volumes: ["/srv/www:/usr/share/nginx/html:ro"]
        networks: [front]
        command: nginx -g "daemon off;"
        restart_policy: unless-stopped

or a bare list of the same entries. Parsing never touches the runtime.
"""
from __future__ import annotations

import hashlib
import json
import re
import shlex
from dataclasses import dataclass, field, replace
from typing import Any

import yaml

from .errors import ManifestSyntaxError, ValidationError


NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")
NETWORK_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")
RESTART_POLICIES = ("no", "always", "on-failure", "unless-stopped")
PROTOCOLS = ("tcp", "udp", "sctp")

_ENTRY_KEYS = {
    "name",
    "image",
    "ports",
    "env",
    "environment",
    "volumes",
    "networks",
    "command",
    "restart_policy",
    "restart",
}


class _ManifestLoader(yaml.SafeLoader):
    """SafeLoader without YAML 1.1 base-60 integers, so ``2222:22`` stays a string."""


_ManifestLoader.yaml_implicit_resolvers = {
    first: [(tag, rx) for tag, rx in resolvers if tag != "tag:yaml.org,2002:int"]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
_ManifestLoader.add_implicit_resolver(
    "tag:yaml.org,2002:int",
    re.compile(
        r"""^(?:[-+]?0b[0-1_]+
        |[-+]?0[0-7_]+
        |[-+]?(?:0|[1-9][0-9_]*)
        |[-+]?0x[0-9a-fA-F_]+)$""",
        re.X,
    ),
    list("-+0123456789"),
)


@dataclass(frozen=True)
class PortMapping:
    container_port: int
    host_port: int | None = None
    protocol: str = "tcp"

    @property
    def key(self) -> str:
        """Docker's port key, e.g. ``80/tcp``."""
        return f"{self.container_port}/{self.protocol}"

    def __str__(self) -> str:
        if self.host_port is None:
            return self.key
        return f"{self.host_port}:{self.key}"


@dataclass(frozen=True)
class ContainerSpec:
    name: str
    image: str
    ports: tuple[PortMapping, ...] = ()
    env: tuple[tuple[str, str], ...] = ()
    restart_policy: str = "no"
    volumes: tuple[str, ...] = ()
    command: tuple[str, ...] | None = None
    networks: tuple[str, ...] = ()

    def fingerprint(self) -> str:
        """Stable digest of everything that forces a replace when it changes."""
        doc = {
            "image": self.image,
            "ports": [str(p) for p in self.ports],
            "env": [f"{k}={v}" for k, v in self.env],
            "restart_policy": self.restart_policy,
            "volumes": list(self.volumes),
            "networks": list(self.networks),
            "command": list(self.command) if self.command is not None else None,
        }
        raw = json.dumps(doc, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return hashlib.sha256(raw).hexdigest()[:16]


@dataclass(frozen=True)
class Manifest:
    containers: tuple[ContainerSpec, ...]
    generation: int = 0
    digest: str = ""
    raw: bytes = field(default=b"", repr=False)

    def names(self) -> list[str]:
        return [c.name for c in self.containers]

    def get(self, name: str) -> ContainerSpec | None:
        for c in self.containers:
            if c.name == name:
                return c
        return None

    def with_generation(self, generation: int) -> "Manifest":
        return replace(self, generation=generation)


def parse(data: bytes) -> Manifest:
    """Decode and validate a manifest. Raises ManifestSyntaxError or ValidationError."""
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ManifestSyntaxError(f"Manifest is not valid UTF-8: {e}") from e

    try:
        doc = yaml.load(text, Loader=_ManifestLoader)
    except yaml.YAMLError as e:
        raise ManifestSyntaxError(f"Failed to parse YAML: {e}") from e

    if doc is None:
        raise ValidationError("containers", "missing", "manifest is empty")
    if isinstance(doc, dict):
        unknown = set(doc) - {"containers"}
        if unknown:
            raise ValidationError(min(map(str, unknown)), "unknown")
        entries = doc.get("containers")
        if entries is None:
            raise ValidationError("containers", "missing")
    else:
        entries = doc
    if not isinstance(entries, list):
        raise ValidationError("containers", "invalid", "expected a list of containers")

    specs: list[ContainerSpec] = []
    seen: set[str] = set()
    for i, entry in enumerate(entries):
        spec = _parse_entry(entry, f"containers[{i}]")
        if spec.name in seen:
            raise ValidationError(f"containers[{i}].name", "duplicate", spec.name)
        seen.add(spec.name)
        specs.append(spec)

    return Manifest(containers=tuple(specs), digest=hashlib.sha256(data).hexdigest(), raw=bytes(data))


def _parse_entry(entry: Any, path: str) -> ContainerSpec:
    if not isinstance(entry, dict):
        raise ValidationError(path, "invalid", "expected a mapping")
    unknown = set(entry) - _ENTRY_KEYS
    if unknown:
        raise ValidationError(f"{path}.{min(map(str, unknown))}", "unknown")

    name = entry.get("name")
    if name is None or name == "":
        raise ValidationError(f"{path}.name", "missing")
    if not isinstance(name, str) or not NAME_RE.match(name):
        raise ValidationError(f"{path}.name", "invalid", "use letters, digits, '_' and '-'")

    image = entry.get("image")
    if image is None or (isinstance(image, str) and not image.strip()):
        raise ValidationError(f"{path}.image", "missing")
    if not isinstance(image, str) or any(ch.isspace() for ch in image.strip()):
        raise ValidationError(f"{path}.image", "invalid")

    if "env" in entry and "environment" in entry:
        raise ValidationError(f"{path}.env", "invalid", "use either env or environment")
    if "restart_policy" in entry and "restart" in entry:
        raise ValidationError(f"{path}.restart_policy", "invalid", "use either restart_policy or restart")

    return ContainerSpec(
        name=name,
        image=image.strip(),
        ports=_parse_ports(entry.get("ports"), f"{path}.ports"),
        env=_parse_env(entry.get("env", entry.get("environment")), f"{path}.env"),
        restart_policy=_parse_restart(entry.get("restart_policy", entry.get("restart")), f"{path}.restart_policy"),
        volumes=_parse_volumes(entry.get("volumes"), f"{path}.volumes"),
        networks=_parse_networks(entry.get("networks"), f"{path}.networks"),
        command=_parse_command(entry.get("command"), f"{path}.command"),
    )


def _port_number(raw: Any, path: str) -> int:
    try:
        n = int(str(raw).strip())
    except ValueError:
        raise ValidationError(path, "invalid", f"bad port {raw!r}") from None
    if not 1 <= n <= 65535:
        raise ValidationError(path, "invalid", f"port {n} out of range")
    return n


def _parse_port(item: Any, path: str) -> PortMapping:
    if isinstance(item, dict):
        protocol = str(item.get("protocol", "tcp")).lower()
        if protocol not in PROTOCOLS:
            raise ValidationError(path, "invalid", f"unknown protocol {protocol!r}")
        if "container" not in item:
            raise ValidationError(f"{path}.container", "missing")
        host = item.get("host")
        return PortMapping(
            container_port=_port_number(item["container"], path),
            host_port=_port_number(host, path) if host is not None else None,
            protocol=protocol,
        )
    if isinstance(item, int) and not isinstance(item, bool):
        return PortMapping(container_port=_port_number(item, path))
    if not isinstance(item, str):
        raise ValidationError(path, "invalid")

    text = item.strip()
    protocol = "tcp"
    if "/" in text:
        text, protocol = text.rsplit("/", 1)
        protocol = protocol.lower()
        if protocol not in PROTOCOLS:
            raise ValidationError(path, "invalid", f"unknown protocol {protocol!r}")
    parts = text.split(":")
    if len(parts) == 1:
        return PortMapping(container_port=_port_number(parts[0], path), protocol=protocol)
    if len(parts) == 2:
        return PortMapping(
            container_port=_port_number(parts[1], path),
            host_port=_port_number(parts[0], path),
            protocol=protocol,
        )
    raise ValidationError(path, "invalid", f"bad port mapping {item!r}")


def _parse_ports(raw: Any, path: str) -> tuple[PortMapping, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        raw = [p for p in (s.strip() for s in raw.split(",")) if p]
    if not isinstance(raw, list):
        raise ValidationError(path, "invalid", "expected a list or a comma separated string")

    ports = tuple(_parse_port(item, f"{path}[{i}]") for i, item in enumerate(raw))
    keys = [p.key for p in ports]
    if len(set(keys)) != len(keys):
        raise ValidationError(path, "duplicate", "container port mapped twice")
    return ports


def _parse_env(raw: Any, path: str) -> tuple[tuple[str, str], ...]:
    if raw is None:
        return ()
    pairs: list[tuple[str, str]] = []
    if isinstance(raw, dict):
        for k, v in raw.items():
            pairs.append((str(k), "" if v is None else str(v)))
    elif isinstance(raw, list):
        for i, item in enumerate(raw):
            if not isinstance(item, str) or "=" not in item:
                raise ValidationError(f"{path}[{i}]", "invalid", "expected KEY=VALUE")
            k, v = item.split("=", 1)
            pairs.append((k, v))
    else:
        raise ValidationError(path, "invalid", "expected a mapping or a list")

    seen: set[str] = set()
    for k, _ in pairs:
        if not ENV_KEY_RE.match(k):
            raise ValidationError(path, "invalid", f"bad variable name {k!r}")
        if k in seen:
            raise ValidationError(path, "duplicate", k)
        seen.add(k)
    return tuple(pairs)


def _parse_restart(raw: Any, path: str) -> str:
    if raw is None:
        return "no"
    # YAML 1.1 turns a bare `no` into False.
    if raw is False:
        return "no"
    policy = str(raw).strip().lower()
    if policy not in RESTART_POLICIES:
        raise ValidationError(path, "invalid", f"one of {', '.join(RESTART_POLICIES)}")
    return policy


def _parse_volumes(raw: Any, path: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ValidationError(path, "invalid", "expected a list")
    out: list[str] = []
    for i, item in enumerate(raw):
        if not isinstance(item, str):
            raise ValidationError(f"{path}[{i}]", "invalid")
        parts = item.split(":")
        if len(parts) not in (2, 3) or not parts[0] or not parts[1].startswith("/"):
            raise ValidationError(f"{path}[{i}]", "invalid", "expected src:/dst[:mode]")
        if len(parts) == 3 and parts[2] not in {"ro", "rw", "z", "Z"}:
            raise ValidationError(f"{path}[{i}]", "invalid", f"unknown mode {parts[2]!r}")
        out.append(item)
    return tuple(out)


def _parse_networks(raw: Any, path: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        raise ValidationError(path, "invalid", "expected a list of network names")
    out: list[str] = []
    for i, item in enumerate(raw):
        if not isinstance(item, str) or not NETWORK_RE.match(item):
            raise ValidationError(f"{path}[{i}]", "invalid", f"bad network name {item!r}")
        if item in out:
            raise ValidationError(f"{path}[{i}]", "duplicate", item)
        out.append(item)
    return tuple(out)


def _parse_command(raw: Any, path: str) -> tuple[str, ...] | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        try:
            parts = shlex.split(raw)
        except ValueError as e:
            raise ValidationError(path, "invalid", str(e)) from None
        return tuple(parts) or None
    if isinstance(raw, list) and all(isinstance(x, (str, int, float)) for x in raw):
        return tuple(str(x) for x in raw) or None
    raise ValidationError(path, "invalid", "expected a string or a list of strings")
