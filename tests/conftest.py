from __future__ import annotations

import dataclasses
import queue
import threading
import time
import uuid

import pytest

from dcr import db
from dcr.docker_ops import LogStream, ObservedContainer
from dcr.errors import ContainerRuntimeError, NotFound, RuntimeUnavailable
from dcr.manifest import ContainerSpec
from dcr.reconciler import Reconciler
from dcr.runtime import StatusCache


class _FollowSource:
    def __init__(self, backlog: list[str]):
        self.q: queue.Queue = queue.Queue()
        for line in backlog:
            self.q.put(line)
        self.closed = False

    def __iter__(self):
        while True:
            item = self.q.get()
            if item is None:
                return
            yield (item + "\n").encode("utf-8")

    def push(self, line: str) -> None:
        self.q.put(line)

    def end(self) -> None:
        self.q.put(None)

    def close(self) -> None:
        self.closed = True
        self.q.put(None)


@dataclasses.dataclass
class _Container:
    id: str
    name: str
    image: str
    state: str
    ports: tuple[str, ...]
    fingerprint: str | None
    created_at: str
    logs: list[str] = dataclasses.field(default_factory=list)


class FakeRuntime:
    """In-process runtime adapter with call recording and fault injection."""

    def __init__(self, delay: float = 0.0):
        self.lock = threading.Lock()
        self.delay = delay
        self.create_delay = 0.0
        self.containers: dict[str, _Container] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_create: dict[str, str] = {}
        self.fail_list = 0
        self.unavailable = False
        self.followers: dict[str, list[_FollowSource]] = {}

    def _record(self, op: str, ref: str) -> None:
        with self.lock:
            self.calls.append((op, ref))

    def ops(self, op: str) -> list[str]:
        with self.lock:
            return [ref for o, ref in self.calls if o == op]

    def _observed(self, c: _Container) -> ObservedContainer:
        return ObservedContainer(
            id=c.id,
            name=c.name,
            image=c.image,
            state=c.state,
            ports=c.ports,
            created_at=c.created_at,
            fingerprint=c.fingerprint,
        )

    def _get(self, container_id: str) -> _Container:
        c = self.containers.get(container_id)
        if c is None:
            for x in self.containers.values():
                if x.name == container_id:
                    return x
            raise NotFound(container_id)
        return c

    def add(self, spec: ContainerSpec, state: str = "running", logs: list[str] | None = None) -> ObservedContainer:
        """Simulate a container that already exists on the host."""
        c = _Container(
            id=uuid.uuid4().hex + uuid.uuid4().hex,
            name=spec.name,
            image=spec.image,
            state=state,
            ports=tuple(str(p) for p in spec.ports),
            fingerprint=spec.fingerprint(),
            created_at=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            logs=list(logs or []),
        )
        with self.lock:
            self.containers[c.id] = c
        return self._observed(c)

    def by_name(self, name: str) -> _Container | None:
        for c in self.containers.values():
            if c.name == name:
                return c
        return None

    def list(self, timeout: float | None = None) -> list[ObservedContainer]:
        self._record("list", "*")
        if self.unavailable:
            raise RuntimeUnavailable("Docker is not reachable")
        if self.fail_list > 0:
            self.fail_list -= 1
            raise RuntimeUnavailable("Docker is not reachable")
        with self.lock:
            return [self._observed(c) for c in self.containers.values()]

    def create(self, spec: ContainerSpec, timeout: float | None = None) -> ObservedContainer:
        self._record("create", spec.name)
        if self.create_delay:
            time.sleep(self.create_delay)
        if spec.name in self.fail_create:
            raise ContainerRuntimeError(self.fail_create[spec.name], name=spec.name, action="create")
        if self.by_name(spec.name) is not None:
            raise ContainerRuntimeError("name already in use", name=spec.name, action="create")
        return self.add(spec, state="created")

    def inspect(self, container_id: str, timeout: float | None = None) -> ObservedContainer:
        return self._observed(self._get(container_id))

    def _transition(self, op: str, container_id: str, state: str | None) -> None:
        c = self._get(container_id)
        self._record(f"{op}-begin", c.name)
        if self.delay:
            time.sleep(self.delay)
        if state is not None:
            c.state = state
        self._record(f"{op}-end", c.name)
        self._record(op, c.name)

    def start(self, container_id: str, timeout: float | None = None) -> None:
        self._transition("start", container_id, "running")

    def stop(self, container_id: str, timeout: float | None = None) -> None:
        self._transition("stop", container_id, "stopped")
        self._end_followers(container_id)

    def restart(self, container_id: str, timeout: float | None = None) -> None:
        self._transition("restart", container_id, "running")

    def remove(self, container_id: str, timeout: float | None = None) -> None:
        c = self._get(container_id)
        self._transition("remove", container_id, None)
        with self.lock:
            self.containers.pop(c.id, None)
        self._end_followers(c.id)

    def logs(
        self, container_id: str, follow: bool = False, tail: int | None = None, timeout: float | None = None
    ) -> LogStream:
        c = self._get(container_id)
        self._record("logs", c.name)
        lines = c.logs[-tail:] if tail else list(c.logs)
        if not follow:
            return LogStream(iter([(line + "\n").encode("utf-8") for line in lines]))
        src = _FollowSource(lines)
        with self.lock:
            self.followers.setdefault(c.id, []).append(src)
        return LogStream(src, on_close=src.close)

    def emit(self, name: str, line: str) -> None:
        c = self.by_name(name)
        assert c is not None
        c.logs.append(line)
        with self.lock:
            sources = list(self.followers.get(c.id, []))
        for s in sources:
            s.push(line)

    def _end_followers(self, container_id: str) -> None:
        with self.lock:
            sources = self.followers.pop(container_id, [])
        for s in sources:
            s.end()


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite file."""
    monkeypatch.setattr(db, "settings", dataclasses.replace(db.settings, db_path=str(tmp_path / "dcr.db")))
    db.init_db()
    return tmp_path / "dcr.db"


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def cache():
    return StatusCache()


@pytest.fixture
def reconciler(fake_runtime, cache):
    return Reconciler(fake_runtime, cache, read_retries=3, retry_backoff_s=0, poll_interval_s=1, enable_drift=True)
