from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from threading import Event, Lock, Thread
from typing import Any, Callable, Iterator, TypeVar

from . import db
from .alerts import send_email
from .docker_ops import LogStream, ObservedContainer, RuntimeAdapter
from .errors import ContainerRuntimeError, NotFound, ParseError, PartialApplyFailure, RuntimeUnavailable
from .manifest import ContainerSpec, Manifest, parse
from .runtime import StatusCache
from .settings import settings


T = TypeVar("T")

LIFECYCLE_ACTIONS = ("start", "stop", "restart", "remove")

_ADAPTER_ERRORS = (NotFound, ContainerRuntimeError, RuntimeUnavailable)


@dataclass(frozen=True)
class Action:
    kind: str  # create|start|stop|restart|remove
    name: str
    spec: ContainerSpec | None = None
    container_id: str | None = None
    reason: str = ""


@dataclass(frozen=True)
class ActionFailure:
    name: str
    action: str
    cause: str


@dataclass
class ApplySummary:
    generation: int
    trigger: str
    created: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    started: list[str] = field(default_factory=list)
    failed: list[ActionFailure] = field(default_factory=list)
    superseded: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def changed(self) -> bool:
        return bool(self.created or self.removed or self.started or self.failed)

    def raise_for_failures(self) -> None:
        if self.failed:
            raise PartialApplyFailure(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "generation": self.generation,
            "trigger": self.trigger,
            "created": list(self.created),
            "removed": list(self.removed),
            "started": list(self.started),
            "failed": [{"name": f.name, "action": f.action, "cause": f.cause} for f in self.failed],
            "superseded": self.superseded,
        }


@dataclass
class _NameLock:
    lock: Lock = field(default_factory=Lock)
    users: int = 0


def matches(spec: ContainerSpec, observed: ObservedContainer) -> bool:
    """True when ``observed`` was created from a configuration equal to ``spec``."""
    if observed.fingerprint:
        return observed.fingerprint == spec.fingerprint()
    # Containers without our label: compare what the runtime reports.
    return observed.image == spec.image and set(observed.ports) == {str(p) for p in spec.ports}


def plan(manifest: Manifest, observed: list[ObservedContainer]) -> list[Action]:
    """Diff desired against observed state.

    Removes come first (undeclared and outdated containers, in observed order),
    then creates in manifest order, then starts for containers that were
    created but never started.
    """
    desired = {s.name: s for s in manifest.containers}
    by_name: dict[str, ObservedContainer] = {}
    for o in observed:
        by_name.setdefault(o.name, o)

    removes: list[Action] = []
    for o in by_name.values():
        if o.state in {"removing", "removed"}:
            continue
        spec = desired.get(o.name)
        if spec is None:
            removes.append(Action("remove", o.name, container_id=o.id, reason="not declared"))
        elif not matches(spec, o):
            removes.append(Action("remove", o.name, container_id=o.id, reason="configuration changed"))

    creates: list[Action] = []
    starts: list[Action] = []
    for spec in manifest.containers:
        o = by_name.get(spec.name)
        if o is None:
            creates.append(Action("create", spec.name, spec=spec, reason="missing"))
        elif o.state in {"removing", "removed"}:
            # Name still taken; the next pass creates it.
            continue
        elif not matches(spec, o):
            creates.append(Action("create", spec.name, spec=spec, reason="configuration changed"))
        elif o.state == "created":
            starts.append(Action("start", spec.name, container_id=o.id, reason="never started"))

    return removes + creates + starts


class Reconciler:
    """Drives the runtime toward the latest accepted manifest.

    - one apply at a time; the latest accepted generation always wins
    - a drift-correction thread re-applies it periodically, skipping ticks
      while an apply is in flight
    - lifecycle requests are serialized per container name
    """

    def __init__(
        self,
        adapter: RuntimeAdapter,
        cache: StatusCache,
        *,
        timeout: float | None = None,
        read_retries: int | None = None,
        retry_backoff_s: float | None = None,
        poll_interval_s: float | None = None,
        enable_drift: bool | None = None,
    ):
        self.adapter = adapter
        self.cache = cache
        self.timeout = timeout if timeout is not None else settings.runtime_timeout_s
        self.read_retries = max(1, int(read_retries if read_retries is not None else settings.read_retries))
        self.retry_backoff_s = float(retry_backoff_s if retry_backoff_s is not None else settings.retry_backoff_s)
        self.poll_interval_s = float(poll_interval_s if poll_interval_s is not None else settings.poll_interval_s)
        self.enable_drift = settings.enable_drift if enable_drift is None else enable_drift

        self._apply_lock = Lock()
        self._state_lock = Lock()
        self._latest: Manifest | None = None
        self._last_summary: ApplySummary | None = None

        self._names_guard = Lock()
        self._name_locks: dict[str, _NameLock] = {}

        self._stop = Event()
        self._thr: Thread | None = None
        self._last_tick_error: str | None = None

    @property
    def manifest(self) -> Manifest | None:
        with self._state_lock:
            return self._latest

    @property
    def applying(self) -> bool:
        return self._apply_lock.locked()

    def load(self) -> Manifest | None:
        """Restore the last accepted manifest after a process restart."""
        row = db.latest_manifest()
        if row is None:
            return None
        try:
            m = parse(row.raw).with_generation(row.generation)
        except ParseError as e:
            db.log_event("ERROR", f"Stored manifest generation {row.generation} is unreadable: {e}")
            return None
        with self._state_lock:
            if self._latest is None or m.generation > self._latest.generation:
                self._latest = m
        db.log_event("INFO", f"Restored manifest generation {m.generation}", generation=m.generation)
        return m

    def accept(self, manifest: Manifest) -> Manifest:
        """Persist ``manifest`` and assign it the next generation."""
        row = db.insert_manifest(manifest.digest, manifest.raw, len(manifest.containers))
        accepted = manifest.with_generation(row.generation)
        with self._state_lock:
            if self._latest is None or accepted.generation > self._latest.generation:
                self._latest = accepted
        db.log_event(
            "INFO",
            f"Accepted manifest generation {accepted.generation} ({len(accepted.containers)} containers)",
            generation=accepted.generation,
        )
        return accepted

    def submit(self, data: bytes, trigger: str = "upload") -> ApplySummary:
        """Parse, accept and apply an uploaded manifest."""
        return self.apply(self.accept(parse(data)), trigger=trigger)

    def apply(self, manifest: Manifest | None = None, trigger: str = "upload") -> ApplySummary | None:
        """Apply the latest accepted manifest.

        If ``manifest`` was superseded while this call waited for the apply
        lock, the newer generation is applied instead and the returned summary
        is flagged ``superseded``. Returns None when no manifest was ever
        accepted (the cache is still refreshed).
        """
        with self._apply_lock:
            latest = self.manifest
            if latest is None:
                self.refresh()
                return None
            if manifest is not None:
                done = self._last_summary
                if done is not None and done.generation == latest.generation:
                    return done if manifest.generation == latest.generation else replace(done, superseded=True)
            summary = self._apply_locked(latest, trigger)
            if manifest is not None and manifest.generation < latest.generation:
                summary = replace(summary, superseded=True)
            return summary

    def _apply_locked(self, manifest: Manifest, trigger: str) -> ApplySummary:
        stamp = self.cache.next_generation()
        try:
            observed = self._read(lambda: self.adapter.list(timeout=self.timeout), "list")
        except (RuntimeUnavailable, ContainerRuntimeError) as e:
            self.cache.mark_refresh(False, str(e))
            raise
        self.cache.replace_all(observed, stamp)
        self.cache.mark_refresh(True)

        actions = plan(manifest, observed)
        summary = ApplySummary(generation=manifest.generation, trigger=trigger)
        failed_removes: set[str] = set()

        for a in actions:
            with self._name_lock(a.name):
                if a.kind == "remove":
                    if not self._do_remove(a, summary):
                        failed_removes.add(a.name)
                elif a.kind == "create" and a.spec is not None:
                    if a.name in failed_removes:
                        summary.failed.append(
                            ActionFailure(a.name, "create", "skipped: previous container could not be removed")
                        )
                        continue
                    self._do_create(a.name, a.spec, summary)
                elif a.kind == "start":
                    self._do_start(a, summary)

        self._last_summary = summary
        if trigger != "drift" or summary.changed:
            self._record(summary, len(actions))
        return summary

    def _do_remove(self, a: Action, summary: ApplySummary) -> bool:
        stamp = self.cache.next_generation()
        try:
            self.adapter.remove(a.container_id or a.name, timeout=self.timeout)
        except NotFound:
            # Already gone: that is the state we wanted.
            pass
        except (ContainerRuntimeError, RuntimeUnavailable) as e:
            summary.failed.append(ActionFailure(a.name, "remove", str(e)))
            db.log_event("ERROR", f"Remove failed: {e}", container=a.name, generation=summary.generation)
            return False
        self.cache.invalidate(a.name, stamp)
        summary.removed.append(a.name)
        db.log_event("INFO", f"Removed container ({a.reason})", container=a.name, generation=summary.generation)
        return True

    def _do_create(self, name: str, spec: ContainerSpec, summary: ApplySummary) -> None:
        stamp = self.cache.next_generation()
        try:
            created = self.adapter.create(spec, timeout=self.timeout)
        except _ADAPTER_ERRORS as e:
            summary.failed.append(ActionFailure(name, "create", str(e)))
            db.log_event("ERROR", f"Create failed: {e}", container=name, generation=summary.generation)
            return
        self.cache.put(name, created, stamp)

        try:
            self.adapter.start(created.id, timeout=self.timeout)
        except _ADAPTER_ERRORS as e:
            summary.failed.append(ActionFailure(name, "start", str(e)))
            db.log_event("ERROR", f"Created but failed to start: {e}", container=name, generation=summary.generation)
            self._observe(name, created.id)
            return
        self._observe(name, created.id)
        summary.created.append(name)
        db.log_event(
            "INFO", f"Created container from image {spec.image}", container=name, generation=summary.generation
        )

    def _do_start(self, a: Action, summary: ApplySummary) -> None:
        try:
            self.adapter.start(a.container_id or a.name, timeout=self.timeout)
        except _ADAPTER_ERRORS as e:
            summary.failed.append(ActionFailure(a.name, "start", str(e)))
            db.log_event("ERROR", f"Start failed: {e}", container=a.name, generation=summary.generation)
            return
        self._observe(a.name, a.container_id or a.name)
        summary.started.append(a.name)
        db.log_event("INFO", f"Started container ({a.reason})", container=a.name, generation=summary.generation)

    def _observe(self, name: str, container_id: str) -> ObservedContainer | None:
        stamp = self.cache.next_generation()
        try:
            o = self.adapter.inspect(container_id, timeout=self.timeout)
        except NotFound:
            self.cache.invalidate(name, stamp)
            return None
        except (ContainerRuntimeError, RuntimeUnavailable) as e:
            db.log_event("WARN", f"Could not read back container status: {e}", container=name)
            return None
        self.cache.put(name, o, stamp)
        return o

    def _record(self, summary: ApplySummary, n_actions: int) -> None:
        failed = [{"name": f.name, "action": f.action, "cause": f.cause} for f in summary.failed]
        db.insert_apply(summary.generation, summary.trigger, summary.created, summary.removed, summary.started, failed)
        level = "INFO" if summary.ok else "ERROR"
        db.log_event(
            level,
            f"Applied generation {summary.generation} ({summary.trigger}): {n_actions} actions, "
            f"{len(summary.created)} created, {len(summary.removed)} removed, "
            f"{len(summary.started)} started, {len(summary.failed)} failed",
            generation=summary.generation,
        )
        if not summary.ok:
            self._maybe_email(summary)

    def _maybe_email(self, summary: ApplySummary) -> None:
        if not settings.enable_email:
            return
        subject = f"DCR: {len(summary.failed)} action(s) failed in generation {summary.generation}"
        lines = [f"{f.action} {f.name}: {f.cause}" for f in summary.failed]
        body = f"Trigger: {summary.trigger}\nGeneration: {summary.generation}\n\n" + "\n".join(lines)
        send_email(subject, body)

    def _read(self, fn: Callable[[], T], what: str) -> T:
        """Run an idempotent read with bounded retries and exponential backoff."""
        attempts = self.read_retries
        for i in range(attempts):
            try:
                return fn()
            except (RuntimeUnavailable, ContainerRuntimeError) as e:
                if i == attempts - 1:
                    raise
                db.log_event("WARN", f"{what} failed (attempt {i + 1}/{attempts}): {e}")
                time.sleep(self.retry_backoff_s * (2**i))
        raise AssertionError("unreachable")

    def refresh(self) -> list[ObservedContainer]:
        """Re-list the runtime into the status cache."""
        stamp = self.cache.next_generation()
        try:
            observed = self._read(lambda: self.adapter.list(timeout=self.timeout), "list")
        except (RuntimeUnavailable, ContainerRuntimeError) as e:
            self.cache.mark_refresh(False, str(e))
            raise
        self.cache.replace_all(observed, stamp)
        self.cache.mark_refresh(True)
        return observed

    def fetch_logs(self, container_id: str, tail: int | None = None) -> list[str]:
        """Read the retained log lines of a container (non-follow)."""

        def _fetch() -> list[str]:
            handle = self.adapter.logs(container_id, follow=False, tail=tail, timeout=self.timeout)
            try:
                return list(handle)
            finally:
                handle.close()

        return self._read(_fetch, "logs")

    def follow_logs(self, container_id: str, tail: int | None = None) -> LogStream:
        return self._read(
            lambda: self.adapter.logs(container_id, follow=True, tail=tail, timeout=self.timeout), "logs"
        )

    def resolve(self, ref: str, action: str | None = None) -> ObservedContainer:
        """Find a container by name or id, re-listing once on a cache miss."""
        found = self.cache.find(ref)
        if found is not None:
            return found
        try:
            self.refresh()
        except (RuntimeUnavailable, ContainerRuntimeError):
            if self.cache.find(ref) is None:
                raise
        found = self.cache.find(ref)
        if found is None:
            raise NotFound(ref, action=action)
        return found

    @contextmanager
    def _name_lock(self, name: str) -> Iterator[None]:
        """Serialize work on one container name. Idle locks are dropped."""
        with self._names_guard:
            entry = self._name_locks.get(name)
            if entry is None:
                entry = self._name_locks[name] = _NameLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._names_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._name_locks[name]

    def lifecycle(self, ref: str, action: str) -> ObservedContainer | None:
        """Start/stop/restart/remove one container, bypassing the diff.

        Returns the container as observed afterwards (None after remove).
        """
        if action not in LIFECYCLE_ACTIONS:
            raise ValueError(f"Unknown action '{action}'.")
        target = self.resolve(ref, action)
        with self._name_lock(target.name):
            # The previous holder may have removed or replaced it.
            current = self.cache.get(target.name)
            if current is None:
                raise NotFound(ref, action=action)
            stamp = self.cache.next_generation()
            fn = getattr(self.adapter, action)
            try:
                fn(current.id, timeout=self.timeout)
            except NotFound:
                self.cache.invalidate(current.name, stamp)
                raise NotFound(ref, action=action) from None
            except ContainerRuntimeError as e:
                db.log_event("ERROR", f"{action} failed: {e.cause}", container=current.name)
                raise ContainerRuntimeError(e.cause, name=current.name, action=action) from e

            db.log_event("INFO", f"{action} requested", container=current.name)
            if action == "remove":
                self.cache.invalidate(current.name, stamp)
                return None
            return self._observe(current.name, current.id) or current

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="dcr-drift", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def _loop(self) -> None:
        db.log_event("INFO", "Reconciler started")
        while not self._stop.is_set():
            try:
                self.tick()
                self._last_tick_error = None
            except Exception as e:
                msg = f"Reconciler tick failed: {type(e).__name__}: {e}"
                if msg != self._last_tick_error:
                    db.log_event("ERROR", msg)
                self._last_tick_error = msg
            self._stop.wait(max(1.0, self.poll_interval_s))

    def tick(self) -> ApplySummary | None:
        """One drift-correction pass. Skipped while an apply is in flight."""
        if not self._apply_lock.acquire(blocking=False):
            return None
        try:
            latest = self.manifest
            if latest is None or not self.enable_drift:
                self.refresh()
                return None
            summary = self._apply_locked(latest, "drift")
            if summary.changed:
                db.log_event("WARN", "Drift corrected", generation=summary.generation)
            return summary
        finally:
            self._apply_lock.release()

    def reconcile_now(self) -> ApplySummary | None:
        """Re-apply the latest manifest immediately, waiting for any apply in flight."""
        return self.apply(None, trigger="manual")
