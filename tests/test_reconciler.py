import threading
import time

import pytest

from dcr import db
from dcr.errors import NotFound, PartialApplyFailure, RuntimeUnavailable
from dcr.manifest import ContainerSpec, parse
from dcr.reconciler import Reconciler, plan
from dcr.runtime import StatusCache

from conftest import FakeRuntime


WEB_DB = b"""
containers:
  - name: web
    image: nginx:latest
    ports: ["8080:80"]
  - name: db
    image: postgres:16
"""

WEB_ONLY = b"""
containers:
  - name: web
    image: nginx:latest
    ports: ["8080:80"]
"""


def _wait_for(pred, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(0.01)
    return False


def _kinds(actions):
    return [(a.kind, a.name) for a in actions]


def test_plan_creates_every_entry_on_empty_runtime():
    m = parse(WEB_DB)
    assert _kinds(plan(m, [])) == [("create", "web"), ("create", "db")]


def test_plan_is_empty_when_converged(fake_runtime):
    m = parse(WEB_DB)
    observed = [fake_runtime.add(s) for s in m.containers]
    assert plan(m, observed) == []


def test_plan_removes_undeclared_containers(fake_runtime):
    m = parse(WEB_ONLY)
    observed = [fake_runtime.add(s) for s in parse(WEB_DB).containers]
    observed.append(fake_runtime.add(ContainerSpec(name="old", image="busybox")))
    assert _kinds(plan(m, observed)) == [("remove", "db"), ("remove", "old")]


def test_plan_replaces_changed_containers_removes_first(fake_runtime):
    old = fake_runtime.add(ContainerSpec(name="web", image="nginx:1.25"))
    m = parse(b"containers:\n  - name: web\n    image: nginx:1.26\n")
    actions = plan(m, [old])
    assert _kinds(actions) == [("remove", "web"), ("create", "web")]
    assert actions[0].container_id == old.id


def test_plan_starts_created_but_leaves_stopped_alone(fake_runtime):
    m = parse(WEB_DB)
    web = fake_runtime.add(m.get("web"), state="created")
    db_ = fake_runtime.add(m.get("db"), state="stopped")
    assert _kinds(plan(m, [web, db_])) == [("start", "web")]


def test_apply_on_empty_runtime(reconciler, fake_runtime, cache):
    summary = reconciler.submit(WEB_DB)

    assert summary.ok
    assert summary.generation == 1
    assert summary.created == ["web", "db"]
    assert fake_runtime.ops("create") == ["web", "db"]
    assert {o.name: o.state for o in cache.list()} == {"web": "running", "db": "running"}
    assert db.latest_applies(1)[0].created == ["web", "db"]


def test_second_apply_is_a_no_op(reconciler, fake_runtime):
    reconciler.submit(WEB_DB)
    summary = reconciler.submit(WEB_DB)

    assert summary.generation == 2
    assert not summary.changed
    assert fake_runtime.ops("create") == ["web", "db"]
    assert fake_runtime.ops("remove") == []


def test_apply_prunes_removed_entry(reconciler, fake_runtime, cache):
    reconciler.submit(WEB_DB)
    summary = reconciler.submit(WEB_ONLY)

    assert summary.removed == ["db"]
    assert summary.created == []
    assert fake_runtime.by_name("db") is None
    assert [o.name for o in cache.list()] == ["web"]
    assert cache.get("db") is None


def test_partial_failure_keeps_going(reconciler, fake_runtime, cache):
    fake_runtime.fail_create["db"] = "image not found"
    summary = reconciler.submit(WEB_DB)

    assert summary.created == ["web"]
    assert [(f.name, f.action) for f in summary.failed] == [("db", "create")]
    assert "image not found" in summary.failed[0].cause
    assert cache.get("web").state == "running"
    assert cache.get("db") is None
    with pytest.raises(PartialApplyFailure) as ei:
        summary.raise_for_failures()
    assert ei.value.summary is summary


def test_create_is_not_retried(reconciler, fake_runtime):
    fake_runtime.fail_create["web"] = "boom"
    reconciler.submit(WEB_ONLY)
    assert fake_runtime.ops("create") == ["web"]


def test_list_is_retried(reconciler, fake_runtime):
    fake_runtime.fail_list = 2
    summary = reconciler.submit(WEB_ONLY)
    assert summary.created == ["web"]
    assert len(fake_runtime.ops("list")) == 3


def test_unreachable_runtime_marks_cache_stale(reconciler, fake_runtime, cache):
    fake_runtime.unavailable = True
    with pytest.raises(RuntimeUnavailable):
        reconciler.submit(WEB_ONLY)
    assert cache.stale
    # The manifest was accepted anyway; the next pass will apply it.
    assert reconciler.manifest.generation == 1

    fake_runtime.unavailable = False
    summary = reconciler.reconcile_now()
    assert summary.created == ["web"]
    assert not cache.stale


def test_latest_generation_wins(reconciler, fake_runtime):
    first = reconciler.accept(parse(WEB_DB))
    second = reconciler.accept(parse(WEB_ONLY))

    summary = reconciler.apply(first)
    assert summary.generation == second.generation
    assert summary.superseded
    assert fake_runtime.ops("create") == ["web"]

    # The newer upload finds its generation already applied.
    again = reconciler.apply(second)
    assert again.generation == second.generation
    assert not again.superseded
    assert fake_runtime.ops("create") == ["web"]


def test_upload_during_apply_waits_and_applies_the_newest(reconciler, fake_runtime, cache):
    fake_runtime.create_delay = 0.2
    results = {}

    def upload(key, data):
        results[key] = reconciler.submit(data)

    first = threading.Thread(target=upload, args=("a", b"- name: a\n  image: busybox\n"))
    first.start()
    assert _wait_for(lambda: fake_runtime.ops("create") == ["a"])
    assert reconciler.applying
    second = threading.Thread(target=upload, args=("b", b"- name: b\n  image: busybox\n"))
    second.start()
    first.join()
    second.join()

    assert results["a"].generation == 1
    assert results["a"].created == ["a"]
    assert results["b"].generation == 2
    assert results["b"].removed == ["a"]
    assert results["b"].created == ["b"]
    assert not results["b"].superseded
    assert [o.name for o in cache.list()] == ["b"]
    assert [c.name for c in fake_runtime.containers.values()] == ["b"]


def test_load_restores_latest_manifest(reconciler, fake_runtime):
    reconciler.submit(WEB_DB)
    reconciler.submit(WEB_ONLY)

    restarted = Reconciler(fake_runtime, StatusCache(), retry_backoff_s=0)
    m = restarted.load()
    assert m.generation == 2
    assert m.names() == ["web"]


def test_lifecycle_by_name_and_id(reconciler, fake_runtime, cache):
    reconciler.submit(WEB_ONLY)
    web = cache.get("web")

    after = reconciler.lifecycle("web", "stop")
    assert after.state == "stopped"
    after = reconciler.lifecycle(web.id[:12], "start")
    assert after.state == "running"
    assert reconciler.lifecycle("web", "remove") is None
    assert cache.get("web") is None

    with pytest.raises(NotFound):
        reconciler.lifecycle("web", "start")


def test_lifecycle_unknown_container(reconciler):
    with pytest.raises(NotFound) as ei:
        reconciler.lifecycle("ghost", "restart")
    assert ei.value.ref == "ghost"
    assert ei.value.action == "restart"


def test_lifecycle_requests_on_one_name_do_not_overlap(cache):
    rt = FakeRuntime(delay=0.05)
    r = Reconciler(rt, cache, retry_backoff_s=0)
    r.submit(WEB_ONLY)
    rt.calls.clear()

    threads = [threading.Thread(target=r.lifecycle, args=("web", a)) for a in ("restart", "stop", "restart")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    marks = [op for op, name in rt.calls if name == "web" and op.endswith(("-begin", "-end"))]
    assert len(marks) == 6
    for begin, end in zip(marks[::2], marks[1::2]):
        assert begin.endswith("-begin")
        assert end == begin.replace("-begin", "-end")
    assert r._name_locks == {}


def test_delete_then_drift_recreates(reconciler, fake_runtime, cache):
    reconciler.submit(WEB_DB)
    reconciler.lifecycle("db", "remove")
    assert fake_runtime.by_name("db") is None

    summary = reconciler.tick()
    assert summary.trigger == "drift"
    assert summary.created == ["db"]
    assert cache.get("db").state == "running"


def test_drift_tick_on_converged_state_records_nothing(reconciler):
    reconciler.submit(WEB_ONLY)
    before = len(db.latest_applies(50))

    summary = reconciler.tick()
    assert not summary.changed
    assert len(db.latest_applies(50)) == before


def test_drift_tick_is_skipped_during_apply(reconciler, fake_runtime):
    reconciler.submit(WEB_ONLY)
    fake_runtime.by_name("web").state = "created"

    with reconciler._apply_lock:
        assert reconciler.tick() is None
    assert reconciler.tick().started == ["web"]


def test_drift_disabled_only_refreshes(fake_runtime, cache):
    r = Reconciler(fake_runtime, cache, retry_backoff_s=0, enable_drift=False)
    r.accept(parse(WEB_ONLY))
    assert r.tick() is None
    assert fake_runtime.ops("create") == []


def test_fetch_logs(reconciler, fake_runtime):
    reconciler.submit(WEB_ONLY)
    fake_runtime.emit("web", "one")
    fake_runtime.emit("web", "two")

    web = fake_runtime.by_name("web")
    assert reconciler.fetch_logs(web.id) == ["one", "two"]
    assert reconciler.fetch_logs(web.id, tail=1) == ["two"]
