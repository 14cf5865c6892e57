from dcr.docker_ops import ObservedContainer
from dcr.runtime import StatusCache


def _obs(name, state="running", id_=None):
    return ObservedContainer(id=id_ or (name * 64)[:64], name=name, image="nginx", state=state)


def test_older_write_is_discarded():
    cache = StatusCache()
    slow = cache.next_generation()
    fast = cache.next_generation()

    assert cache.put("web", _obs("web", "stopped"), fast)
    assert not cache.put("web", _obs("web", "running"), slow)
    assert cache.get("web").state == "stopped"


def test_tombstone_blocks_stale_refresh():
    cache = StatusCache()
    cache.put("web", _obs("web"), cache.next_generation())
    listing_started = cache.next_generation()
    cache.invalidate("web")

    cache.replace_all([_obs("web")], listing_started)
    assert cache.get("web") is None
    assert cache.list() == []


def test_replace_all_evicts_missing_names():
    cache = StatusCache()
    cache.replace_all([_obs("web"), _obs("db")], cache.next_generation())
    cache.replace_all([_obs("web")], cache.next_generation())

    assert [o.name for o in cache.list()] == ["web"]
    assert cache.get("db") is None


def test_replace_all_keeps_newer_single_write():
    cache = StatusCache()
    listing = cache.next_generation()
    cache.put("db", _obs("db", "created"), cache.next_generation())

    cache.replace_all([_obs("web")], listing)
    assert cache.get("db").state == "created"


def test_find_by_name_id_and_prefix():
    cache = StatusCache()
    web = _obs("web", id_="0123456789abcdef" * 4)
    cache.put("web", web, cache.next_generation())

    assert cache.find("web") == web
    assert cache.find(web.id) == web
    assert cache.find(web.id[:12]) == web
    assert cache.find(web.id[:6]) is None
    assert cache.find("nope") is None


def test_stale_flag_follows_last_refresh():
    cache = StatusCache()
    assert not cache.stale
    cache.mark_refresh(False, "Docker is not reachable")
    assert cache.stale
    assert cache.last_refresh_error == "Docker is not reachable"
    cache.mark_refresh(True)
    assert not cache.stale


def test_listing_drops_confirmed_tombstones():
    cache = StatusCache()
    cache.put("web", _obs("web"), cache.next_generation())
    inspect_started = cache.next_generation()
    cache.invalidate("web")

    cache.replace_all([], cache.next_generation())
    assert "web" not in cache._entries

    # A read that began before the removal still cannot resurrect it.
    assert not cache.put("web", _obs("web"), inspect_started)
    assert cache.get("web") is None
    assert cache.put("web", _obs("web", "created"), cache.next_generation())
    assert cache.get("web").state == "created"


def test_tombstone_from_the_same_listing_is_kept_until_the_next_one():
    cache = StatusCache()
    cache.replace_all([_obs("web"), _obs("db")], cache.next_generation())
    cache.replace_all([_obs("web")], cache.next_generation())
    assert cache._entries["db"].observed is None

    cache.replace_all([_obs("web")], cache.next_generation())
    assert "db" not in cache._entries
