from __future__ import annotations

from quest_ops.cache import QueryCache, make_key


def test_make_key_ignores_parameter_order():
    assert make_key("q", {"a": 1, "b": [1, 2]}) == make_key("q", {"b": [1, 2], "a": 1})
    assert make_key("q") == ("q", ())


def test_get_or_fetch_reuses_cached_value():
    cache = QueryCache(clock=lambda: 42.0)
    calls = []

    def fetch():
        calls.append(1)
        return len(calls)

    key = make_key("signups")
    assert cache.get_or_fetch(key, fetch) == 1
    assert cache.get_or_fetch(key, fetch) == 1
    assert cache.get_or_fetch(key, fetch, refresh=True) == 2
    assert cache.peek(key).fetched_at == 42.0
    assert len(calls) == 2


def test_invalidate_by_name_and_prefix():
    cache = QueryCache()
    cache.get_or_fetch(make_key("instance_attention", {"instance_id": "a"}), lambda: 1)
    cache.get_or_fetch(make_key("instance_attention", {"instance_id": "b"}), lambda: 2)
    cache.get_or_fetch(make_key("instances"), lambda: 3)
    cache.get_or_fetch(make_key("squads"), lambda: 4)

    assert cache.invalidate("instance_attention") == 2
    assert cache.invalidate("inst", prefix=True) == 1
    assert cache.invalidate("missing") == 0
    assert len(cache) == 1

    cache.invalidate_all()
    assert len(cache) == 0


def test_failed_fetch_leaves_no_entry():
    cache = QueryCache()
    key = make_key("flags")

    def boom():
        raise RuntimeError("backend down")

    try:
        cache.get_or_fetch(key, boom)
    except RuntimeError:
        pass
    assert cache.peek(key) is None
