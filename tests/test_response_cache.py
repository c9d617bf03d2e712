from classes.response_cache import ResponseCache


def test_set_get_and_expiry(fake_clock):
    cache = ResponseCache(ttl_seconds=60, clock=fake_clock)
    key = ResponseCache.make_key("coaching", "prompt text")

    cache.set(key, {"level": "good-start"})
    assert cache.get(key) == {"level": "good-start"}

    fake_clock.advance(59)
    assert cache.get(key) is not None

    fake_clock.advance(1)
    assert cache.get(key) is None
    assert len(cache) == 0


def test_key_covers_whole_prompt_and_system():
    a = ResponseCache.make_key("s", "p" * 50 + "tail-a")
    b = ResponseCache.make_key("s", "p" * 50 + "tail-b")
    assert a != b
    assert ResponseCache.make_key("s", "p" * 60) == ResponseCache.make_key("s", "p" * 60)
    assert ResponseCache.make_key("s", "p", system="formal") != ResponseCache.make_key("s", "p", system="casual")
    assert ResponseCache.make_key("other", "p") != ResponseCache.make_key("s", "p")


def test_sweep_expired(fake_clock):
    cache = ResponseCache(ttl_seconds=10, clock=fake_clock)
    cache.set("old", 1)
    fake_clock.advance(5)
    cache.set("new", 2)
    fake_clock.advance(6)

    assert cache.sweep_expired() == 1
    assert cache.get("old") is None
    assert cache.get("new") == 2
