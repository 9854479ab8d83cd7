from depfinder.services.cache import InMemoryCache


def test_cache_returns_value_until_ttl_expires(clock) -> None:
    cache = InMemoryCache(ttl_seconds=300, clock=clock)
    cache.set("GET /repos/acme/widgets", {"full_name": "acme/widgets"})

    clock.advance(299)
    assert cache.get("GET /repos/acme/widgets") == {"full_name": "acme/widgets"}

    clock.advance(2)
    assert cache.get("GET /repos/acme/widgets") is None
    assert len(cache) == 0


def test_cache_evicts_least_recently_used(clock) -> None:
    cache = InMemoryCache(ttl_seconds=300, max_entries=2, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.get("a") == 1

    cache.set("c", 3)

    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.get("c") == 3


def test_cache_overwrite_does_not_evict(clock) -> None:
    cache = InMemoryCache(ttl_seconds=300, max_entries=2, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("a", 10)

    assert len(cache) == 2
    assert cache.get("a") == 10
    assert cache.get("b") == 2


def test_cache_keeps_validator_with_entry(clock) -> None:
    cache = InMemoryCache(ttl_seconds=86400, clock=clock)
    cache.set("GET /repos/acme/widgets", {"stars": 1}, validator='W/"abc"')

    entry = cache.get_entry("GET /repos/acme/widgets")
    assert entry is not None
    assert entry.validator == 'W/"abc"'
    assert entry.stored_at == clock.now


def test_cache_with_no_capacity_stores_nothing(clock) -> None:
    cache = InMemoryCache(ttl_seconds=300, max_entries=0, clock=clock)
    cache.set("a", 1)

    assert cache.get("a") is None
    assert len(cache) == 0
