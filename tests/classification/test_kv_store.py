from hsclassify.classification.kv_store import InMemoryKeyValueStore, get_default_kv_store


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_incr_and_expiry():
    clock = FakeClock()
    store = InMemoryKeyValueStore(clock=clock)

    assert store.incr("hits", ttl=10) == 1
    assert store.incr("hits", ttl=10) == 2
    clock.now += 5
    assert store.get("hits") == "2"
    clock.now += 6
    assert store.get("hits") is None
    assert store.incr("hits", ttl=10) == 1


def test_set_with_ttl_and_expire():
    clock = FakeClock()
    store = InMemoryKeyValueStore(clock=clock)

    store.set("a", "1")
    store.expire("a", 3)
    store.set("b", "2", ttl=1)
    clock.now += 2
    assert store.get("a") == "1"
    assert store.get("b") is None
    clock.now += 2
    assert store.get("a") is None


def test_default_store_is_in_memory_without_redis_url():
    assert isinstance(get_default_kv_store(), InMemoryKeyValueStore)
