import asyncio

import pytest

from services.cache import AdaptiveCache, CacheConfig


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> AdaptiveCache:
    return AdaptiveCache(CacheConfig(normal_ttl=300, elevated_ttl=60, stale_after=120), clock=clock)


class GatedFetch:
    """Fetch function that blocks until released and counts invocations."""

    def __init__(self, value, *, error: Exception | None = None) -> None:
        self.value = value
        self.error = error
        self.calls = 0
        self.release = asyncio.Event()

    async def __call__(self):
        self.calls += 1
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return self.value


def never_elevated(_value) -> bool:
    return False


def test_config_rejects_inverted_windows():
    with pytest.raises(ValueError):
        CacheConfig(normal_ttl=60, elevated_ttl=120, stale_after=30)
    with pytest.raises(ValueError):
        CacheConfig(normal_ttl=300, elevated_ttl=60, stale_after=300)


def test_elevated_entries_go_stale_sooner():
    config = CacheConfig(normal_ttl=300, elevated_ttl=60, stale_after=120)
    assert config.stale_after_for(False) == 120
    assert config.stale_after_for(True) == pytest.approx(24)
    assert config.stale_after_for(True) < config.ttl_for(True)


def test_get_after_set_returns_data(cache: AdaptiveCache, clock: FakeClock):
    cache.set("levels", {"a": 1}, elevated=False)
    clock.advance(10)
    result = cache.get("levels")
    assert result is not None
    assert result.data == {"a": 1}
    assert result.from_cache is True
    assert result.age_seconds == pytest.approx(10)


def test_normal_entry_expires_after_ttl(cache: AdaptiveCache, clock: FakeClock):
    cache.set("levels", "old", elevated=False)
    clock.advance(299)
    assert cache.get("levels") is not None
    clock.advance(2)
    assert cache.get("levels") is None
    assert cache.state("levels") == "empty"


def test_elevated_entry_expires_after_short_ttl(cache: AdaptiveCache, clock: FakeClock):
    cache.set("levels", "flooding", elevated=True)
    clock.advance(30)
    assert cache.state("levels") == "stale"
    clock.advance(31)
    assert cache.get("levels") is None


@pytest.mark.anyio
async def test_fresh_entry_is_served_without_fetch(cache: AdaptiveCache, clock: FakeClock):
    cache.set("levels", "cached", elevated=False)
    fetch = GatedFetch("new")
    result = await cache.get_or_fetch("levels", fetch, never_elevated)
    assert result.data == "cached"
    assert result.from_cache is True
    assert fetch.calls == 0


@pytest.mark.anyio
async def test_stale_reads_trigger_exactly_one_background_refresh(cache: AdaptiveCache, clock: FakeClock):
    cache.set("levels", "old", elevated=False)
    clock.advance(150)
    fetch = GatedFetch("new")

    results = await asyncio.gather(*(cache.get_or_fetch("levels", fetch, never_elevated) for _ in range(10)))
    await asyncio.sleep(0)

    assert [result.data for result in results] == ["old"] * 10
    assert all(result.from_cache for result in results)
    assert fetch.calls == 1
    assert cache.is_refreshing("levels")

    fetch.release.set()
    await cache.wait_idle()
    assert not cache.is_refreshing("levels")
    refreshed = cache.get("levels")
    assert refreshed is not None and refreshed.data == "new"
    assert cache.state("levels") == "fresh"
    assert cache.stats()["background_refreshes"] == 1


@pytest.mark.anyio
async def test_cold_cache_shares_one_fetch(cache: AdaptiveCache):
    fetch = GatedFetch("fetched")

    pending = [asyncio.ensure_future(cache.get_or_fetch("levels", fetch, never_elevated)) for _ in range(5)]
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert fetch.calls == 1

    fetch.release.set()
    results = await asyncio.gather(*pending)
    assert [result.data for result in results] == ["fetched"] * 5
    assert all(result.from_cache is False for result in results)
    assert fetch.calls == 1
    assert cache.stats()["misses"] == 5


@pytest.mark.anyio
async def test_failed_background_refresh_keeps_previous_entry(cache: AdaptiveCache, clock: FakeClock):
    cache.set("levels", "old", elevated=False)
    clock.advance(150)
    fetch = GatedFetch("unused", error=RuntimeError("upstream down"))
    fetch.release.set()

    result = await cache.get_or_fetch("levels", fetch, never_elevated)
    await cache.wait_idle()

    assert result.data == "old"
    retained = cache.get("levels")
    assert retained is not None and retained.data == "old"
    assert cache.state("levels") == "stale"
    assert cache.stats()["refresh_failures"] == 1
    assert not cache.is_refreshing("levels")


@pytest.mark.anyio
async def test_cold_fetch_failure_reaches_every_waiter_and_is_retried(cache: AdaptiveCache):
    failing = GatedFetch(None, error=RuntimeError("boom"))
    failing.release.set()
    outcomes = await asyncio.gather(
        *(cache.get_or_fetch("levels", failing, never_elevated) for _ in range(3)),
        return_exceptions=True,
    )
    assert all(isinstance(outcome, RuntimeError) for outcome in outcomes)
    assert failing.calls == 1

    working = GatedFetch("recovered")
    working.release.set()
    result = await cache.get_or_fetch("levels", working, never_elevated)
    assert result.data == "recovered"


@pytest.mark.anyio
async def test_classifier_decides_ttl(cache: AdaptiveCache, clock: FakeClock):
    fetch = GatedFetch({"status": "danger"})
    fetch.release.set()
    result = await cache.get_or_fetch("levels", fetch, lambda data: data["status"] == "danger")
    assert result.elevated is True

    clock.advance(61)
    assert cache.state("levels") == "expired"
    again = await cache.get_or_fetch("levels", fetch, lambda data: False)
    assert again.from_cache is False
    assert fetch.calls == 2
    assert again.elevated is False


@pytest.mark.anyio
async def test_close_cancels_in_flight_refresh(cache: AdaptiveCache, clock: FakeClock):
    cache.set("levels", "old", elevated=False)
    clock.advance(150)
    fetch = GatedFetch("never")
    await cache.get_or_fetch("levels", fetch, never_elevated)
    await asyncio.sleep(0)
    assert cache.is_refreshing("levels")

    await cache.close()
    assert not cache.is_refreshing("levels")
    assert cache.get("levels").data == "old"


@pytest.mark.anyio
async def test_fetch_finishing_after_clear_is_not_cached(cache: AdaptiveCache):
    fetch = GatedFetch("before-clear")
    pending = asyncio.ensure_future(cache.get_or_fetch("levels", fetch, never_elevated))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert cache.is_refreshing("levels")

    cache.clear()
    assert not cache.is_refreshing("levels")

    fetch.release.set()
    result = await pending
    assert result.data == "before-clear"
    assert cache.get("levels") is None
    assert cache.state("levels") == "empty"


@pytest.mark.anyio
async def test_loaded_age_is_carried_into_entry(cache: AdaptiveCache):
    fetch = GatedFetch("shared")
    fetch.release.set()
    result = await cache.get_or_fetch("levels", fetch, never_elevated, age_of=lambda _data: 130.0)

    assert result.from_cache is False
    assert result.age_seconds == pytest.approx(130.0)
    assert cache.state("levels") == "stale"
