"""Tests for exchange rate caching and VND/USD conversion."""

import asyncio
import time
from decimal import Decimal

import httpx
import pytest

from app.services.currency import (
    CurrencyFetchError,
    CurrencyService,
    RateCache,
    fetch_rate_from_api,
    format_usd,
    format_vnd,
    usd_to_vnd,
    vnd_to_usd,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class CountingFetcher:
    def __init__(self, *rates: Decimal | Exception):
        self.rates = list(rates)
        self.calls = 0

    async def __call__(self) -> Decimal:
        self.calls += 1
        value = self.rates[min(self.calls, len(self.rates)) - 1]
        if isinstance(value, Exception):
            raise value
        return value


# ============ conversion ============


def test_vnd_to_usd_rounds_to_cents():
    assert vnd_to_usd(Decimal("880000"), Decimal("25000")) == Decimal("35.20")
    assert vnd_to_usd(Decimal("100000"), Decimal("24500")) == Decimal("4.08")


def test_usd_to_vnd_rounds_to_whole_unit():
    assert usd_to_vnd(Decimal("35.20"), Decimal("25000")) == Decimal("880000")
    assert usd_to_vnd(Decimal("4.08"), Decimal("24500")) == Decimal("99960")


def test_round_trip_within_half_a_cent_of_rate():
    rate = Decimal("24500")
    for amount in (Decimal("12345"), Decimal("880000"), Decimal("3999999")):
        back = usd_to_vnd(vnd_to_usd(amount, rate), rate)
        assert abs(back - amount) <= rate / 200


def test_format_vnd():
    assert format_vnd(Decimal("1000000")) == "1.000.000 ₫"
    assert format_vnd(Decimal("500")) == "500 ₫"


def test_format_usd():
    assert format_usd(Decimal("1234.5")) == "$1,234.50"


# ============ RateCache ============


def test_cache_fresh_then_stale():
    clock = FakeClock()
    cache = RateCache(60, clock=clock)
    cache.set(Decimal("25000"))
    assert cache.get() == Decimal("25000")

    clock.now += 61
    assert cache.get() is None
    assert cache.peek() == (Decimal("25000"), False)


def test_mark_failed_sets_fallback_only_without_history():
    clock = FakeClock()
    cache = RateCache(60, clock=clock)
    cache.mark_failed(Decimal("24500"))
    assert cache.get() is None
    assert cache.last_known_good() == Decimal("24500")
    assert cache.failed_within(30)
    clock.now += 31
    assert not cache.failed_within(30)

    cache.set(Decimal("25000"))
    assert not cache.failed_within(30)
    cache.mark_failed(Decimal("24500"))
    assert cache.last_known_good() == Decimal("25000")
    assert cache.peek() == (Decimal("25000"), True)


def test_invalidate_keeps_last_known_good():
    cache = RateCache(60, clock=FakeClock())
    cache.set(Decimal("25000"))
    cache.invalidate()
    assert cache.get() is None
    assert cache.peek() == (None, False)
    assert cache.last_known_good() == Decimal("25000")


# ============ CurrencyService ============


@pytest.mark.asyncio
async def test_fixed_mode_never_fetches():
    fetcher = CountingFetcher(Decimal("1"))
    service = CurrencyService(RateCache(60), fetcher=fetcher, fixed_rate=Decimal("25000"))
    assert service.is_fixed
    assert service.mode == "fixed"
    assert await service.current_rate() == Decimal("25000")
    assert await service.refresh() == Decimal("25000")
    assert fetcher.calls == 0


@pytest.mark.asyncio
async def test_cold_start_fetches_once_and_caches():
    fetcher = CountingFetcher(Decimal("25300"))
    service = CurrencyService(RateCache(60, clock=FakeClock()), fetcher=fetcher)
    assert await service.current_rate() == Decimal("25300")
    assert await service.current_rate() == Decimal("25300")
    assert fetcher.calls == 1


@pytest.mark.asyncio
async def test_concurrent_cold_readers_share_one_fetch():
    fetcher = CountingFetcher(Decimal("25300"))
    service = CurrencyService(RateCache(60, clock=FakeClock()), fetcher=fetcher)
    rates = await asyncio.gather(*(service.current_rate() for _ in range(5)))
    assert set(rates) == {Decimal("25300")}
    assert fetcher.calls == 1


@pytest.mark.asyncio
async def test_stale_rate_served_while_refreshing():
    clock = FakeClock()
    fetcher = CountingFetcher(Decimal("25000"), Decimal("25500"))
    service = CurrencyService(RateCache(60, clock=clock), fetcher=fetcher)
    await service.current_rate()

    clock.now += 120
    assert await service.current_rate() == Decimal("25000")
    await service._refresh_task
    assert fetcher.calls == 2
    assert await service.current_rate() == Decimal("25500")


@pytest.mark.asyncio
async def test_failed_refresh_keeps_cached_rate():
    fetcher = CountingFetcher(Decimal("25000"), CurrencyFetchError("down"))
    service = CurrencyService(RateCache(60, clock=FakeClock()), fetcher=fetcher)
    await service.current_rate()

    with pytest.raises(CurrencyFetchError):
        await service.refresh()
    assert service.cache.peek() == (Decimal("25000"), True)
    assert await service.current_rate() == Decimal("25000")
    assert fetcher.calls == 2


@pytest.mark.asyncio
async def test_refresh_wraps_unexpected_fetch_errors():
    fetcher = CountingFetcher(RuntimeError("socket closed"))
    service = CurrencyService(RateCache(60, clock=FakeClock()), fetcher=fetcher)
    with pytest.raises(CurrencyFetchError):
        await service.refresh()


@pytest.mark.asyncio
async def test_stale_rate_kept_when_background_fetch_fails():
    clock = FakeClock()
    fetcher = CountingFetcher(Decimal("25000"), CurrencyFetchError("down"))
    service = CurrencyService(RateCache(60, clock=clock), fetcher=fetcher)
    await service.current_rate()

    clock.now += 120
    assert await service.current_rate() == Decimal("25000")
    await service._refresh_task
    assert await service.current_rate() == Decimal("25000")
    await service._refresh_task
    # Inside the backoff window readers do not call the source again
    assert fetcher.calls == 2


@pytest.mark.asyncio
async def test_fetch_failure_without_history_uses_default():
    fetcher = CountingFetcher(CurrencyFetchError("down"))
    service = CurrencyService(RateCache(60), fetcher=fetcher, default_rate=Decimal("24500"))
    assert await service.current_rate() == Decimal("24500")


@pytest.mark.asyncio
async def test_cold_start_with_source_down_fetches_once():
    calls = 0

    async def slow_failure() -> Decimal:
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.2)
        raise CurrencyFetchError("down")

    service = CurrencyService(RateCache(60), fetcher=slow_failure, default_rate=Decimal("24500"))
    started = time.monotonic()
    rates = await asyncio.gather(*(service.current_rate() for _ in range(5)))
    elapsed = time.monotonic() - started

    assert rates == [Decimal("24500")] * 5
    assert calls == 1
    assert elapsed < 0.5

    assert await service.current_rate() == Decimal("24500")
    await service._refresh_task
    assert calls == 1


@pytest.mark.asyncio
async def test_refresh_replaces_fresh_rate():
    fetcher = CountingFetcher(Decimal("25000"), Decimal("26000"))
    service = CurrencyService(RateCache(3600, clock=FakeClock()), fetcher=fetcher)
    await service.current_rate()
    assert await service.refresh() == Decimal("26000")
    assert await service.current_rate() == Decimal("26000")
    assert fetcher.calls == 2


@pytest.mark.asyncio
async def test_conversion_details(currency):
    details = await currency.conversion_details(Decimal("880000"))
    assert details["amount_usd"] == Decimal("35.20")
    assert details["exchange_rate"] == Decimal("25000")
    assert details["mode"] == "fixed"
    assert details["formatted_vnd"] == "880.000 ₫"
    assert details["formatted_usd"] == "$35.20"


# ============ external source ============


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_fetch_rate_from_api_parses_vnd():
    async with _client(lambda request: httpx.Response(200, json={"rates": {"VND": 25412.5}})) as client:
        assert await fetch_rate_from_api(client) == Decimal("25412.5")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"error": "boom"}),
        httpx.Response(200, json={"rates": {"EUR": 0.9}}),
        httpx.Response(200, json={"rates": {"VND": 0}}),
        httpx.Response(200, text="not json"),
    ],
)
async def test_fetch_rate_from_api_rejects_bad_responses(response):
    async with _client(lambda request: response) as client:
        with pytest.raises(CurrencyFetchError):
            await fetch_rate_from_api(client)
