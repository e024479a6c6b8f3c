"""VND/USD conversion with a cached exchange rate.

The rate is either a configured constant (fixed mode) or fetched from an external
source and cached for ``EXCHANGE_RATE_CACHE_TTL_SECONDS``. Readers never wait on a
refresh once a rate has been seen: a stale entry is served from the last known good
value while a single background task re-fetches it. A failed fetch keeps whatever
was cached and is not retried by readers for ``FAILED_FETCH_BACKOFF_SECONDS``.
"""

import asyncio
import threading
import time
from collections.abc import Awaitable, Callable
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

import httpx
import structlog

from app.config import settings
from app.metrics import EXCHANGE_RATE_REFRESHES

logger = structlog.get_logger()

TWO_PLACES = Decimal("0.01")
WHOLE_UNIT = Decimal("1")
FAILED_FETCH_BACKOFF_SECONDS = 30


class CurrencyFetchError(Exception):
    """The external rate source could not produce a usable rate."""


def vnd_to_usd(amount_vnd: Decimal, rate: Decimal) -> Decimal:
    return (Decimal(amount_vnd) / Decimal(rate)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def usd_to_vnd(amount_usd: Decimal, rate: Decimal) -> Decimal:
    return (Decimal(amount_usd) * Decimal(rate)).quantize(WHOLE_UNIT, rounding=ROUND_HALF_UP)


def format_vnd(amount: Decimal) -> str:
    """1000000 -> '1.000.000 ₫'"""
    whole = int(Decimal(amount).quantize(WHOLE_UNIT, rounding=ROUND_HALF_UP))
    return f"{whole:,}".replace(",", ".") + " ₫"


def format_usd(amount: Decimal) -> str:
    """1234.5 -> '$1,234.50'"""
    return f"${Decimal(amount).quantize(TWO_PLACES, rounding=ROUND_HALF_UP):,}"


class RateCache:
    """Time-bounded single-value cache that remembers the last good rate."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._value: Decimal | None = None
        self._stored_at: float | None = None
        self._last_good: Decimal | None = None
        self._failed_at: float | None = None

    def get(self) -> Decimal | None:
        """Return the cached rate only while it is fresh."""
        value, fresh = self.peek()
        return value if fresh else None

    def peek(self) -> tuple[Decimal | None, bool]:
        with self._lock:
            if self._value is None or self._stored_at is None:
                return None, False
            return self._value, (self._clock() - self._stored_at) < self._ttl

    def set(self, rate: Decimal) -> None:
        with self._lock:
            self._value = rate
            self._stored_at = self._clock()
            self._last_good = rate
            self._failed_at = None

    def invalidate(self) -> None:
        """Mark the cached rate stale. The last known good rate is kept for fallback."""
        with self._lock:
            self._stored_at = None

    def mark_failed(self, fallback: Decimal) -> None:
        """Record a failed fetch. ``fallback`` becomes the last known good rate if there is none yet."""
        with self._lock:
            self._failed_at = self._clock()
            if self._last_good is None:
                self._last_good = fallback

    def failed_within(self, seconds: float) -> bool:
        with self._lock:
            return self._failed_at is not None and (self._clock() - self._failed_at) < seconds

    def last_known_good(self) -> Decimal | None:
        with self._lock:
            return self._last_good


_rate_client: httpx.AsyncClient | None = None


def _get_rate_client() -> httpx.AsyncClient:
    global _rate_client
    if _rate_client is None or _rate_client.is_closed:
        _rate_client = httpx.AsyncClient(timeout=settings.EXCHANGE_RATE_TIMEOUT_SECONDS)
    return _rate_client


async def fetch_rate_from_api(client: httpx.AsyncClient | None = None) -> Decimal:
    """Fetch USD->VND from the configured source (``{"rates": {"VND": ...}}``)."""
    client = client or _get_rate_client()
    try:
        response = await client.get(settings.EXCHANGE_RATE_API_URL)
        response.raise_for_status()
        rate = Decimal(str(response.json()["rates"]["VND"]))
    except (httpx.HTTPError, KeyError, TypeError, ValueError, InvalidOperation) as exc:
        raise CurrencyFetchError(f"Exchange rate source unusable: {exc}") from exc
    if rate <= 0:
        raise CurrencyFetchError(f"Exchange rate source returned non-positive rate {rate}")
    return rate


RateFetcher = Callable[[], Awaitable[Decimal]]


class CurrencyService:
    def __init__(
        self,
        cache: RateCache,
        fetcher: RateFetcher = fetch_rate_from_api,
        fixed_rate: Decimal | None = None,
        default_rate: Decimal = Decimal("24500"),
    ):
        self.cache = cache
        self._fetcher = fetcher
        self._fixed_rate = fixed_rate
        self._default_rate = default_rate
        self._write_lock = asyncio.Lock()
        self._refresh_task: asyncio.Task | None = None

    @property
    def is_fixed(self) -> bool:
        return self._fixed_rate is not None

    @property
    def mode(self) -> str:
        return "fixed" if self.is_fixed else "dynamic"

    async def current_rate(self) -> Decimal:
        """Return a usable VND per USD rate. Never raises."""
        if self._fixed_rate is not None:
            return self._fixed_rate

        value, fresh = self.cache.peek()
        if value is not None:
            if not fresh:
                self._schedule_refresh()
            return value

        fallback = self.cache.last_known_good()
        if fallback is not None:
            self._schedule_refresh()
            return fallback

        # Cold start: nothing to serve yet, so this reader waits for the first fetch.
        return await self._fetch_and_store()

    async def refresh(self) -> Decimal:
        """Fetch a new rate now, even if the cached one is still fresh.

        Raises ``CurrencyFetchError`` when the source fails; the cached rate is
        left as it was.
        """
        if self._fixed_rate is not None:
            return self._fixed_rate
        async with self._write_lock:
            return await self._fetch()

    async def to_usd(self, amount_vnd: Decimal) -> Decimal:
        return vnd_to_usd(amount_vnd, await self.current_rate())

    async def to_vnd(self, amount_usd: Decimal) -> Decimal:
        return usd_to_vnd(amount_usd, await self.current_rate())

    async def conversion_details(self, amount_vnd: Decimal) -> dict:
        rate = await self.current_rate()
        amount_usd = vnd_to_usd(amount_vnd, rate)
        return {
            "amount_vnd": Decimal(amount_vnd),
            "amount_usd": amount_usd,
            "exchange_rate": rate,
            "mode": self.mode,
            "formatted_vnd": format_vnd(amount_vnd),
            "formatted_usd": format_usd(amount_usd),
        }

    def _schedule_refresh(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.get_running_loop().create_task(self._fetch_and_store())

    async def _fetch_and_store(self) -> Decimal:
        async with self._write_lock:
            cached = self.cache.get()
            if cached is not None:
                # Another writer refreshed while we waited for the lock
                return cached
            fallback = self.cache.last_known_good()
            if fallback is not None and self.cache.failed_within(FAILED_FETCH_BACKOFF_SECONDS):
                # The source just failed for another reader
                return fallback
            try:
                return await self._fetch()
            except CurrencyFetchError:
                return self.cache.last_known_good() or self._default_rate

    async def _fetch(self) -> Decimal:
        """One call to the rate source. The caller holds the write lock."""
        try:
            rate = await self._fetcher()
        except Exception as exc:
            EXCHANGE_RATE_REFRESHES.labels(status="error").inc()
            self.cache.mark_failed(self._default_rate)
            logger.warning(
                "exchange_rate_fetch_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                fallback_rate=str(self.cache.last_known_good()),
            )
            if isinstance(exc, CurrencyFetchError):
                raise
            raise CurrencyFetchError(f"Exchange rate fetch failed: {exc}") from exc
        self.cache.set(rate)
        EXCHANGE_RATE_REFRESHES.labels(status="success").inc()
        logger.info("exchange_rate_refreshed", rate=str(rate))
        return rate


def build_currency_service() -> CurrencyService:
    return CurrencyService(
        cache=RateCache(settings.EXCHANGE_RATE_CACHE_TTL_SECONDS),
        fixed_rate=settings.VND_TO_USD_RATE if settings.USE_FIXED_EXCHANGE_RATE else None,
        default_rate=settings.VND_TO_USD_RATE,
    )


currency_service = build_currency_service()


def get_currency_service() -> CurrencyService:
    """FastAPI dependency; overridden in tests."""
    return currency_service
