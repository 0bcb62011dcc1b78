"""Live exchange rates with a fallback chain and periodic refresh.

Rates are fetched from a primary source, then a secondary one. When both
fail the last cached snapshot is used, and without a cache the hardcoded
``DEFAULT_RATES``. Callers never see a fetch failure; the provenance of the
table they get back tells them where it came from.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
import logging
from typing import Any, Callable, Mapping, Sequence

import httpx

from budget_tracker.currency_conversion import (
    BASE_CURRENCY,
    DEFAULT_RATES,
    SUPPORTED_CURRENCIES,
    ZERO,
    is_valid_rate_table,
    normalize_currency,
)
from budget_tracker.rate_cache import RateCache, RateSnapshot

logger = logging.getLogger(__name__)

REFRESH_INTERVAL_SECONDS = 60.0
REQUEST_TIMEOUT_SECONDS = 8.0


class RateFetchFailure(RuntimeError):
    """Raised when a single rate source cannot produce a usable table."""


class ProviderState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    SUCCESS = "success"
    FAILED = "failed"


class RateProvenance(str, Enum):
    LIVE = "live"
    CACHED = "cached"
    DEFAULT = "default"


@dataclass(frozen=True)
class RateSource:
    name: str
    url_template: str

    def url_for(self, base_currency: str) -> str:
        return self.url_template.format(base=base_currency)


PRIMARY_SOURCE = RateSource(
    name="exchangerate-api",
    url_template="https://api.exchangerate-api.com/v4/latest/{base}",
)
SECONDARY_SOURCE = RateSource(
    name="open-er-api",
    url_template="https://open.er-api.com/v6/latest/{base}",
)
DEFAULT_SOURCES: tuple[RateSource, ...] = (PRIMARY_SOURCE, SECONDARY_SOURCE)


@dataclass(frozen=True)
class ExchangeRates:
    rates: Mapping[str, Decimal]
    base_currency: str
    last_updated: datetime
    provenance: RateProvenance
    source: str | None = None

    def is_newer_than(self, other: "ExchangeRates | None") -> bool:
        return other is None or self.last_updated > other.last_updated

    @classmethod
    def from_snapshot(
        cls, snapshot: RateSnapshot, provenance: RateProvenance, source: str | None = None
    ) -> "ExchangeRates":
        return cls(
            rates=dict(snapshot.rates),
            base_currency=snapshot.base_currency,
            last_updated=snapshot.timestamp,
            provenance=provenance,
            source=source,
        )


RatesCallback = Callable[[ExchangeRates], None]


def extract_supported_rates(
    payload: Any, base_currency: str = BASE_CURRENCY
) -> dict[str, Decimal]:
    """Keep only the supported currencies from a ``{"rates": {...}}`` payload.

    A missing or unusable rate becomes 0, which conversion treats as unknown.
    The base currency itself defaults to 1.
    """
    raw_rates = payload.get("rates") if isinstance(payload, dict) else None
    if not isinstance(raw_rates, dict):
        raise RateFetchFailure("Rate source response missing rates")

    rates: dict[str, Decimal] = {}
    for code in SUPPORTED_CURRENCIES:
        rates[code] = _parse_rate(raw_rates.get(code))
    if rates.get(base_currency, ZERO) == ZERO:
        rates[base_currency] = Decimal("1")
    return rates


class ExchangeRateProvider:
    """Fetches exchange rates and keeps the shared :class:`RateCache` current.

    At most one fetch runs at a time: a call made while a fetch is in flight
    awaits that fetch and receives the same table. Subscribers are notified
    after every successful live fetch, in completion order.
    """

    def __init__(
        self,
        cache: RateCache,
        client: httpx.AsyncClient | None = None,
        sources: Sequence[RateSource] = DEFAULT_SOURCES,
        refresh_interval: float = REFRESH_INTERVAL_SECONDS,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.cache = cache
        self.sources = tuple(sources)
        self.refresh_interval = refresh_interval
        self.timeout = timeout
        self.state = ProviderState.IDLE
        self.last_provenance: RateProvenance | None = None
        self._client = client
        self._owns_client = client is None
        self._subscribers: dict[RatesCallback, None] = {}
        self._in_flight: asyncio.Future[ExchangeRates] | None = None
        self._refresh_task: asyncio.Task[None] | None = None
        self._refresh_base: str | None = None

    @property
    def is_fetching(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    @property
    def is_auto_refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    async def fetch_rates(self, base_currency: str = BASE_CURRENCY) -> ExchangeRates:
        base = normalize_currency(base_currency)
        in_flight = self._in_flight
        if in_flight is None or in_flight.done():
            in_flight = asyncio.ensure_future(self._fetch_with_fallback(base))
            in_flight.add_done_callback(self._clear_in_flight)
            self._in_flight = in_flight
        else:
            logger.debug("Rate fetch already in flight; joining it")
        # Shielded so a cancelled caller does not cancel the shared fetch.
        return await asyncio.shield(in_flight)

    def current_rates(self) -> ExchangeRates:
        """Cached table without touching the network, else the defaults."""
        snapshot = self.cache.snapshot
        if snapshot is not None:
            return ExchangeRates.from_snapshot(snapshot, RateProvenance.CACHED)
        return ExchangeRates(
            rates=dict(DEFAULT_RATES),
            base_currency=BASE_CURRENCY,
            last_updated=self.cache.clock(),
            provenance=RateProvenance.DEFAULT,
        )

    def subscribe(self, callback: RatesCallback) -> Callable[[], None]:
        self._subscribers[callback] = None

        def unsubscribe() -> None:
            self._subscribers.pop(callback, None)

        return unsubscribe

    def start_auto_refresh(self, base_currency: str = BASE_CURRENCY) -> None:
        base = normalize_currency(base_currency)
        if self.is_auto_refreshing and self._refresh_base == base:
            return
        self.stop_auto_refresh()
        self._refresh_base = base
        self._refresh_task = asyncio.get_running_loop().create_task(
            self._refresh_loop(base)
        )

    def stop_auto_refresh(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        self._refresh_base = None
        if task is not None and not task.done():
            task.cancel()

    async def aclose(self) -> None:
        self.stop_auto_refresh()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _refresh_loop(self, base_currency: str) -> None:
        while True:
            try:
                await self.fetch_rates(base_currency)
            except Exception:
                logger.exception("Scheduled exchange rate refresh failed")
            await asyncio.sleep(self.refresh_interval)

    async def _fetch_with_fallback(self, base_currency: str) -> ExchangeRates:
        self.state = ProviderState.FETCHING
        try:
            return await self._fetch_live_or_fallback(base_currency)
        finally:
            if self.state == ProviderState.FETCHING:
                self.state = ProviderState.FAILED

    async def _fetch_live_or_fallback(self, base_currency: str) -> ExchangeRates:
        for source in self.sources:
            try:
                rates = await self._fetch_from_source(source, base_currency)
            except RateFetchFailure as exc:
                logger.warning("Rate source %s failed: %s", source.name, exc)
                continue
            except Exception:
                logger.warning(
                    "Rate source %s raised unexpectedly", source.name, exc_info=True
                )
                continue

            snapshot = self.cache.store_rates(rates, base_currency)
            result = ExchangeRates.from_snapshot(
                snapshot, RateProvenance.LIVE, source=source.name
            )
            self.state = ProviderState.SUCCESS
            self.last_provenance = RateProvenance.LIVE
            self._notify(result)
            return result

        self.state = ProviderState.FAILED
        logger.error("All exchange rate sources failed for %s", base_currency)
        snapshot = self.cache.snapshot
        if snapshot is not None:
            logger.warning("Using cached exchange rates from %s", snapshot.timestamp)
            self.last_provenance = RateProvenance.CACHED
            return ExchangeRates.from_snapshot(snapshot, RateProvenance.CACHED)

        logger.warning("No cached exchange rates; using built-in defaults")
        self.last_provenance = RateProvenance.DEFAULT
        return ExchangeRates(
            rates=dict(DEFAULT_RATES),
            base_currency=BASE_CURRENCY,
            last_updated=self.cache.clock(),
            provenance=RateProvenance.DEFAULT,
        )

    async def _fetch_from_source(
        self, source: RateSource, base_currency: str
    ) -> dict[str, Decimal]:
        url = source.url_for(base_currency)
        try:
            response = await self._get_client().get(url, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            raise RateFetchFailure(f"{source.name} unavailable: {exc}") from exc
        except ValueError as exc:
            raise RateFetchFailure(f"{source.name} returned invalid JSON") from exc
        rates = extract_supported_rates(payload, base_currency)
        if not is_valid_rate_table(rates):
            logger.warning("%s returned an incomplete rate table", source.name)
        return rates

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    def _notify(self, rates: ExchangeRates) -> None:
        for callback in list(self._subscribers):
            # Skip callbacks unsubscribed earlier in this pass.
            if callback not in self._subscribers:
                continue
            try:
                callback(rates)
            except Exception:
                logger.exception("Exchange rate subscriber failed")

    def _clear_in_flight(self, future: asyncio.Future[ExchangeRates]) -> None:
        if self._in_flight is future:
            self._in_flight = None


def _parse_rate(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        return ZERO
    try:
        rate = Decimal(str(value))
    except InvalidOperation:
        return ZERO
    if not rate.is_finite() or rate <= ZERO:
        return ZERO
    return rate
