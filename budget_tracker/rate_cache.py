"""Latest known exchange rates, persisted across restarts.

The cache is written by the rate provider after a successful fetch and read
by everything that converts amounts. A snapshot older than the freshness
window is still handed out as a fallback; callers check :meth:`is_stale` to
decide whether to refresh.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
import logging
import threading
from typing import Any, Callable, Mapping

from sqlalchemy.exc import SQLAlchemyError

from budget_tracker.cache_store import KeyValueStore, MemoryKeyValueStore
from budget_tracker.currency_conversion import normalize_currency

logger = logging.getLogger(__name__)

CACHE_KEY = "budget-tracker-exchange-rates"
CACHE_TTL = timedelta(hours=1)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RateSnapshot:
    rates: Mapping[str, Decimal]
    base_currency: str
    timestamp: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "rates": {code: float(rate) for code, rate in self.rates.items()},
            "baseCurrency": self.base_currency,
            "timestamp": int(self.timestamp.timestamp() * 1000),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "RateSnapshot":
        raw_rates = payload.get("rates")
        if not isinstance(raw_rates, dict):
            raise ValueError("Cached rates payload missing rates.")
        try:
            rates = {
                normalize_currency(code): Decimal(str(value))
                for code, value in raw_rates.items()
            }
            timestamp = datetime.fromtimestamp(
                int(payload["timestamp"]) / 1000, tz=timezone.utc
            )
        except (KeyError, TypeError, InvalidOperation, OverflowError) as exc:
            raise ValueError("Cached rates payload is malformed.") from exc
        base_currency = normalize_currency(str(payload.get("baseCurrency", "USD")))
        return cls(rates=rates, base_currency=base_currency, timestamp=timestamp)


class RateCache:
    def __init__(
        self,
        store: KeyValueStore | None = None,
        clock: Clock | None = None,
        ttl: timedelta = CACHE_TTL,
        key: str = CACHE_KEY,
    ) -> None:
        self.store = store if store is not None else MemoryKeyValueStore()
        self.clock = clock or utc_now
        self.ttl = ttl
        self.key = key
        self._snapshot: RateSnapshot | None = None
        self._loaded = False
        self._lock = threading.Lock()

    @property
    def snapshot(self) -> RateSnapshot | None:
        return self._snapshot

    def load(self) -> RateSnapshot | None:
        """Read the persisted snapshot; only the first call touches the store."""
        with self._lock:
            if self._loaded:
                return self._snapshot
            self._loaded = True
            try:
                payload = self.store.get(self.key)
            except SQLAlchemyError:
                logger.exception("Error loading exchange rates from cache")
                return self._snapshot
            if payload is None:
                return self._snapshot
            try:
                loaded = RateSnapshot.from_payload(payload)
            except ValueError as exc:
                logger.error("Ignoring unreadable exchange rate cache: %s", exc)
                return self._snapshot
            if self._snapshot is None or loaded.timestamp > self._snapshot.timestamp:
                self._snapshot = loaded
            if self.is_stale():
                logger.info("Loaded exchange rate cache is stale; refresh needed")
            return self._snapshot

    def store_rates(
        self, rates: Mapping[str, Decimal], base_currency: str
    ) -> RateSnapshot:
        snapshot = RateSnapshot(
            rates=dict(rates),
            base_currency=base_currency,
            timestamp=self.clock(),
        )
        with self._lock:
            current = self._snapshot
            if current is not None and current.timestamp > snapshot.timestamp:
                return current
            self._snapshot = snapshot
        try:
            self.store.set(self.key, snapshot.to_payload())
        except SQLAlchemyError:
            logger.exception("Error saving exchange rates to cache")
        return snapshot

    def is_stale(self) -> bool:
        snapshot = self._snapshot
        if snapshot is None:
            return True
        return self.clock() - snapshot.timestamp > self.ttl

    def time_since_update(self) -> int | None:
        snapshot = self._snapshot
        if snapshot is None:
            return None
        return int((self.clock() - snapshot.timestamp).total_seconds())

    def clear(self) -> None:
        with self._lock:
            self._snapshot = None
        try:
            self.store.delete(self.key)
        except SQLAlchemyError:
            logger.exception("Error clearing exchange rate cache")
