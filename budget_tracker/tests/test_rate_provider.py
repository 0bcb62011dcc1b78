import asyncio
import unittest
from datetime import datetime, timezone
from decimal import Decimal

import httpx

from budget_tracker.cache_store import MemoryKeyValueStore
from budget_tracker.currency_conversion import DEFAULT_RATES
from budget_tracker.rate_cache import RateCache
from budget_tracker.rate_provider import (
    PRIMARY_SOURCE,
    SECONDARY_SOURCE,
    ExchangeRateProvider,
    ProviderState,
    RateFetchFailure,
    RateProvenance,
    extract_supported_rates,
)

FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

LIVE_PAYLOAD = {
    "base": "USD",
    "rates": {"USD": 1, "CAD": 1.37, "EUR": 0.91, "TRY": 32.9, "JPY": 155.2},
}


class RecordingHandler:
    """Serves canned responses per host and records every request."""

    def __init__(self, responses: dict[str, dict]) -> None:
        self.responses = responses
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        canned = self.responses.get(request.url.host)
        if canned is None:
            raise httpx.ConnectError("unreachable", request=request)
        return httpx.Response(**canned)

    @property
    def hosts(self) -> list[str]:
        return [request.url.host for request in self.requests]


def make_provider(handler: RecordingHandler, **kwargs) -> ExchangeRateProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    cache = kwargs.pop(
        "cache", RateCache(store=MemoryKeyValueStore(), clock=lambda: FIXED_NOW)
    )
    return ExchangeRateProvider(cache, client=client, **kwargs)


class ExtractRatesTests(unittest.TestCase):
    def test_keeps_supported_currencies_only(self) -> None:
        rates = extract_supported_rates(LIVE_PAYLOAD)

        self.assertEqual(set(rates), {"USD", "CAD", "EUR", "TRY"})
        self.assertEqual(rates["CAD"], Decimal("1.37"))

    def test_missing_rates_become_zero_and_base_defaults_to_one(self) -> None:
        rates = extract_supported_rates({"rates": {"EUR": "0.9", "CAD": -1}})

        self.assertEqual(rates["USD"], Decimal("1"))
        self.assertEqual(rates["CAD"], Decimal("0"))
        self.assertEqual(rates["TRY"], Decimal("0"))

    def test_payload_without_rates_is_a_failure(self) -> None:
        with self.assertRaises(RateFetchFailure):
            extract_supported_rates({"result": "error"})


class ExchangeRateProviderTests(unittest.IsolatedAsyncioTestCase):
    async def test_live_fetch_updates_cache(self) -> None:
        handler = RecordingHandler(
            {"api.exchangerate-api.com": {"status_code": 200, "json": LIVE_PAYLOAD}}
        )
        provider = make_provider(handler)

        rates = await provider.fetch_rates("USD")

        self.assertEqual(rates.provenance, RateProvenance.LIVE)
        self.assertEqual(rates.source, PRIMARY_SOURCE.name)
        self.assertEqual(rates.rates["EUR"], Decimal("0.91"))
        self.assertEqual(provider.state, ProviderState.SUCCESS)
        self.assertEqual(provider.cache.snapshot.rates["TRY"], Decimal("32.9"))
        self.assertEqual(
            str(handler.requests[0].url), "https://api.exchangerate-api.com/v4/latest/USD"
        )
        await provider.aclose()

    async def test_concurrent_callers_share_one_round_trip(self) -> None:
        handler = RecordingHandler(
            {"api.exchangerate-api.com": {"status_code": 200, "json": LIVE_PAYLOAD}}
        )
        provider = make_provider(handler)

        first, second = await asyncio.gather(
            provider.fetch_rates("USD"), provider.fetch_rates("USD")
        )

        self.assertEqual(len(handler.requests), 1)
        self.assertIs(first, second)
        self.assertFalse(provider.is_fetching)
        await provider.aclose()

    async def test_sequential_calls_fetch_again(self) -> None:
        handler = RecordingHandler(
            {"api.exchangerate-api.com": {"status_code": 200, "json": LIVE_PAYLOAD}}
        )
        provider = make_provider(handler)

        await provider.fetch_rates()
        await provider.fetch_rates()

        self.assertEqual(len(handler.requests), 2)
        await provider.aclose()

    async def test_falls_back_to_secondary_source(self) -> None:
        handler = RecordingHandler(
            {
                "api.exchangerate-api.com": {"status_code": 503},
                "open.er-api.com": {"status_code": 200, "json": LIVE_PAYLOAD},
            }
        )
        provider = make_provider(handler)

        with self.assertLogs("budget_tracker.rate_provider", level="WARNING"):
            rates = await provider.fetch_rates()

        self.assertEqual(rates.provenance, RateProvenance.LIVE)
        self.assertEqual(rates.source, SECONDARY_SOURCE.name)
        self.assertEqual(handler.hosts, ["api.exchangerate-api.com", "open.er-api.com"])
        await provider.aclose()

    async def test_invalid_json_counts_as_failure(self) -> None:
        handler = RecordingHandler(
            {
                "api.exchangerate-api.com": {"status_code": 200, "text": "<html>"},
                "open.er-api.com": {"status_code": 200, "json": LIVE_PAYLOAD},
            }
        )
        provider = make_provider(handler)

        with self.assertLogs("budget_tracker.rate_provider", level="WARNING"):
            rates = await provider.fetch_rates()

        self.assertEqual(rates.source, SECONDARY_SOURCE.name)
        await provider.aclose()

    async def test_falls_back_to_cache_when_sources_fail(self) -> None:
        cache = RateCache(store=MemoryKeyValueStore(), clock=lambda: FIXED_NOW)
        cache.store_rates({"USD": Decimal("1"), "CAD": Decimal("1.5")}, "USD")
        provider = make_provider(RecordingHandler({}), cache=cache)

        with self.assertLogs("budget_tracker.rate_provider", level="WARNING"):
            rates = await provider.fetch_rates()

        self.assertEqual(rates.provenance, RateProvenance.CACHED)
        self.assertEqual(rates.rates["CAD"], Decimal("1.5"))
        self.assertEqual(provider.state, ProviderState.FAILED)
        await provider.aclose()

    async def test_falls_back_to_defaults_without_cache(self) -> None:
        provider = make_provider(RecordingHandler({}))

        with self.assertLogs("budget_tracker.rate_provider", level="ERROR"):
            rates = await provider.fetch_rates()

        self.assertEqual(rates.provenance, RateProvenance.DEFAULT)
        self.assertEqual(rates.rates, DEFAULT_RATES)
        self.assertEqual(provider.last_provenance, RateProvenance.DEFAULT)
        self.assertIsNone(provider.cache.snapshot)
        await provider.aclose()

    async def test_incomplete_table_is_used_with_a_warning(self) -> None:
        handler = RecordingHandler(
            {
                "api.exchangerate-api.com": {
                    "status_code": 200,
                    "json": {"rates": {"USD": 1, "EUR": 0.9}},
                }
            }
        )
        provider = make_provider(handler)

        with self.assertLogs("budget_tracker.rate_provider", level="WARNING"):
            rates = await provider.fetch_rates()

        self.assertEqual(rates.provenance, RateProvenance.LIVE)
        self.assertEqual(rates.rates["CAD"], Decimal("0"))
        await provider.aclose()

    async def test_live_rates_are_newer_than_cached(self) -> None:
        clock_times = iter(
            [FIXED_NOW, FIXED_NOW.replace(hour=13)]
        )
        cache = RateCache(store=MemoryKeyValueStore(), clock=lambda: next(clock_times))
        cache.store_rates(DEFAULT_RATES, "USD")
        handler = RecordingHandler(
            {"api.exchangerate-api.com": {"status_code": 200, "json": LIVE_PAYLOAD}}
        )
        provider = make_provider(handler, cache=cache)
        cached = provider.current_rates()

        live = await provider.fetch_rates()

        self.assertTrue(live.is_newer_than(cached))
        self.assertFalse(cached.is_newer_than(live))
        self.assertTrue(cached.is_newer_than(None))
        await provider.aclose()

    async def test_current_rates_never_touches_network(self) -> None:
        handler = RecordingHandler({})
        provider = make_provider(handler)

        rates = provider.current_rates()

        self.assertEqual(rates.provenance, RateProvenance.DEFAULT)
        self.assertEqual(handler.requests, [])
        await provider.aclose()

    async def test_subscribers_notified_on_live_fetch_only(self) -> None:
        handler = RecordingHandler(
            {"api.exchangerate-api.com": {"status_code": 200, "json": LIVE_PAYLOAD}}
        )
        provider = make_provider(handler)
        received = []

        def record(rates) -> None:
            received.append(rates)

        provider.subscribe(record)

        await provider.fetch_rates()
        handler.responses.clear()
        with self.assertLogs("budget_tracker.rate_provider", level="WARNING"):
            await provider.fetch_rates()

        self.assertEqual(len(received), 1)
        self.assertEqual(received[0].provenance, RateProvenance.LIVE)
        await provider.aclose()

    async def test_unsubscribe_during_notification(self) -> None:
        handler = RecordingHandler(
            {"api.exchangerate-api.com": {"status_code": 200, "json": LIVE_PAYLOAD}}
        )
        provider = make_provider(handler)
        calls = []
        unsubscribe_second = None

        def first(rates) -> None:
            calls.append("first")
            unsubscribe_second()

        def second(rates) -> None:
            calls.append("second")

        provider.subscribe(first)
        unsubscribe_second = provider.subscribe(second)

        await provider.fetch_rates()
        await provider.fetch_rates()

        self.assertEqual(calls, ["first", "first"])
        await provider.aclose()

    async def test_failing_subscriber_does_not_break_others(self) -> None:
        handler = RecordingHandler(
            {"api.exchangerate-api.com": {"status_code": 200, "json": LIVE_PAYLOAD}}
        )
        provider = make_provider(handler)
        received = []

        def broken(rates) -> None:
            raise RuntimeError("boom")

        def record(rates) -> None:
            received.append(rates)

        provider.subscribe(broken)
        provider.subscribe(record)

        with self.assertLogs("budget_tracker.rate_provider", level="ERROR"):
            rates = await provider.fetch_rates()

        self.assertEqual(received, [rates])
        await provider.aclose()

    async def test_unsubscribe_is_idempotent(self) -> None:
        handler = RecordingHandler(
            {"api.exchangerate-api.com": {"status_code": 200, "json": LIVE_PAYLOAD}}
        )
        provider = make_provider(handler)
        calls = []
        unsubscribe = provider.subscribe(lambda rates: calls.append(rates))

        unsubscribe()
        unsubscribe()
        await provider.fetch_rates()

        self.assertEqual(calls, [])
        await provider.aclose()

    async def test_auto_refresh_fetches_until_stopped(self) -> None:
        handler = RecordingHandler(
            {"api.exchangerate-api.com": {"status_code": 200, "json": LIVE_PAYLOAD}}
        )
        provider = make_provider(handler, refresh_interval=0.01)

        provider.start_auto_refresh("USD")
        provider.start_auto_refresh("USD")
        await asyncio.sleep(0.05)
        provider.stop_auto_refresh()
        provider.stop_auto_refresh()

        self.assertFalse(provider.is_auto_refreshing)
        self.assertGreaterEqual(len(handler.requests), 2)
        await asyncio.sleep(0.03)
        settled = len(handler.requests)
        await asyncio.sleep(0.05)
        self.assertEqual(len(handler.requests), settled)
        await provider.aclose()

    async def test_unexpected_source_error_falls_through(self) -> None:
        handler = RecordingHandler(
            {"open.er-api.com": {"status_code": 200, "json": LIVE_PAYLOAD}}
        )

        def transport(request: httpx.Request) -> httpx.Response:
            if request.url.host == "api.exchangerate-api.com":
                handler.requests.append(request)
                raise httpx.InvalidURL("bad url")
            return handler(request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(transport))
        cache = RateCache(store=MemoryKeyValueStore(), clock=lambda: FIXED_NOW)
        provider = ExchangeRateProvider(cache, client=client)

        with self.assertLogs("budget_tracker.rate_provider", level="WARNING"):
            rates = await provider.fetch_rates()

        self.assertEqual(rates.source, SECONDARY_SOURCE.name)
        self.assertEqual(provider.state, ProviderState.SUCCESS)
        self.assertEqual(handler.hosts, ["api.exchangerate-api.com", "open.er-api.com"])
        await provider.aclose()

    async def test_state_is_settled_when_fetch_raises(self) -> None:
        class BrokenCache(RateCache):
            def store_rates(self, rates, base_currency):
                raise RuntimeError("disk full")

        handler = RecordingHandler(
            {"api.exchangerate-api.com": {"status_code": 200, "json": LIVE_PAYLOAD}}
        )
        cache = BrokenCache(store=MemoryKeyValueStore(), clock=lambda: FIXED_NOW)
        provider = make_provider(handler, cache=cache)

        with self.assertRaises(RuntimeError):
            await provider.fetch_rates()

        self.assertEqual(provider.state, ProviderState.FAILED)
        self.assertFalse(provider.is_fetching)
        await provider.aclose()

    async def test_auto_refresh_survives_a_failed_round(self) -> None:
        provider = make_provider(RecordingHandler({}), refresh_interval=0.01)
        calls = []

        async def flaky_fetch(base_currency):
            calls.append(base_currency)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return provider.current_rates()

        provider.fetch_rates = flaky_fetch

        with self.assertLogs("budget_tracker.rate_provider", level="ERROR"):
            provider.start_auto_refresh("USD")
            await asyncio.sleep(0.05)
        provider.stop_auto_refresh()

        self.assertGreaterEqual(len(calls), 2)
        await provider.aclose()


if __name__ == "__main__":
    unittest.main()
