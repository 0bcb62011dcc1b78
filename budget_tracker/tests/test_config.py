import os
import unittest
from unittest import mock

from budget_tracker.config import AppConfig, load_config
from budget_tracker.currency_conversion import ConversionPolicy


class LoadConfigTests(unittest.TestCase):
    def test_defaults_without_environment(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            config = load_config()

        self.assertEqual(config, AppConfig())

    def test_reads_environment(self) -> None:
        env = {
            "DATABASE_URL": "sqlite:///tmp/test.db",
            "DEFAULT_CURRENCY": "eur",
            "RATE_REFRESH_SECONDS": "120",
            "RATE_AUTO_REFRESH": "false",
            "CONVERSION_POLICY": "STRICT",
            "SESSION_TTL_DAYS": "3",
            "LOG_LEVEL": "debug",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = load_config()

        self.assertEqual(config.database_url, "sqlite:///tmp/test.db")
        self.assertEqual(config.default_currency, "EUR")
        self.assertEqual(config.rate_refresh_seconds, 120.0)
        self.assertFalse(config.rate_auto_refresh)
        self.assertIs(config.conversion_policy, ConversionPolicy.STRICT)
        self.assertEqual(config.session_ttl_days, 3)
        self.assertEqual(config.log_level, "DEBUG")

    def test_bad_values_fall_back_to_defaults(self) -> None:
        env = {
            "DEFAULT_CURRENCY": "GBP",
            "RATE_REFRESH_SECONDS": "-5",
            "RATE_REQUEST_TIMEOUT": "soon",
            "CONVERSION_POLICY": "loose",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = load_config()

        self.assertEqual(config.default_currency, "USD")
        self.assertEqual(config.rate_refresh_seconds, 60.0)
        self.assertEqual(config.rate_request_timeout, 8.0)
        self.assertIs(config.conversion_policy, ConversionPolicy.LENIENT)

    def test_session_ttl_must_be_a_positive_whole_number(self) -> None:
        for raw in ("0.5", "0", "-2", "week"):
            with self.subTest(raw=raw):
                with mock.patch.dict(os.environ, {"SESSION_TTL_DAYS": raw}, clear=True):
                    config = load_config()

                self.assertEqual(config.session_ttl_days, 7)


if __name__ == "__main__":
    unittest.main()
