"""Dependency providers for the HTTP layer.

Each provider is cached so the app shares one engine, one rate cache and
one rate provider. Tests swap them through ``app.dependency_overrides``.
"""

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.engine import Engine

from budget_tracker.cache_store import SqlKeyValueStore
from budget_tracker.config import AppConfig, load_config
from budget_tracker.database import create_db_engine
from budget_tracker.rate_cache import RateCache
from budget_tracker.rate_provider import ExchangeRateProvider
from budget_tracker.repository import SqlSettingsRepository, SqlTransactionRepository


@lru_cache()
def get_config() -> AppConfig:
    return load_config()


@lru_cache()
def get_engine() -> Engine:
    return create_db_engine(get_config().database_url)


@lru_cache()
def get_rate_provider() -> ExchangeRateProvider:
    config = get_config()
    cache = RateCache(store=SqlKeyValueStore(get_engine()))
    return ExchangeRateProvider(
        cache,
        refresh_interval=config.rate_refresh_seconds,
        timeout=config.rate_request_timeout,
    )


def get_transaction_repository(
    engine: Engine = Depends(get_engine),
) -> SqlTransactionRepository:
    return SqlTransactionRepository(engine)


def get_settings_repository(
    engine: Engine = Depends(get_engine),
    config: AppConfig = Depends(get_config),
) -> SqlSettingsRepository:
    return SqlSettingsRepository(engine, default_currency=config.default_currency)
