from __future__ import annotations

from typing import Any, Protocol

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Engine

from budget_tracker.database import kv_store


class KeyValueStore(Protocol):
    def get(self, key: str) -> dict[str, Any] | None:
        ...

    def set(self, key: str, value: dict[str, Any]) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class MemoryKeyValueStore:
    """Process-local store; nothing survives a restart."""

    def __init__(self, initial: dict[str, dict[str, Any]] | None = None) -> None:
        self._values: dict[str, dict[str, Any]] = dict(initial or {})

    def get(self, key: str) -> dict[str, Any] | None:
        return self._values.get(key)

    def set(self, key: str, value: dict[str, Any]) -> None:
        self._values[key] = value

    def delete(self, key: str) -> None:
        self._values.pop(key, None)


class SqlKeyValueStore:
    """Durable JSON documents in the ``kv_store`` table."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get(self, key: str) -> dict[str, Any] | None:
        with self.engine.begin() as conn:
            value = conn.execute(
                select(kv_store.c.value).where(kv_store.c.key == key)
            ).scalar_one_or_none()
        return value if isinstance(value, dict) else None

    def set(self, key: str, value: dict[str, Any]) -> None:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(kv_store)
                .where(kv_store.c.key == key)
                .values(value=value, updated_at=func.now())
            )
            if result.rowcount == 0:
                conn.execute(insert(kv_store).values(key=key, value=value))

    def delete(self, key: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(delete(kv_store).where(kv_store.c.key == key))
