from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
import logging
from typing import Any, Mapping, Protocol

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from budget_tracker.budget_cycles import (
    DEFAULT_SETTINGS,
    UserSettings,
    settings_from_dict,
    settings_to_dict,
)
from budget_tracker.budget_engine import Transaction
from budget_tracker.currency_conversion import DEFAULT_CURRENCY
from budget_tracker.database import transactions, user_settings

logger = logging.getLogger(__name__)


class RepositoryFailure(RuntimeError):
    """Raised when the backing store rejects or fails an operation."""


class TransactionNotFound(LookupError):
    """Raised when a transaction id does not exist for the user."""


class TransactionRepository(Protocol):
    def list(self, user_id: str) -> list[Transaction]:
        ...

    def create(self, user_id: str, txn: Transaction) -> Transaction:
        ...

    def update(self, user_id: str, txn: Transaction) -> Transaction:
        ...

    def delete(self, user_id: str, txn_id: str) -> None:
        ...

    def delete_all(self, user_id: str) -> int:
        ...


class SqlTransactionRepository:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def list(self, user_id: str) -> list[Transaction]:
        stmt = (
            select(transactions)
            .where(transactions.c.user_id == user_id)
            .order_by(transactions.c.date.desc(), transactions.c.id.asc())
        )
        try:
            with self.engine.begin() as conn:
                rows = conn.execute(stmt).mappings().all()
        except SQLAlchemyError as exc:
            logger.error("Error reading transactions for %s: %s", user_id, exc)
            raise RepositoryFailure("Failed to load transactions.") from exc
        return [_row_to_transaction(row) for row in rows]

    def create(self, user_id: str, txn: Transaction) -> Transaction:
        stmt = insert(transactions).values(user_id=user_id, **_transaction_values(txn))
        try:
            with self.engine.begin() as conn:
                conn.execute(stmt)
        except IntegrityError as exc:
            raise RepositoryFailure(f"Transaction already exists: {txn.id}") from exc
        except SQLAlchemyError as exc:
            logger.error("Error saving transaction %s: %s", txn.id, exc)
            raise RepositoryFailure("Failed to save transaction.") from exc
        return txn

    def update(self, user_id: str, txn: Transaction) -> Transaction:
        values = _transaction_values(txn)
        values.pop("id")
        stmt = (
            update(transactions)
            .where(transactions.c.id == txn.id, transactions.c.user_id == user_id)
            .values(**values)
        )
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as exc:
            logger.error("Error updating transaction %s: %s", txn.id, exc)
            raise RepositoryFailure("Failed to update transaction.") from exc
        if result.rowcount == 0:
            raise TransactionNotFound(txn.id)
        return txn

    def delete(self, user_id: str, txn_id: str) -> None:
        stmt = delete(transactions).where(
            transactions.c.id == txn_id, transactions.c.user_id == user_id
        )
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as exc:
            logger.error("Error deleting transaction %s: %s", txn_id, exc)
            raise RepositoryFailure("Failed to delete transaction.") from exc
        if result.rowcount == 0:
            raise TransactionNotFound(txn_id)

    def delete_all(self, user_id: str) -> int:
        stmt = delete(transactions).where(transactions.c.user_id == user_id)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as exc:
            logger.error("Error clearing transactions for %s: %s", user_id, exc)
            raise RepositoryFailure("Failed to clear transactions.") from exc
        return result.rowcount


class SqlSettingsRepository:
    """Per-user settings kept as one JSON document."""

    def __init__(self, engine: Engine, default_currency: str = DEFAULT_CURRENCY) -> None:
        self.engine = engine
        self.default_currency = default_currency

    def get(self, user_id: str) -> UserSettings:
        try:
            with self.engine.begin() as conn:
                payload = conn.execute(
                    select(user_settings.c.payload).where(user_settings.c.user_id == user_id)
                ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise RepositoryFailure("Failed to load settings.") from exc
        if not isinstance(payload, dict):
            return replace(DEFAULT_SETTINGS, default_currency=self.default_currency)
        return settings_from_dict(payload)

    def save(self, user_id: str, settings: UserSettings) -> UserSettings:
        payload = settings_to_dict(settings)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(user_settings)
                    .where(user_settings.c.user_id == user_id)
                    .values(payload=payload, updated_at=func.now())
                )
                if result.rowcount == 0:
                    conn.execute(
                        insert(user_settings).values(user_id=user_id, payload=payload)
                    )
        except SQLAlchemyError as exc:
            logger.error("Error saving settings for %s: %s", user_id, exc)
            raise RepositoryFailure("Failed to save settings.") from exc
        return settings


def _transaction_values(txn: Transaction) -> dict[str, Any]:
    return {
        "id": txn.id,
        "type": txn.type,
        "category": txn.category,
        "amount": txn.amount,
        "currency": txn.currency,
        "date": txn.date,
        "notes": txn.notes,
        "expense_type": txn.expense_type,
        "is_recurring": txn.is_recurring,
    }


def _row_to_transaction(row: Mapping[str, Any]) -> Transaction:
    amount = row["amount"]
    return Transaction(
        id=row["id"],
        type=row["type"],
        category=row["category"],
        amount=amount if isinstance(amount, Decimal) else Decimal(str(amount)),
        date=row["date"],
        currency=row["currency"],
        notes=row["notes"],
        expense_type=row["expense_type"],
        is_recurring=row["is_recurring"],
    )
