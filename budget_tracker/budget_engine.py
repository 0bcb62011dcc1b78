from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
import logging
from typing import Iterable, List, Mapping, Optional

from budget_tracker.budget_cycles import BudgetCycle, resolve_period_days
from budget_tracker.currency_conversion import (
    DEFAULT_CURRENCY,
    ConversionPolicy,
    UnknownCurrencyRate,
    convert_amount,
    normalize_currency,
    round_money,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")

TRANSACTION_TYPES = {"income", "expense"}
INCOME_CATEGORIES = ("salary", "freelance", "bonus", "other")
EXPENSE_CATEGORIES = (
    "housing",
    "food",
    "business",
    "transportation",
    "utilities",
    "other",
)
EXPENSE_TYPES = {"mandatory", "leisure"}


class TransactionValidationError(ValueError):
    """Raised for a transaction that must not reach the aggregation engine."""


@dataclass(frozen=True)
class Transaction:
    id: str
    type: str
    category: str
    amount: Decimal
    date: date
    currency: Optional[str] = None
    notes: Optional[str] = None
    expense_type: Optional[str] = None
    is_recurring: Optional[bool] = None

    @property
    def effective_currency(self) -> str:
        """Currency of the amount; legacy records without one are USD."""
        return self.currency or DEFAULT_CURRENCY


@dataclass(frozen=True)
class Period:
    """Inclusive date range; an open end means unbounded on that side."""

    start: Optional[date] = None
    end: Optional[date] = None

    @classmethod
    def for_month(cls, day: date) -> "Period":
        last_day = monthrange(day.year, day.month)[1]
        return cls(start=day.replace(day=1), end=day.replace(day=last_day))

    @classmethod
    def for_day(cls, day: date) -> "Period":
        return cls(start=day, end=day)

    @classmethod
    def unbounded(cls) -> "Period":
        return cls()

    def contains(self, day: date) -> bool:
        if self.start is not None and day < self.start:
            return False
        if self.end is not None and day > self.end:
            return False
        return True


@dataclass(frozen=True)
class PeriodTotals:
    income: Decimal
    expense: Decimal
    mandatory_expense: Decimal
    leisure_expense: Decimal
    transactions: List[Transaction] = field(default_factory=list)


@dataclass(frozen=True)
class DashboardStats:
    total_income: Decimal
    total_expense: Decimal
    total_mandatory_expense: Decimal
    money_saved: Decimal
    monthly_budget: Decimal
    daily_budget: Decimal
    days_in_period: int
    cycle_name: str


@dataclass(frozen=True)
class DailyStats:
    date: date
    income: Decimal
    expense: Decimal
    mandatory_expense: Decimal
    leisure_expense: Decimal
    transactions: List[Transaction] = field(default_factory=list)


@dataclass(frozen=True)
class CalendarDay:
    date: date
    is_current_month: bool
    stats: DailyStats
    is_over_budget: bool = False


@dataclass(frozen=True)
class CategorySlice:
    category: str
    total: Decimal
    percentage: Decimal


def validate_transaction(txn: Transaction) -> Transaction:
    txn_type = txn.type.strip().lower()
    if txn_type not in TRANSACTION_TYPES:
        raise TransactionValidationError("Invalid transaction type.")
    if not txn.id or not txn.id.strip():
        raise TransactionValidationError("Transaction id required.")

    category = txn.category.strip().lower() if txn.category else ""
    allowed = INCOME_CATEGORIES if txn_type == "income" else EXPENSE_CATEGORIES
    if category not in allowed:
        raise TransactionValidationError(
            f"Invalid {txn_type} category: {txn.category}"
        )

    if txn.amount is None:
        raise TransactionValidationError("Amount required.")
    # Stored in whole cents; the rounded amount must still be positive.
    try:
        raw_amount = Decimal(str(txn.amount))
    except InvalidOperation as exc:
        raise TransactionValidationError("Amount must be a number.") from exc
    if not raw_amount.is_finite():
        raise TransactionValidationError("Amount must be a finite number.")
    amount = round_money(raw_amount)
    if amount <= ZERO:
        raise TransactionValidationError("Amount must be at least 0.01.")

    currency = None
    if txn.currency is not None:
        try:
            currency = normalize_currency(txn.currency)
        except ValueError as exc:
            raise TransactionValidationError(str(exc)) from exc

    expense_type = txn.expense_type.strip().lower() if txn.expense_type else None
    is_recurring = txn.is_recurring
    if txn_type == "income":
        # Only expenses carry these.
        expense_type = None
        is_recurring = None
    elif expense_type is not None and expense_type not in EXPENSE_TYPES:
        raise TransactionValidationError(f"Invalid expense type: {txn.expense_type}")

    notes = txn.notes.strip() if txn.notes else None
    return replace(
        txn,
        id=txn.id.strip(),
        type=txn_type,
        category=category,
        amount=amount,
        currency=currency,
        notes=notes or None,
        expense_type=expense_type,
        is_recurring=is_recurring,
    )


def aggregate(
    transactions: Iterable[Transaction],
    target_currency: str,
    rates: Mapping[str, Decimal],
    period: Optional[Period] = None,
    policy: ConversionPolicy = ConversionPolicy.LENIENT,
) -> PeriodTotals:
    """Sum a period's transactions by type and expense type in one currency.

    Each amount is converted (and rounded) on its own before summing. A
    transaction whose currency has no rate under the strict policy is left
    out rather than failing the whole pass.
    """
    period = period or Period.unbounded()
    income = expense = mandatory = leisure = ZERO
    included: List[Transaction] = []
    for txn in transactions:
        if not period.contains(txn.date):
            continue
        converted = _convert_or_skip(txn, target_currency, rates, policy)
        if converted is None:
            continue
        included.append(txn)
        if txn.type == "income":
            income += converted
        elif txn.type == "expense":
            expense += converted
            if txn.expense_type == "mandatory":
                mandatory += converted
            elif txn.expense_type == "leisure":
                leisure += converted

    return PeriodTotals(
        income=round_money(income),
        expense=round_money(expense),
        mandatory_expense=round_money(mandatory),
        leisure_expense=round_money(leisure),
        transactions=included,
    )


def calculate_dashboard_stats(
    transactions: Iterable[Transaction],
    target_currency: str,
    rates: Mapping[str, Decimal],
    reference: date,
    cycle: Optional[BudgetCycle] = None,
    policy: ConversionPolicy = ConversionPolicy.LENIENT,
) -> DashboardStats:
    totals = aggregate(
        transactions,
        target_currency,
        rates,
        period=Period.for_month(reference),
        policy=policy,
    )
    days_in_period = resolve_period_days(cycle, reference)
    if cycle is not None and cycle.monthly_budget > ZERO:
        monthly_budget = round_money(cycle.monthly_budget)
    else:
        monthly_budget = max(ZERO, totals.income - totals.mandatory_expense)
    daily_budget = max(ZERO, round_money(monthly_budget / days_in_period))

    return DashboardStats(
        total_income=totals.income,
        total_expense=totals.expense,
        total_mandatory_expense=totals.mandatory_expense,
        money_saved=totals.income - totals.expense,
        monthly_budget=monthly_budget,
        daily_budget=daily_budget,
        days_in_period=days_in_period,
        cycle_name=cycle.name if cycle is not None else "Monthly",
    )


def calculate_daily_stats(
    transactions: Iterable[Transaction],
    day: date,
    target_currency: str,
    rates: Mapping[str, Decimal],
    policy: ConversionPolicy = ConversionPolicy.LENIENT,
) -> DailyStats:
    totals = aggregate(
        transactions, target_currency, rates, period=Period.for_day(day), policy=policy
    )
    return DailyStats(
        date=day,
        income=totals.income,
        expense=totals.expense,
        mandatory_expense=totals.mandatory_expense,
        leisure_expense=totals.leisure_expense,
        transactions=totals.transactions,
    )


def generate_calendar_days(
    year: int,
    month: int,
    transactions: Iterable[Transaction],
    target_currency: str,
    rates: Mapping[str, Decimal],
    daily_budget: Optional[Decimal] = None,
    policy: ConversionPolicy = ConversionPolicy.LENIENT,
) -> List[CalendarDay]:
    """One entry per day of the month, flagged when spending beats the budget."""
    month_period = Period.for_month(date(year, month, 1))
    in_month = [txn for txn in transactions if month_period.contains(txn.date)]

    days: List[CalendarDay] = []
    current = month_period.start
    while current <= month_period.end:
        stats = calculate_daily_stats(
            in_month, current, target_currency, rates, policy=policy
        )
        is_over_budget = daily_budget is not None and stats.expense > daily_budget
        days.append(
            CalendarDay(
                date=current,
                is_current_month=True,
                stats=stats,
                is_over_budget=is_over_budget,
            )
        )
        current += timedelta(days=1)
    return days


def spending_by_category(
    transactions: Iterable[Transaction],
    target_currency: str,
    rates: Mapping[str, Decimal],
    period: Optional[Period] = None,
    policy: ConversionPolicy = ConversionPolicy.LENIENT,
) -> List[CategorySlice]:
    period = period or Period.unbounded()
    totals: dict[str, Decimal] = {}
    for txn in transactions:
        if txn.type != "expense" or not period.contains(txn.date):
            continue
        converted = _convert_or_skip(txn, target_currency, rates, policy)
        if converted is None:
            continue
        totals[txn.category] = totals.get(txn.category, ZERO) + converted

    grand_total = sum(totals.values(), ZERO)
    if grand_total <= ZERO:
        return []

    return [
        CategorySlice(
            category=category,
            total=round_money(total),
            percentage=round_money(total / grand_total * HUNDRED),
        )
        for category, total in sorted(
            totals.items(), key=lambda item: (-item[1], item[0])
        )
    ]


def recent_transactions(
    transactions: Iterable[Transaction], limit: int = 5
) -> List[Transaction]:
    return sorted(transactions, key=lambda txn: txn.date, reverse=True)[:limit]


def _convert_or_skip(
    txn: Transaction,
    target_currency: str,
    rates: Mapping[str, Decimal],
    policy: ConversionPolicy,
) -> Optional[Decimal]:
    try:
        return convert_amount(
            txn.amount,
            txn.effective_currency,
            target_currency,
            rates,
            policy=policy,
        )
    except UnknownCurrencyRate:
        logger.warning(
            "Skipping transaction %s: no rate for %s -> %s",
            txn.id,
            txn.effective_currency,
            target_currency,
        )
        return None


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
