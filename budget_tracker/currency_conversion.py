from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
import logging
from typing import Iterable, Mapping

logger = logging.getLogger(__name__)

BASE_CURRENCY = "USD"
DEFAULT_CURRENCY = "USD"
SUPPORTED_CURRENCIES: tuple[str, ...] = ("USD", "CAD", "EUR", "TRY")

ZERO = Decimal("0")
CENT = Decimal("0.01")
RATE_PRECISION = Decimal("0.0001")

# Last-resort table, units per 1 USD.
DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "CAD": Decimal("1.36"),
    "EUR": Decimal("0.92"),
    "TRY": Decimal("32.5"),
}


@dataclass(frozen=True)
class Currency:
    code: str
    name: str
    symbol: str
    locale: str


CURRENCIES: dict[str, Currency] = {
    "USD": Currency(code="USD", name="US Dollar", symbol="$", locale="en-US"),
    "CAD": Currency(code="CAD", name="Canadian Dollar", symbol="C$", locale="en-CA"),
    "EUR": Currency(code="EUR", name="Euro", symbol="€", locale="de-DE"),
    "TRY": Currency(code="TRY", name="Turkish Lira", symbol="₺", locale="tr-TR"),
}


class ConversionPolicy(str, Enum):
    """What to do when a rate needed for a conversion is unknown.

    ``LENIENT`` returns the amount unconverted and logs a warning.
    ``STRICT`` raises :class:`UnknownCurrencyRate`.
    """

    LENIENT = "lenient"
    STRICT = "strict"


class UnknownCurrencyRate(ValueError):
    """Raised when a currency has no usable (positive) rate."""

    def __init__(self, source_currency: str, target_currency: str) -> None:
        super().__init__(
            f"Missing exchange rate for {source_currency} or {target_currency}"
        )
        self.source_currency = source_currency
        self.target_currency = target_currency


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    if normalized not in SUPPORTED_CURRENCIES:
        raise ValueError(f"Unsupported currency: {normalized}")
    return normalized


def round_money(value: Decimal | int | float | str) -> Decimal:
    """Round to whole cents, halves away from zero."""
    return _coerce_amount(value).quantize(CENT, rounding=ROUND_HALF_UP)


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rates: Mapping[str, Decimal],
    policy: ConversionPolicy = ConversionPolicy.LENIENT,
) -> Decimal:
    """Convert an amount through the base-currency rate table.

    Every rate is expressed as units per 1 base currency, so the amount is
    divided by the source rate and multiplied by the target rate. The result
    is rounded to cents.
    """
    coerced_amount = _coerce_amount(amount)
    if source_currency == target_currency:
        return round_money(coerced_amount)

    source_rate = _usable_rate(rates, source_currency)
    target_rate = _usable_rate(rates, target_currency)
    if source_rate is None or target_rate is None:
        if policy is ConversionPolicy.STRICT:
            raise UnknownCurrencyRate(source_currency, target_currency)
        logger.warning(
            "Missing exchange rate for %s or %s; amount left unconverted",
            source_currency,
            target_currency,
        )
        return round_money(coerced_amount)

    amount_in_base = coerced_amount / source_rate
    return round_money(amount_in_base * target_rate)


def convert_amounts(
    items: Iterable[tuple[Decimal, str]],
    target_currency: str,
    rates: Mapping[str, Decimal],
    policy: ConversionPolicy = ConversionPolicy.LENIENT,
) -> list[Decimal]:
    return [
        convert_amount(amount, currency, target_currency, rates, policy=policy)
        for amount, currency in items
    ]


def calculate_total_in_currency(
    items: Iterable[tuple[Decimal, str]],
    target_currency: str,
    rates: Mapping[str, Decimal],
    policy: ConversionPolicy = ConversionPolicy.LENIENT,
) -> Decimal:
    """Sum ``(amount, currency)`` pairs in one currency.

    Each item is rounded on conversion, then the sum is rounded again.
    """
    converted = convert_amounts(items, target_currency, rates, policy=policy)
    return round_money(sum(converted, ZERO))


def get_inverse_rate(rate: Decimal | int | float | str) -> Decimal:
    coerced = _coerce_amount(rate)
    if coerced == ZERO:
        return ZERO
    return (Decimal("1") / coerced).quantize(RATE_PRECISION, rounding=ROUND_HALF_UP)


def get_conversion_rate(
    source_currency: str,
    target_currency: str,
    rates: Mapping[str, Decimal],
) -> Decimal:
    """Units of ``target_currency`` per 1 ``source_currency``; 0 when unknown."""
    if source_currency == target_currency:
        return Decimal("1")
    source_rate = _usable_rate(rates, source_currency)
    target_rate = _usable_rate(rates, target_currency)
    if source_rate is None or target_rate is None:
        return ZERO
    return target_rate / source_rate


def format_exchange_rate(
    rate: Decimal | int | float | str, base_currency: str, target_currency: str
) -> str:
    quantized = _coerce_amount(rate).quantize(RATE_PRECISION, rounding=ROUND_HALF_UP)
    return f"1 {base_currency} = {quantized} {target_currency}"


def is_valid_rate_table(rates: Mapping[str, Decimal]) -> bool:
    return all(_usable_rate(rates, code) is not None for code in SUPPORTED_CURRENCIES)


def _usable_rate(rates: Mapping[str, Decimal], currency: str) -> Decimal | None:
    value = rates.get(currency)
    if value is None:
        return None
    try:
        rate = _coerce_amount(value)
    except InvalidOperation:
        return None
    if not rate.is_finite() or rate <= ZERO:
        return None
    return rate


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
