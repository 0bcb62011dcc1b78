from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal, InvalidOperation
import re
from typing import Any, Mapping, Optional
from uuid import uuid4

from budget_tracker.currency_conversion import DEFAULT_CURRENCY, normalize_currency

ZERO = Decimal("0")
# Wrapping cycles are counted against a fixed 31-day month, whatever the
# real month length is.
CYCLE_MONTH_DAYS = 31
CYCLE_TYPES = {"salary", "credit-card", "custom"}
THEMES = {"light", "dark"}
_REMINDER_TIME = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


@dataclass(frozen=True)
class BudgetCycle:
    id: str
    name: str
    type: str
    start_day: int
    end_day: int
    monthly_budget: Decimal = ZERO
    is_active: bool = False


@dataclass(frozen=True)
class NotificationSettings:
    daily_reminder: bool = False
    reminder_time: str = "20:00"
    budget_alerts: bool = True
    weekly_summary: bool = False


@dataclass(frozen=True)
class UserSettings:
    cycles: tuple[BudgetCycle, ...] = ()
    active_cycle_id: Optional[str] = None
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    theme: str = "light"
    default_currency: str = DEFAULT_CURRENCY


DEFAULT_CYCLE = BudgetCycle(
    id="default-salary",
    name="Monthly Salary",
    type="salary",
    start_day=1,
    end_day=31,
    monthly_budget=ZERO,
    is_active=True,
)

DEFAULT_SETTINGS = UserSettings(
    cycles=(DEFAULT_CYCLE,),
    active_cycle_id=DEFAULT_CYCLE.id,
)


def days_in_cycle(cycle: BudgetCycle) -> int:
    if cycle.start_day <= cycle.end_day:
        return cycle.end_day - cycle.start_day + 1
    return (CYCLE_MONTH_DAYS - cycle.start_day + 1) + cycle.end_day


def resolve_period_days(cycle: Optional[BudgetCycle], reference: date) -> int:
    """Days a budget is spread over: the cycle's length, else the real month."""
    if cycle is not None:
        return days_in_cycle(cycle)
    return monthrange(reference.year, reference.month)[1]


def validate_cycle(cycle: BudgetCycle) -> BudgetCycle:
    name = cycle.name.strip()
    if not name:
        raise ValueError("Cycle name required.")
    cycle_type = cycle.type.strip().lower()
    if cycle_type not in CYCLE_TYPES:
        raise ValueError(f"Unsupported cycle type: {cycle.type}")
    for label, day in (("start_day", cycle.start_day), ("end_day", cycle.end_day)):
        if not 1 <= day <= CYCLE_MONTH_DAYS:
            raise ValueError(f"{label} must be between 1 and 31.")
    if cycle.monthly_budget < ZERO:
        raise ValueError("monthly_budget must not be negative.")
    return replace(cycle, name=name, type=cycle_type)


def get_active_cycle(settings: UserSettings) -> Optional[BudgetCycle]:
    if not settings.active_cycle_id:
        return None
    for cycle in settings.cycles:
        if cycle.id == settings.active_cycle_id:
            return cycle
    return None


def add_cycle(settings: UserSettings, cycle: BudgetCycle) -> UserSettings:
    """Append a cycle; it becomes active when it is the first one."""
    new_cycle = validate_cycle(replace(cycle, id=cycle.id or uuid4().hex))
    if any(existing.id == new_cycle.id for existing in settings.cycles):
        raise ValueError(f"Cycle already exists: {new_cycle.id}")
    active_cycle_id = settings.active_cycle_id
    if not settings.cycles:
        active_cycle_id = new_cycle.id
    return _with_active(
        replace(settings, cycles=settings.cycles + (new_cycle,)),
        active_cycle_id,
    )


def update_cycle(settings: UserSettings, cycle: BudgetCycle) -> UserSettings:
    _require_cycle(settings, cycle.id)
    updated = validate_cycle(cycle)
    cycles = tuple(
        updated if existing.id == cycle.id else existing
        for existing in settings.cycles
    )
    return _with_active(replace(settings, cycles=cycles), settings.active_cycle_id)


def delete_cycle(settings: UserSettings, cycle_id: str) -> UserSettings:
    """Remove a cycle; deleting the active one promotes the first remaining."""
    _require_cycle(settings, cycle_id)
    remaining = tuple(cycle for cycle in settings.cycles if cycle.id != cycle_id)
    active_cycle_id = settings.active_cycle_id
    if active_cycle_id == cycle_id:
        active_cycle_id = remaining[0].id if remaining else None
    return _with_active(replace(settings, cycles=remaining), active_cycle_id)


def set_active_cycle(settings: UserSettings, cycle_id: str) -> UserSettings:
    _require_cycle(settings, cycle_id)
    return _with_active(settings, cycle_id)


def update_notifications(
    settings: UserSettings, notifications: NotificationSettings
) -> UserSettings:
    if not _REMINDER_TIME.match(notifications.reminder_time):
        raise ValueError("reminder_time must use HH:MM (24h).")
    return replace(settings, notifications=notifications)


def update_display(
    settings: UserSettings,
    theme: Optional[str] = None,
    default_currency: Optional[str] = None,
) -> UserSettings:
    if theme is not None:
        theme = theme.strip().lower()
        if theme not in THEMES:
            raise ValueError(f"Unsupported theme: {theme}")
        settings = replace(settings, theme=theme)
    if default_currency is not None:
        settings = replace(settings, default_currency=normalize_currency(default_currency))
    return settings


def settings_to_dict(settings: UserSettings) -> dict[str, Any]:
    return {
        "cycles": [_cycle_to_dict(cycle) for cycle in settings.cycles],
        "activeCycleId": settings.active_cycle_id,
        "notifications": {
            "dailyReminder": settings.notifications.daily_reminder,
            "reminderTime": settings.notifications.reminder_time,
            "budgetAlerts": settings.notifications.budget_alerts,
            "weeklySummary": settings.notifications.weekly_summary,
        },
        "theme": settings.theme,
        "defaultCurrency": settings.default_currency,
    }


def settings_from_dict(payload: Mapping[str, Any]) -> UserSettings:
    """Rebuild settings from their stored document, filling gaps with defaults."""
    raw_cycles = payload.get("cycles")
    if isinstance(raw_cycles, list):
        cycles = tuple(_cycle_from_dict(item) for item in raw_cycles)
    else:
        cycles = DEFAULT_SETTINGS.cycles

    defaults = DEFAULT_SETTINGS.notifications
    raw_notifications = payload.get("notifications") or {}
    notifications = NotificationSettings(
        daily_reminder=bool(raw_notifications.get("dailyReminder", defaults.daily_reminder)),
        reminder_time=str(raw_notifications.get("reminderTime", defaults.reminder_time)),
        budget_alerts=bool(raw_notifications.get("budgetAlerts", defaults.budget_alerts)),
        weekly_summary=bool(raw_notifications.get("weeklySummary", defaults.weekly_summary)),
    )

    active_cycle_id = payload.get("activeCycleId", DEFAULT_SETTINGS.active_cycle_id)
    try:
        default_currency = normalize_currency(
            str(payload.get("defaultCurrency") or DEFAULT_CURRENCY)
        )
    except ValueError:
        default_currency = DEFAULT_CURRENCY
    theme = payload.get("theme")
    return _with_active(
        UserSettings(
            cycles=cycles,
            active_cycle_id=active_cycle_id,
            notifications=notifications,
            theme=theme if theme in THEMES else DEFAULT_SETTINGS.theme,
            default_currency=default_currency,
        ),
        active_cycle_id,
    )


def _with_active(settings: UserSettings, active_cycle_id: Optional[str]) -> UserSettings:
    cycles = tuple(
        replace(cycle, is_active=cycle.id == active_cycle_id) for cycle in settings.cycles
    )
    return replace(settings, cycles=cycles, active_cycle_id=active_cycle_id)


def _require_cycle(settings: UserSettings, cycle_id: str) -> None:
    if not any(cycle.id == cycle_id for cycle in settings.cycles):
        raise KeyError(cycle_id)


def _cycle_to_dict(cycle: BudgetCycle) -> dict[str, Any]:
    return {
        "id": cycle.id,
        "name": cycle.name,
        "type": cycle.type,
        "startDay": cycle.start_day,
        "endDay": cycle.end_day,
        "monthlyBudget": str(cycle.monthly_budget),
        "isActive": cycle.is_active,
    }


def _cycle_from_dict(item: Mapping[str, Any]) -> BudgetCycle:
    try:
        monthly_budget = Decimal(str(item.get("monthlyBudget", 0)))
    except InvalidOperation:
        monthly_budget = ZERO
    return BudgetCycle(
        id=str(item["id"]),
        name=str(item.get("name", "")),
        type=str(item.get("type", "custom")),
        start_day=_day_from(item.get("startDay"), 1),
        end_day=_day_from(item.get("endDay"), CYCLE_MONTH_DAYS),
        monthly_budget=monthly_budget,
        is_active=bool(item.get("isActive", False)),
    )


def _day_from(value: Any, default: int) -> int:
    try:
        day = int(value)
    except (TypeError, ValueError):
        return default
    return day if 1 <= day <= CYCLE_MONTH_DAYS else default
