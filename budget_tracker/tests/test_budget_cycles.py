import unittest
from datetime import date
from decimal import Decimal

from budget_tracker.budget_cycles import (
    DEFAULT_SETTINGS,
    BudgetCycle,
    NotificationSettings,
    UserSettings,
    add_cycle,
    days_in_cycle,
    delete_cycle,
    get_active_cycle,
    resolve_period_days,
    set_active_cycle,
    settings_from_dict,
    settings_to_dict,
    update_cycle,
    update_display,
    update_notifications,
)


def make_cycle(cycle_id: str, start_day: int, end_day: int, **kwargs) -> BudgetCycle:
    return BudgetCycle(
        id=cycle_id,
        name=kwargs.pop("name", cycle_id.title()),
        type=kwargs.pop("type", "custom"),
        start_day=start_day,
        end_day=end_day,
        **kwargs,
    )


class CycleLengthTests(unittest.TestCase):
    def test_full_month(self) -> None:
        self.assertEqual(days_in_cycle(make_cycle("a", 1, 31)), 31)

    def test_wrapping_cycle_counts_against_31_days(self) -> None:
        self.assertEqual(days_in_cycle(make_cycle("a", 15, 14)), 31)
        self.assertEqual(days_in_cycle(make_cycle("a", 25, 5)), 12)

    def test_partial_month(self) -> None:
        self.assertEqual(days_in_cycle(make_cycle("a", 5, 15)), 11)

    def test_period_days_fall_back_to_calendar_month(self) -> None:
        self.assertEqual(resolve_period_days(None, date(2023, 2, 10)), 28)
        self.assertEqual(resolve_period_days(make_cycle("a", 5, 15), date(2023, 2, 10)), 11)


class CycleManagementTests(unittest.TestCase):
    def test_first_cycle_becomes_active(self) -> None:
        settings = add_cycle(UserSettings(), make_cycle("salary", 1, 31))

        self.assertEqual(settings.active_cycle_id, "salary")
        self.assertTrue(settings.cycles[0].is_active)

    def test_later_cycles_do_not_steal_active(self) -> None:
        settings = add_cycle(DEFAULT_SETTINGS, make_cycle("card", 25, 24))

        self.assertEqual(settings.active_cycle_id, "default-salary")
        self.assertEqual(len(settings.cycles), 2)
        self.assertFalse(settings.cycles[1].is_active)

    def test_add_generates_id_when_missing(self) -> None:
        settings = add_cycle(UserSettings(), make_cycle("", 1, 10, name="Short"))

        self.assertTrue(settings.cycles[0].id)

    def test_duplicate_id_rejected(self) -> None:
        with self.assertRaises(ValueError):
            add_cycle(DEFAULT_SETTINGS, make_cycle("default-salary", 1, 31))

    def test_invalid_days_rejected(self) -> None:
        with self.assertRaises(ValueError):
            add_cycle(DEFAULT_SETTINGS, make_cycle("bad", 0, 31))
        with self.assertRaises(ValueError):
            add_cycle(DEFAULT_SETTINGS, make_cycle("bad", 1, 32))

    def test_invalid_type_rejected(self) -> None:
        with self.assertRaises(ValueError):
            add_cycle(DEFAULT_SETTINGS, make_cycle("bad", 1, 31, type="weekly"))

    def test_deleting_active_cycle_promotes_first_remaining(self) -> None:
        settings = add_cycle(DEFAULT_SETTINGS, make_cycle("card", 25, 24))
        settings = add_cycle(settings, make_cycle("rent", 1, 15))
        settings = set_active_cycle(settings, "rent")

        settings = delete_cycle(settings, "rent")

        self.assertEqual(settings.active_cycle_id, "default-salary")
        self.assertEqual(get_active_cycle(settings).id, "default-salary")
        self.assertTrue(settings.cycles[0].is_active)

    def test_deleting_last_cycle_clears_active(self) -> None:
        settings = delete_cycle(DEFAULT_SETTINGS, "default-salary")

        self.assertEqual(settings.cycles, ())
        self.assertIsNone(settings.active_cycle_id)
        self.assertIsNone(get_active_cycle(settings))

    def test_unknown_cycle_raises_key_error(self) -> None:
        with self.assertRaises(KeyError):
            delete_cycle(DEFAULT_SETTINGS, "missing")
        with self.assertRaises(KeyError):
            set_active_cycle(DEFAULT_SETTINGS, "missing")
        with self.assertRaises(KeyError):
            update_cycle(DEFAULT_SETTINGS, make_cycle("missing", 1, 2))

    def test_update_keeps_active_flag(self) -> None:
        settings = update_cycle(
            DEFAULT_SETTINGS,
            make_cycle(
                "default-salary",
                1,
                31,
                name="Salary",
                type="salary",
                monthly_budget=Decimal("2000"),
            ),
        )

        cycle = get_active_cycle(settings)
        self.assertEqual(cycle.monthly_budget, Decimal("2000"))
        self.assertTrue(cycle.is_active)

    def test_set_active_moves_flag(self) -> None:
        settings = add_cycle(DEFAULT_SETTINGS, make_cycle("card", 25, 24))

        settings = set_active_cycle(settings, "card")

        self.assertEqual([cycle.is_active for cycle in settings.cycles], [False, True])


class PreferenceTests(unittest.TestCase):
    def test_update_display(self) -> None:
        settings = update_display(DEFAULT_SETTINGS, theme="Dark", default_currency="eur")

        self.assertEqual(settings.theme, "dark")
        self.assertEqual(settings.default_currency, "EUR")

    def test_update_display_rejects_unknown_values(self) -> None:
        with self.assertRaises(ValueError):
            update_display(DEFAULT_SETTINGS, theme="neon")
        with self.assertRaises(ValueError):
            update_display(DEFAULT_SETTINGS, default_currency="GBP")

    def test_reminder_time_must_be_24h(self) -> None:
        with self.assertRaises(ValueError):
            update_notifications(
                DEFAULT_SETTINGS, NotificationSettings(reminder_time="25:00")
            )

        settings = update_notifications(
            DEFAULT_SETTINGS, NotificationSettings(daily_reminder=True, reminder_time="07:30")
        )
        self.assertTrue(settings.notifications.daily_reminder)


class SerializationTests(unittest.TestCase):
    def test_document_round_trip(self) -> None:
        settings = add_cycle(
            DEFAULT_SETTINGS, make_cycle("card", 25, 24, monthly_budget=Decimal("150.50"))
        )
        settings = update_display(settings, theme="dark", default_currency="TRY")

        restored = settings_from_dict(settings_to_dict(settings))

        self.assertEqual(restored, settings)

    def test_partial_document_uses_defaults(self) -> None:
        restored = settings_from_dict({"theme": "dark", "defaultCurrency": "bogus"})

        self.assertEqual(restored.cycles, DEFAULT_SETTINGS.cycles)
        self.assertEqual(restored.active_cycle_id, "default-salary")
        self.assertEqual(restored.theme, "dark")
        self.assertEqual(restored.default_currency, "USD")
        self.assertEqual(restored.notifications, NotificationSettings())

    def test_malformed_cycle_days_fall_back(self) -> None:
        restored = settings_from_dict(
            {
                "cycles": [
                    {"id": "a", "name": "A", "startDay": "abc", "endDay": None},
                    {"id": "b", "name": "B", "startDay": 40, "endDay": "12"},
                ]
            }
        )

        first, second = restored.cycles
        self.assertEqual((first.start_day, first.end_day), (1, 31))
        self.assertEqual((second.start_day, second.end_day), (1, 12))


if __name__ == "__main__":
    unittest.main()
