from datetime import date

from backend.app.weeks import month_bounds, sunday_of_week, week_dates, week_number, week_start


def test_week_start_is_the_sunday_on_or_before():
    assert week_start(date(2026, 10, 18)) == date(2026, 10, 18)  # Sunday
    assert week_start(date(2026, 10, 19)) == date(2026, 10, 18)
    assert week_start(date(2026, 10, 24)) == date(2026, 10, 18)  # Saturday
    assert week_start(date(2026, 1, 1)) == date(2025, 12, 28)


def test_week_number_counts_from_the_week_holding_january_first():
    assert week_number(date(2026, 1, 1)) == 53
    assert week_number(date(2026, 1, 4)) == 2
    assert week_number(date(2025, 1, 1)) == 53
    assert week_number(date(2025, 1, 5)) == 2


def test_sunday_of_week():
    assert sunday_of_week(2025, 1) == date(2024, 12, 29)
    assert sunday_of_week(2025, 2) == date(2025, 1, 5)
    assert week_number(sunday_of_week(2025, 10)) == 10


def test_week_dates_and_month_bounds():
    days = week_dates(date(2026, 10, 18))
    assert days[0] == date(2026, 10, 18)
    assert days[-1] == date(2026, 10, 24)
    assert month_bounds(2026, 12) == (date(2026, 12, 1), date(2027, 1, 1))
    assert month_bounds(2026, 2) == (date(2026, 2, 1), date(2026, 3, 1))
