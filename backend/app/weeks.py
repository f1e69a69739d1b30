"""Attendance weeks run Sunday to Saturday; week 1 is the week holding January 1st."""
from datetime import date, timedelta

DAY_NAMES = ("sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday")


def week_start(value: date) -> date:
    # date.weekday(): Monday == 0 ... Sunday == 6
    return value - timedelta(days=(value.weekday() + 1) % 7)


def week_number(value: date) -> int:
    first = week_start(date(week_start(value).year, 1, 1))
    return (week_start(value) - first).days // 7 + 1


def sunday_of_week(year: int, week: int) -> date:
    return week_start(date(year, 1, 1)) + timedelta(weeks=week - 1)


def week_dates(start: date) -> list[date]:
    return [start + timedelta(days=offset) for offset in range(7)]


def month_bounds(year: int, month: int) -> tuple[date, date]:
    """First day of the month and first day of the next month."""
    first = date(year, month, 1)
    if month == 12:
        return first, date(year + 1, 1, 1)
    return first, date(year, month + 1, 1)
