"""Calendar helpers for monthly installment and subscription schedules."""

from datetime import date, timedelta


def month_end(value: date) -> date:
    next_month = value.replace(day=28) + timedelta(days=4)
    return next_month.replace(day=1) - timedelta(days=1)


def add_months(value: date, months: int) -> date:
    """Shift by whole months, clamping the day to the target month's length.

    ``months`` may be negative.
    """
    year = value.year + (value.month - 1 + months) // 12
    month = (value.month - 1 + months) % 12 + 1
    day = min(value.day, month_end(date(year, month, 1)).day)
    return date(year, month, day)


def monthly_schedule(start: date, end: date, step_months: int = 1) -> list[date]:
    """Dates ``start + k * step_months`` for k = 0, 1, ... up to ``end`` inclusive.

    Each date is computed from ``start`` rather than from the previous date, so
    a 31st keeps landing on month ends instead of drifting to the 28th.
    """
    dates: list[date] = []
    k = 0
    current = start
    while current <= end:
        dates.append(current)
        k += 1
        current = add_months(start, k * step_months)
    return dates
