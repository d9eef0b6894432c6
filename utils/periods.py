import calendar
import re
from datetime import datetime, timezone

YEAR_MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
DATE_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])-(0[1-9]|[12]\d|3[01])$")


def is_year_month(value) -> bool:
    return isinstance(value, str) and bool(YEAR_MONTH_RE.match(value))


def is_iso_date(value) -> bool:
    """Zero-padded YYYY-MM-DD naming a real calendar day."""
    if not isinstance(value, str) or not DATE_RE.match(value):
        return False
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        return False
    return True


def year_month_of(date: str) -> str:
    """'2024-06-15' -> '2024-06'"""
    return date[:7]


def month_dates(year_month: str) -> list[str]:
    """Every zero-padded ISO date of the month, in order."""
    y, m = map(int, year_month.split("-"))
    last_day = calendar.monthrange(y, m)[1]
    return [f"{year_month}-{day:02d}" for day in range(1, last_day + 1)]


def prev_month(month: str) -> str:
    """Return previous month (YYYY-MM) for a given YYYY-MM."""
    y, m = map(int, month.split("-"))
    if m == 1:
        return f"{y-1:04d}-12"
    return f"{y:04d}-{m-1:02d}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
