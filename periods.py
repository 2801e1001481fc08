from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from errors import ValidationError
from storage import MONTH_KEY_RE


@dataclass(frozen=True)
class MonthPeriod:
    key: str
    start: date
    end: date

    @property
    def year(self) -> int:
        return self.start.year

    @property
    def month(self) -> int:
        return self.start.month

    def contains(self, value: date) -> bool:
        return self.start <= value <= self.end


def local_today(timezone: Optional[str] = None) -> date:
    tz = ZoneInfo(timezone or get_settings().timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def resolve_month(month: str) -> MonthPeriod:
    if not isinstance(month, str) or not MONTH_KEY_RE.match(month):
        raise ValidationError(f"Invalid month '{month}', expected YYYY-MM", field="month")
    year, month_number = (int(part) for part in month.split("-"))
    start = date(year, month_number, 1)
    end = start.replace(day=days_in_month(year, month_number))
    return MonthPeriod(month, start, end)


def month_of(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def months_between(earlier: date, later: date) -> int:
    return (later.year - earlier.year) * 12 + (later.month - earlier.month)
