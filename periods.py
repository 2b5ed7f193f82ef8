from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional


@dataclass(frozen=True)
class MonthWindow:
    year: int
    month: int
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


def month_window(year: int, month: int) -> MonthWindow:
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    start = datetime(year, month, 1)
    if month == 12:
        end = datetime(year + 1, 1, 1)
    else:
        end = datetime(year, month + 1, 1)
    return MonthWindow(year, month, start, end)


def resolve_month(
    month: Optional[str], year: Optional[str], *, today: Optional[date] = None
) -> MonthWindow:
    today = today or date.today()
    month_value = int(month) if month else today.month
    year_value = int(year) if year else today.year
    return month_window(year_value, month_value)
