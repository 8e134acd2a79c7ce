from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional

PERIOD_SLUGS = ("all", "this_month", "last_month", "custom")


@dataclass(frozen=True)
class Period:
    slug: str
    start: Optional[date]
    end: Optional[date]

    def bounds(self) -> tuple[Optional[datetime], Optional[datetime]]:
        """Inclusive datetime bounds covering whole days."""
        start_at = datetime.combine(self.start, time.min) if self.start else None
        end_at = datetime.combine(self.end, time.max) if self.end else None
        return start_at, end_at


def resolve_period(
    period: Optional[str],
    start: Optional[date],
    end: Optional[date],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if not period:
        period = "custom" if (start or end) else "all"
    if period not in PERIOD_SLUGS:
        raise ValueError(f"Unknown period: {period}")
    if period == "all":
        return Period("all", None, None)
    if period == "last_month":
        first_this = today.replace(day=1)
        last_month_end = first_this - date.resolution
        last_month_start = last_month_end.replace(day=1)
        return Period("last_month", last_month_start, last_month_end)
    if period == "custom":
        if start and end and start > end:
            raise ValueError("Start date must be before end date")
        return Period("custom", start, end)

    # this month
    first = today.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    end_this = next_month - date.resolution
    return Period("this_month", first, end_this)
