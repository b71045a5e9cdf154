"""
Calendar math for billing periods.

Monthly plans bill and reset on the 1st of each month; the first month is
prorated. Annual plans run anniversary to anniversary on a pinned
day-of-month, clamped to the last day of shorter months.
"""
import calendar
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple, Union

from models import utcnow

DateLike = Union[date, datetime]

CENT = Decimal("0.01")


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def month_start(moment: DateLike) -> datetime:
    return datetime(moment.year, moment.month, 1)


def first_of_next_month(moment: DateLike) -> datetime:
    if moment.month == 12:
        return datetime(moment.year + 1, 1, 1)
    return datetime(moment.year, moment.month + 1, 1)


def calendar_period(moment: Optional[DateLike] = None) -> Tuple[datetime, datetime]:
    """(start, exclusive end) of the calendar month containing ``moment``"""
    moment = moment or utcnow()
    return month_start(moment), first_of_next_month(moment)


def month_year(moment: Optional[DateLike] = None) -> str:
    moment = moment or utcnow()
    return f"{moment.year:04d}-{moment.month:02d}"


def previous_month_year(moment: Optional[DateLike] = None) -> str:
    moment = moment or utcnow()
    return month_year(month_start(moment) - timedelta(days=1))


def days_remaining_in_month(moment: DateLike) -> int:
    """Days left in the month, counting ``moment``'s own day"""
    return days_in_month(moment.year, moment.month) - moment.day + 1


def calculate_prorated_price(full_price: Decimal, on_date: DateLike) -> Decimal:
    """
    Price for the remainder of the month when subscribing on ``on_date``.

    ``full_price * (N - D + 1) / N`` for an N-day month and day-of-month D,
    rounded half-up to cents.
    """
    total_days = days_in_month(on_date.year, on_date.month)
    remaining = days_remaining_in_month(on_date)
    prorated = Decimal(full_price) * Decimal(remaining) / Decimal(total_days)
    return prorated.quantize(CENT, rounding=ROUND_HALF_UP)


def next_billing_date(billing_period: str, start: Optional[DateLike] = None) -> date:
    """Monthly plans renew on the 1st; annual plans a year after ``start``"""
    start = start or utcnow()
    if billing_period == "annual":
        return anchored_date(start.year + 1, start.month, start.day)
    return first_of_next_month(start).date()


def anchored_date(year: int, month: int, anchor_day: int) -> date:
    """``anchor_day`` of the month, or its last day when the month is shorter"""
    return date(year, month, min(anchor_day, days_in_month(year, month)))


def next_anniversary(period_start: datetime, anchor_day: Optional[int] = None) -> date:
    """Date the annual period beginning at ``period_start`` rolls over"""
    anchor_day = anchor_day or period_start.day
    return anchored_date(period_start.year + 1, period_start.month, anchor_day)


def advance_annual_period(period_start: datetime, anchor_day: Optional[int] = None) -> Tuple[datetime, datetime]:
    """
    The annual period following the one that begins at ``period_start``.

    Both boundaries keep the time of day of ``period_start`` and land on the
    anchor day, so a 31st or 29 February anchor never drifts.
    """
    anchor_day = anchor_day or period_start.day
    new_start = next_anniversary(period_start, anchor_day)
    new_end = anchored_date(new_start.year + 1, new_start.month, anchor_day)
    return (
        datetime.combine(new_start, period_start.time()),
        datetime.combine(new_end, period_start.time()),
    )


def annual_period_containing(
    period_start: datetime, moment: datetime, anchor_day: Optional[int] = None
) -> Tuple[datetime, datetime]:
    """Roll the annual period beginning at ``period_start`` forward until it contains ``moment``"""
    anchor_day = anchor_day or period_start.day
    start = period_start
    end = datetime.combine(next_anniversary(start, anchor_day), start.time())
    while end <= moment:
        start, end = advance_annual_period(start, anchor_day)
    return start, end


def from_unix(timestamp: Optional[int]) -> Optional[datetime]:
    """Stripe unix timestamp to naive UTC datetime"""
    if timestamp is None:
        return None
    return datetime(1970, 1, 1) + timedelta(seconds=int(timestamp))


def to_unix(moment: DateLike) -> int:
    if not isinstance(moment, datetime):
        moment = datetime(moment.year, moment.month, moment.day)
    return int((moment - datetime(1970, 1, 1)).total_seconds())
