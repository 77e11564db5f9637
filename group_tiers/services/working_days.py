"""
group_tiers/services/working_days.py
Working-day calendar.

A working day is Monday-Friday and not a configured holiday. Used for phase
date calculation, remaining-day counts and the rejoin deadline.
"""
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from group_tiers.orm.phase import Holiday

END_OF_DAY = time(23, 59, 59)


async def load_holidays(db: AsyncSession, since: Optional[date] = None) -> Set[date]:
    query = select(Holiday.holiday_date)
    if since is not None:
        query = query.where(Holiday.holiday_date >= since)
    result = await db.execute(query)
    return set(result.scalars().all())


def is_working_day(day: date, holidays: Iterable[date] = ()) -> bool:
    return day.weekday() < 5 and day not in holidays


def calculate_phase_dates(
    start_date: date,
    total_working_days: int,
    change_day_number: int,
    holidays: Set[date],
) -> Tuple[date, date]:
    """
    Walk forward from start_date counting working days.

    Returns (change_day, end_date): the dates on which the change_day_number-th
    and the total_working_days-th working day land.
    """
    count = 0
    current = start_date
    change_day = None
    end_date = None

    while count < total_working_days:
        if is_working_day(current, holidays):
            count += 1
            if count == change_day_number:
                change_day = current
            if count == total_working_days:
                end_date = current
        current += timedelta(days=1)

    return change_day, end_date


def next_working_day(after: date, holidays: Set[date]) -> date:
    current = after + timedelta(days=1)
    while not is_working_day(current, holidays):
        current += timedelta(days=1)
    return current


def rejoin_deadline(left_at: datetime, holidays: Set[date]) -> datetime:
    """End of the first working day after the leave date."""
    return datetime.combine(next_working_day(left_at.date(), holidays), END_OF_DAY)


def remaining_working_days(today: date, start_date: date, end_date: date, holidays: Set[date]) -> int:
    if today > end_date:
        return 0
    current = max(today, start_date)
    remaining = 0
    while current <= end_date:
        if is_working_day(current, holidays):
            remaining += 1
        current += timedelta(days=1)
    return remaining
