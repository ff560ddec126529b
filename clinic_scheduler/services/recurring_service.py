# clinic_scheduler/services/recurring_service.py
import uuid
from datetime import timedelta
from typing import List, Optional, Union

from dateutil.relativedelta import relativedelta

from ..schemas import RecurrenceFrequency
from .intervals import format_date, parse_date

DAY_STEPS = {
    RecurrenceFrequency.daily: 1,
    RecurrenceFrequency.weekly: 7,
    RecurrenceFrequency.biweekly: 14,
}


def generate_recurring_dates(
    start_date: str,
    frequency: Union[RecurrenceFrequency, str],
    count: int,
    max_count: Optional[int] = None,
) -> List[str]:
    """
    Expand a start date into exactly ``count`` dates, ``start_date`` first.

    Monthly steps are taken from the start date, not chained, and land on the
    last day of shorter months: 2024-01-31 -> 2024-02-29 -> 2024-03-31.
    """
    try:
        frequency = RecurrenceFrequency(frequency)
    except ValueError:
        raise ValueError(
            f"Invalid frequency '{frequency}'. Must be: daily, weekly, biweekly, or monthly"
        ) from None
    if isinstance(count, bool) or not isinstance(count, int) or count < 1:
        raise ValueError(f"Invalid count '{count}', expected a positive integer")
    if max_count is not None and count > max_count:
        raise ValueError(f"Count {count} exceeds the maximum of {max_count} occurrences")

    start = parse_date(start_date)
    if frequency == RecurrenceFrequency.monthly:
        return [format_date(start + relativedelta(months=i)) for i in range(count)]

    step = timedelta(days=DAY_STEPS[frequency])
    return [format_date(start + step * i) for i in range(count)]


def new_series_id(patient_id: str, start_date: str) -> str:
    return f"{patient_id}-{start_date}-{uuid.uuid4().hex[:8]}"
