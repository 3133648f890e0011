from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class CycleStats:
    schedule_name: str
    subscription_count: int
    cycle_time_seconds: int
    cycle_fail_count: int
    cycle_url_count: int
    last_updated: datetime


def moving_average(new: float, old: Optional[float]) -> int:
    if old is None:
        return round(new)
    return round((new + old) / 2)


def update_stats(
    previous: Optional[CycleStats],
    schedule_name: str,
    subscription_count: int,
    cycle_time_seconds: float,
    cycle_fail_count: int,
    cycle_url_count: int,
    now: datetime,
) -> CycleStats:
    """Two-point moving average for time and failures, raw values for the rest."""
    return CycleStats(
        schedule_name=schedule_name,
        subscription_count=subscription_count,
        cycle_time_seconds=moving_average(
            cycle_time_seconds, previous.cycle_time_seconds if previous else None
        ),
        cycle_fail_count=moving_average(
            cycle_fail_count, previous.cycle_fail_count if previous else None
        ),
        cycle_url_count=cycle_url_count,
        last_updated=now,
    )
