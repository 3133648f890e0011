"""Assign each subscription to exactly one named schedule."""

from collections import Counter
from typing import Collection, Iterable, Optional, Sequence

from feedrelay.main.config import (
    DEFAULT_SCHEDULE_NAME,
    SUPPORTER_SCHEDULE_NAME,
    Settings,
)
from feedrelay.main.exceptions import ScheduleConfigurationError
from feedrelay.main.logging import get_logger
from feedrelay.schedules.schedule import Schedule
from feedrelay.subscriptions.subscription import Subscription

logger = get_logger(__name__)


def resolve(
    subscription: Subscription,
    schedules: Sequence[Schedule],
    fast_tier_guild_ids: Collection[str],
    excluded_subscription_ids: Collection[str] = (),
) -> str:
    """Return the name of the schedule ``subscription`` belongs to.

    Precedence: fast tier (when the guild is a supporter and the subscription
    is not excluded from it), then custom schedules in declared order, then
    ``default``.
    """
    has_fast_tier = any(schedule.is_fast_tier for schedule in schedules)
    if (
        has_fast_tier
        and subscription.guild_id in fast_tier_guild_ids
        and subscription.id not in excluded_subscription_ids
    ):
        return SUPPORTER_SCHEDULE_NAME

    for schedule in schedules:
        if not schedule.is_custom:
            continue
        if schedule.matches(subscription):
            return schedule.name

    return DEFAULT_SCHEDULE_NAME


def build_schedules(settings: Settings, custom: Iterable[Schedule]) -> list[Schedule]:
    """Default first, fast tier (if configured) second, then custom schedules."""
    schedules = [Schedule(DEFAULT_SCHEDULE_NAME, settings.default_refresh_rate_minutes)]
    if settings.has_supporter_schedule:
        schedules.append(
            Schedule(SUPPORTER_SCHEDULE_NAME, settings.supporter_refresh_rate_minutes)
        )

    for schedule in custom:
        if not schedule.is_custom:
            raise ScheduleConfigurationError(
                f"Stored schedules may not use the reserved name {schedule.name!r}"
            )
        schedules.append(schedule)

    validate_schedules(schedules)
    return schedules


def validate_schedules(schedules: Sequence[Schedule]) -> None:
    """Raise ``ScheduleConfigurationError`` unless the schedule set is usable.

    Exactly one default; at most one fast tier; no two schedules may share a
    refresh rate (which also covers fast tier vs default).
    """
    names = Counter(schedule.name for schedule in schedules)
    if names[DEFAULT_SCHEDULE_NAME] != 1:
        raise ScheduleConfigurationError("Exactly one default schedule must exist")
    if names[SUPPORTER_SCHEDULE_NAME] > 1:
        raise ScheduleConfigurationError("At most one fast-tier schedule may exist")

    duplicated_names = [name for name, count in names.items() if count > 1]
    if duplicated_names:
        raise ScheduleConfigurationError(f"Duplicate schedule names: {duplicated_names}")

    seen_rates: dict[float, str] = {}
    for schedule in schedules:
        existing: Optional[str] = seen_rates.get(schedule.refresh_rate_minutes)
        if existing is not None:
            raise ScheduleConfigurationError(
                f"Schedules {existing!r} and {schedule.name!r} share the refresh rate "
                f"{schedule.refresh_rate_minutes} minutes"
            )
        seen_rates[schedule.refresh_rate_minutes] = schedule.name

    logger.debug(
        "Schedules validated",
        extra={"schedules": [schedule.name for schedule in schedules]},
    )
