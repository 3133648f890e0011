from dataclasses import dataclass, field

from feedrelay.main.config import DEFAULT_SCHEDULE_NAME, SUPPORTER_SCHEDULE_NAME
from feedrelay.main.exceptions import ScheduleConfigurationError
from feedrelay.subscriptions.subscription import Subscription


@dataclass
class Schedule:
    """A named refresh cadence that subscriptions are assigned to."""

    name: str
    refresh_rate_minutes: float
    subscription_ids: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)

    def __post_init__(self):
        if self.refresh_rate_minutes <= 0:
            raise ScheduleConfigurationError(
                f"Schedule {self.name!r} must have a positive refresh rate"
            )
        if self.is_custom and not self.keywords and not self.subscription_ids:
            raise ScheduleConfigurationError(
                f"Schedule {self.name!r} needs at least one keyword or subscription id"
            )

    @property
    def is_default(self) -> bool:
        return self.name == DEFAULT_SCHEDULE_NAME

    @property
    def is_fast_tier(self) -> bool:
        return self.name == SUPPORTER_SCHEDULE_NAME

    @property
    def is_custom(self) -> bool:
        return not self.is_default and not self.is_fast_tier

    @property
    def refresh_rate_seconds(self) -> float:
        return self.refresh_rate_minutes * 60

    def matches(self, subscription: Subscription) -> bool:
        """Explicit allowlist first, then keyword substring of the source URL."""
        if subscription.id in self.subscription_ids:
            return True
        return any(keyword in subscription.url for keyword in self.keywords)


