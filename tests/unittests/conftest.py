from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from feedrelay.delivery.rate_limiter import ChannelRateLimiter
from feedrelay.failures.fail_tracker import FailureTracker, OutageAlerter
from feedrelay.main.config import Settings, reset_settings
from tests.unittests.fakes import RecordingClient, in_memory_storage


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Explicit settings for unit tests, independent of .env and the environment."""
    return Settings(
        batch_size=400,
        parallel_batches=2,
        hours_until_fail=24,
        default_refresh_rate_minutes=10,
        supporter_refresh_rate_minutes=None,
        send_old_on_first_cycle=True,
        check_titles=False,
        check_dates=True,
        cycle_max_age_days=1,
        debug_subscription_ids="",
        worker_batch_timeout_seconds=0,
        worker_request_timeout_seconds=5,
        worker_max_concurrent_requests=10,
        shard_id=0,
        shard_count=1,
        channel_rate_limit_count=1,
        supporter_channel_rate_limit_count=3,
        channel_rate_limit_window_seconds=1,
        delivery_mode="in_process",
        discord_bot_token="unit-test-token",
        storage_backend="file",
        file_storage_path="./unit-test-data",
        # Redis settings (not used in unit tests)
        redis_host="localhost",
        redis_port=6379,
        testing=True,
        dev=True,
    )


@pytest.fixture(autouse=True)
def reset_settings_after_test():
    """Reset settings after each test to prevent state leakage."""
    yield
    reset_settings()


@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc)


@pytest.fixture
def an_hour_ago(now) -> datetime:
    return now - timedelta(hours=1)


@pytest.fixture
def storage():
    return in_memory_storage()


@pytest.fixture
def alerter():
    alerter = AsyncMock(spec=OutageAlerter)
    return alerter


@pytest.fixture
def fail_tracker(storage, alerter, test_settings):
    return FailureTracker(
        fail_records=storage.fail_records,
        subscriptions=storage.subscriptions,
        alerter=alerter,
        hours_until_fail=test_settings.hours_until_fail,
    )


@pytest.fixture
def client():
    return RecordingClient()


@pytest.fixture
def limiter():
    # Roomy budgets; rate limiting has its own tests
    return ChannelRateLimiter(
        redis=None,
        default_limit=10,
        supporter_limit=10,
        window_seconds=1,
    )
