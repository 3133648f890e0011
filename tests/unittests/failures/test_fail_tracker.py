from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from feedrelay.failures.fail_record import FailRecord
from feedrelay.failures.fail_tracker import FailureTracker
from tests.unittests.fakes import make_subscription

URL = "https://example.com/feed.xml"
T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self):
        self.now = T0

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def tracker(storage, alerter, clock):
    return FailureTracker(
        fail_records=storage.fail_records,
        subscriptions=storage.subscriptions,
        alerter=alerter,
        hours_until_fail=24,
        clock=clock,
    )


async def add_subscribers(storage):
    await storage.subscriptions.upsert(make_subscription("s1", url=URL))
    await storage.subscriptions.upsert(make_subscription("s2", url=URL))
    await storage.subscriptions.upsert(make_subscription("s3", url=URL, disabled="Missing permissions"))
    await storage.subscriptions.upsert(make_subscription("other", url="https://other/feed"))


class TestFailRecord:
    def test_zero_cutoff_disables_the_mechanism(self):
        record = FailRecord(url=URL, reason="x", failed_at=T0, alerted=True)
        assert not record.past_cutoff(0, T0 + timedelta(days=365))
        assert not record.excludes_fetch(0, T0 + timedelta(days=365))

    def test_excludes_only_when_alerted_and_past_cutoff(self):
        record = FailRecord(url=URL, reason="x", failed_at=T0)
        later = T0 + timedelta(hours=25)

        assert record.past_cutoff(24, later)
        assert not record.excludes_fetch(24, later)

        record.alerted = True
        assert record.excludes_fetch(24, later)
        assert not record.excludes_fetch(24, T0 + timedelta(hours=1))


@pytest.mark.asyncio
class TestRecord:
    async def test_first_failure_creates_record_without_alert(self, tracker, storage, alerter):
        record = await tracker.record(URL, "Bad status code (500)")

        assert record.failed_at == T0
        assert not record.alerted
        alerter.alert.assert_not_awaited()
        assert (await storage.fail_records.get(URL)).reason == "Bad status code (500)"

    async def test_repeat_failure_keeps_first_failure_time(self, tracker, storage, clock):
        await tracker.record(URL, "first")
        clock.now = T0 + timedelta(hours=2)
        await tracker.record(URL, "second")

        stored = await storage.fail_records.get(URL)
        assert stored.failed_at == T0
        assert stored.reason == "second"

    async def test_alerts_every_active_subscriber_once(self, tracker, storage, alerter, clock):
        await add_subscribers(storage)
        await tracker.record(URL, "Connection timed out")

        clock.now = T0 + timedelta(hours=25)
        await tracker.record(URL, "Connection timed out")
        await tracker.record(URL, "Connection timed out")

        alerted = sorted(call.args[0].id for call in alerter.alert.await_args_list)
        assert alerted == ["s1", "s2"]
        stored = await storage.fail_records.get(URL)
        assert stored.alerted
        assert tracker.is_excluded(stored)

    async def test_one_failed_alert_does_not_stop_the_others(self, tracker, storage, alerter, clock):
        await add_subscribers(storage)
        alerter.alert.side_effect = [RuntimeError("channel gone"), None]
        await tracker.record(URL, "x")

        clock.now = T0 + timedelta(hours=30)
        await tracker.record(URL, "x")

        assert alerter.alert.await_count == 2
        assert (await storage.fail_records.get(URL)).alerted

    async def test_zero_cutoff_never_alerts_or_excludes(self, storage, alerter, clock):
        tracker = FailureTracker(
            storage.fail_records, storage.subscriptions, alerter, hours_until_fail=0, clock=clock
        )
        await add_subscribers(storage)
        await tracker.record(URL, "x")

        clock.now = T0 + timedelta(days=100)
        record = await tracker.record(URL, "x")

        alerter.alert.assert_not_awaited()
        assert not tracker.is_excluded(record)

    async def test_storage_errors_are_swallowed(self, storage, alerter):
        storage.fail_records.upsert = AsyncMock(side_effect=RuntimeError("database unavailable"))
        tracker = FailureTracker(storage.fail_records, storage.subscriptions, alerter, 24)

        assert await tracker.record(URL, "x") is None


@pytest.mark.asyncio
class TestReset:
    async def test_reset_clears_record(self, tracker, storage):
        await tracker.record(URL, "x")

        assert await tracker.reset(URL) is True
        assert await storage.fail_records.get(URL) is None

    async def test_reset_unknown_url(self, tracker):
        assert await tracker.reset("https://unknown/feed") is False

    async def test_reset_all(self, tracker, storage):
        await tracker.record(URL, "x")
        await tracker.record("https://other/feed", "y")

        assert await tracker.reset_all() == 2
        assert await storage.fail_records.get_all() == []

    async def test_list_failed_only_returns_records_past_cutoff(self, tracker, clock):
        await tracker.record(URL, "x")
        clock.now = T0 + timedelta(hours=25)
        await tracker.record("https://recent/feed", "y")

        assert [record.url for record in await tracker.list_failed()] == [URL]
