import argparse
from datetime import timedelta

import pytest

from feedrelay.cli.clean_failed import clean_failed, render_records
from feedrelay.failures.fail_record import FailRecord
from feedrelay.main.config import set_settings
from feedrelay.storage.storage import build_storage

FAILING = "https://failing.example/feed"
RECENT = "https://recent.example/feed"


def namespace(all=False, reset=None, reset_all=False) -> argparse.Namespace:
    return argparse.Namespace(all=all, reset=reset, reset_all=reset_all)


@pytest.fixture
async def file_storage(test_settings, tmp_path, now):
    settings = test_settings.model_copy(
        update={"storage_backend": "file", "file_storage_path": str(tmp_path)}
    )
    set_settings(settings)
    storage = await build_storage(settings)
    await storage.fail_records.upsert(
        FailRecord(url=FAILING, reason="Connection timed out", failed_at=now - timedelta(hours=30), alerted=True)
    )
    await storage.fail_records.upsert(
        FailRecord(url=RECENT, reason="Bad status code (503)", failed_at=now - timedelta(hours=1))
    )
    return storage


@pytest.mark.asyncio
class TestCleanFailed:
    async def test_reset_single_url(self, file_storage):
        await clean_failed(namespace(reset=[FAILING, "https://unknown.example/feed"]))

        assert await file_storage.fail_records.get(FAILING) is None
        assert await file_storage.fail_records.get(RECENT) is not None

    async def test_reset_all(self, file_storage):
        await clean_failed(namespace(reset_all=True))

        assert await file_storage.fail_records.get_all() == []

    async def test_listing_leaves_records_alone(self, file_storage, capsys):
        await clean_failed(namespace())

        assert len(await file_storage.fail_records.get_all()) == 2
        assert "Failing feeds" in capsys.readouterr().out


def test_render_records_marks_excluded(fail_tracker, now):
    records = [
        FailRecord(url=FAILING, reason="timeout", failed_at=now - timedelta(hours=30), alerted=True),
        FailRecord(url=RECENT, reason=None, failed_at=now),
    ]

    table = render_records(records, fail_tracker)

    assert table.row_count == 2
    assert list(table.columns[3].cells) == ["yes", "no"]
