"""Inspect and reset fail records.

Usage:
    python -m feedrelay.cli.clean_failed              # feeds past the cutoff
    python -m feedrelay.cli.clean_failed --all        # every failing feed
    python -m feedrelay.cli.clean_failed --reset https://example.com/feed.xml
    python -m feedrelay.cli.clean_failed --reset-all
"""

import argparse
import asyncio

from rich.console import Console
from rich.table import Table

from feedrelay.failures.fail_record import FailRecord
from feedrelay.failures.fail_tracker import FailureTracker
from feedrelay.main.config import get_settings
from feedrelay.main.logging import get_logger
from feedrelay.storage.storage import build_storage

logger = get_logger(__name__)


def render_records(records: list[FailRecord], tracker: FailureTracker) -> Table:
    table = Table(title=f"Failing feeds (cutoff {tracker.hours_until_fail}h)")
    table.add_column("URL")
    table.add_column("Failing since")
    table.add_column("Alerted")
    table.add_column("Excluded")
    table.add_column("Reason")
    for record in records:
        table.add_row(
            record.url,
            f"{record.failed_at:%Y-%m-%d %H:%M}",
            "yes" if record.alerted else "no",
            "yes" if tracker.is_excluded(record) else "no",
            record.reason or "",
        )
    return table


async def clean_failed(args: argparse.Namespace) -> None:
    settings = get_settings()
    storage = await build_storage(settings)
    # Administration never alerts; only a running cycle does
    tracker = FailureTracker(
        fail_records=storage.fail_records,
        subscriptions=storage.subscriptions,
        alerter=None,
        hours_until_fail=settings.hours_until_fail,
    )
    try:
        if args.reset_all:
            await tracker.reset_all()
        elif args.reset:
            for url in args.reset:
                if not await tracker.reset(url):
                    logger.warning("No fail record found", extra={"url": url})
        else:
            if args.all:
                records = list((await tracker.get_map()).values())
            else:
                records = await tracker.list_failed()
            if records:
                Console().print(render_records(records, tracker))
            else:
                Console().print("No failing feeds.")
    finally:
        await storage.close()


def main() -> int:
    parser = argparse.ArgumentParser(description="Inspect and reset failing feed URLs")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--all", action="store_true", help="Include feeds below the cutoff")
    group.add_argument("--reset", nargs="+", metavar="URL", help="Reset the given URLs")
    group.add_argument("--reset-all", action="store_true", help="Reset every fail record")
    args = parser.parse_args()

    asyncio.run(clean_failed(args))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
