from __future__ import annotations

import argparse
import logging
from datetime import date, datetime, timedelta
from typing import NamedTuple, Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from settlement import repository
from settlement.config import configure_logging, settings
from settlement.records import DateRange
from settlement.snapshots import build_daily_snapshot

logger = logging.getLogger(__name__)

COMPUTED = "COMPUTED"
SKIPPED_IMMUTABLE = "SKIPPED_IMMUTABLE"
SKIPPED_FUTURE = "SKIPPED_FUTURE"


class BackfillOutcome(NamedTuple):
    day: date
    status: str
    summary_hash: Optional[str] = None


def business_tz() -> ZoneInfo:
    return ZoneInfo(settings.business_timezone)


def business_today() -> date:
    return datetime.now(business_tz()).date()


def recompute_day(db: Session, day: date, tz: Optional[ZoneInfo] = None):
    orders = repository.fetch_orders(db, DateRange.single(day))
    snapshot = build_daily_snapshot(orders, day, tz)
    return repository.upsert_snapshot(db, snapshot)


def backfill_snapshots(
    db: Session,
    date_range: DateRange,
    today: date,
    force: bool = False,
    tz: Optional[ZoneInfo] = None,
) -> list[BackfillOutcome]:
    """Compute and store one snapshot per day of ``date_range``.

    Past days that already have a snapshot are left alone unless ``force``;
    ``today`` is always recomputed because its orders are still arriving.
    """
    outcomes: list[BackfillOutcome] = []
    day = date_range.start
    while day <= date_range.end:
        if day > today:
            outcomes.append(BackfillOutcome(day, SKIPPED_FUTURE))
        else:
            existing = repository.get_snapshot_row(db, day)
            if existing is not None and day < today and not force:
                outcomes.append(BackfillOutcome(day, SKIPPED_IMMUTABLE, existing.summary_hash))
            else:
                row = recompute_day(db, day, tz)
                outcomes.append(BackfillOutcome(day, COMPUTED, row.summary_hash))
        day += timedelta(days=1)
    computed = sum(1 for outcome in outcomes if outcome.status == COMPUTED)
    logger.info(
        "snapshot backfill %s..%s: %s computed, %s skipped",
        date_range.start,
        date_range.end,
        computed,
        len(outcomes) - computed,
    )
    return outcomes


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Recompute daily revenue snapshots.")
    parser.add_argument("--from", dest="start", type=date.fromisoformat, help="first day (default: today)")
    parser.add_argument("--to", dest="end", type=date.fromisoformat, help="last day (default: today)")
    parser.add_argument("--force", action="store_true", help="recompute past days that already have a snapshot")
    args = parser.parse_args(argv)

    configure_logging()
    today = business_today()
    start = args.start or today
    end = args.end or today
    if start > end:
        parser.error("--from must not be after --to")

    from settlement.db import SessionLocal

    db = SessionLocal()
    try:
        outcomes = backfill_snapshots(db, DateRange(start=start, end=end), today, args.force, business_tz())
    except SQLAlchemyError as exc:
        print("Snapshot backfill FAILED")
        print(exc)
        return 1
    finally:
        db.close()
    for outcome in outcomes:
        print(f"{outcome.day.isoformat()} {outcome.status} {outcome.summary_hash or ''}".rstrip())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
