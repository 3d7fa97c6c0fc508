from __future__ import annotations

import calendar
import logging
from datetime import date, timedelta
from typing import Iterable, Optional

from settlement.records import Bucket, DailySnapshot, DateRange, RollupResult
from settlement.scope import Scope
from settlement.snapshots import branch_key

logger = logging.getLogger(__name__)

WEEK = "week"
MONTH = "month"
BUCKETINGS = (WEEK, MONTH)


def _week_bucket(day: date) -> Bucket:
    start = day - timedelta(days=day.weekday())
    end = start + timedelta(days=6)
    iso_year, iso_week, _ = start.isocalendar()
    key = f"{iso_year}-W{iso_week:02d}"
    return Bucket(
        key=key,
        label=f"{key} ({start.month}/{start.day} ~ {end.month}/{end.day})",
        sort_key=key,
        start=start,
        end=end,
    )


def _month_bucket(day: date) -> Bucket:
    start = day.replace(day=1)
    end = day.replace(day=calendar.monthrange(day.year, day.month)[1])
    key = f"{day.year:04d}-{day.month:02d}"
    return Bucket(key=key, label=key, sort_key=key, start=start, end=end)


def bucket_for(day: date, bucketing: str) -> Bucket:
    if bucketing == WEEK:
        return _week_bucket(day)
    if bucketing == MONTH:
        return _month_bucket(day)
    raise ValueError(f"unknown bucketing: {bucketing!r}")


def fold_snapshots(
    snapshots: Iterable[DailySnapshot],
    bucketing: str,
    scope: Scope,
    date_range: Optional[DateRange] = None,
) -> RollupResult:
    """Re-aggregate daily snapshots into weekly or monthly buckets.

    An empty selection is reported with ``no_data`` rather than as zero-sales
    buckets, so callers can tell "never aggregated" from "no sales".
    """
    if bucketing not in BUCKETINGS:
        raise ValueError(f"unknown bucketing: {bucketing!r}")
    scoped_key = None if scope.is_all else branch_key(scope.branch_id)
    buckets: dict[str, Bucket] = {}
    seen = 0

    for snapshot in snapshots:
        if date_range is not None and not date_range.contains(snapshot.day):
            continue
        seen += 1
        template = bucket_for(snapshot.day, bucketing)
        bucket = buckets.setdefault(template.key, template)
        if scoped_key is None:
            bucket.sales += snapshot.total_settled_amount
            bucket.order_count += snapshot.total_order_count
            for key, branch in snapshot.branches.items():
                bucket.branch_sales[key] = bucket.branch_sales.get(key, 0) + branch.settled_amount
                bucket.branch_names.setdefault(key, branch.name or key)
        else:
            branch = snapshot.branches.get(scoped_key)
            if branch is not None:
                bucket.sales += branch.settled_amount
                bucket.order_count += branch.order_count

    if not seen:
        logger.info("no snapshot rows for %s rollup of %s", bucketing, scope.cache_key())
        return RollupResult(bucketing=bucketing, scope_branch_id=scope.branch_id, no_data=True)

    return RollupResult(
        bucketing=bucketing,
        scope_branch_id=scope.branch_id,
        buckets=[buckets[key] for key in sorted(buckets, key=lambda k: buckets[k].sort_key)],
    )
