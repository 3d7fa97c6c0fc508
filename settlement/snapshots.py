from __future__ import annotations

import hashlib
import json
import re
from datetime import date, datetime
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from settlement.aggregation import aggregate
from settlement.records import DailySnapshot, DateRange, Order, SnapshotBranch
from settlement.scope import Scope

_UNSAFE_KEY_CHARS = re.compile(r"[.\s/$]")


def branch_key(branch_id: str) -> str:
    """Encode a branch id for use as a key in a snapshot's branch map.

    Snapshot writers and readers must both go through this function.
    """
    return _UNSAFE_KEY_CHARS.sub("_", branch_id.strip())


def snapshot_payload(snapshot: DailySnapshot) -> dict:
    return {
        "day": snapshot.day.isoformat(),
        "total_settled_amount": str(snapshot.total_settled_amount),
        "total_order_count": snapshot.total_order_count,
        "branches": {
            key: {
                "name": branch.name,
                "settled_amount": str(branch.settled_amount),
                "order_count": branch.order_count,
            }
            for key, branch in sorted(snapshot.branches.items())
        },
    }


def summary_hash(snapshot: DailySnapshot) -> str:
    canonical = json.dumps(snapshot_payload(snapshot), sort_keys=True, separators=(",", ":"))
    return f"sha256:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"


def build_daily_snapshot(
    orders: Iterable[Order],
    day: date,
    tz: Optional[ZoneInfo] = None,
    computed_at: Optional[datetime] = None,
) -> DailySnapshot:
    stats = aggregate(orders, [], [], DateRange.single(day), Scope.all(), tz)
    branches: dict[str, SnapshotBranch] = {}
    for entry in stats.branch_sales:
        key = branch_key(entry.branch_id)
        existing = branches.get(key)
        if existing is None:
            branches[key] = SnapshotBranch(
                name=entry.branch_name,
                settled_amount=entry.sales,
                order_count=entry.orders,
            )
        else:
            existing.settled_amount += entry.sales
            existing.order_count += entry.orders
    snapshot = DailySnapshot(
        day=day,
        branches=branches,
        total_settled_amount=stats.total_sales,
        total_order_count=stats.contributing_orders,
        computed_at=computed_at,
    )
    snapshot.summary_hash = summary_hash(snapshot)
    return snapshot
