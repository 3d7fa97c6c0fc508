from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from settlement import models, records
from settlement.records import DateRange
from settlement.scope import Scope


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _padded_bounds(date_range: DateRange) -> tuple[datetime, datetime]:
    # Stored timestamps may carry any offset; pad a day each side and let the
    # engine apply the exact local-day filter.
    starts_at = datetime.combine(date_range.start - timedelta(days=1), time.min)
    ends_at = datetime.combine(date_range.end + timedelta(days=2), time.min)
    return starts_at, ends_at


def order_from_row(row: models.Order) -> records.Order:
    return records.Order.model_validate(
        {
            "id": row.id,
            "branch_id": row.branch_id,
            "branch_name": row.branch_name,
            "order_date": row.order_date,
            "status": row.status,
            "items": row.items,
            "summary": row.summary,
            "payment": row.payment,
            "transfer_info": row.transfer_info,
        }
    )


def expense_from_row(row: models.Expense) -> records.Expense:
    return records.Expense(
        id=row.id,
        branch_id=row.branch_id,
        branch_name=row.branch_name,
        created_at=row.created_at,
        total_amount=row.total_amount,
        status=row.status,
    )


def purchase_from_row(row: models.PurchaseEntry) -> records.PurchaseEntry:
    return records.PurchaseEntry(
        entry_date=row.entry_date,
        branch_id=row.branch_id,
        branch_name=row.branch_name,
        supplier=row.supplier or "",
        item_name=row.item_name or "",
        quantity=row.quantity,
        total_amount=row.total_amount,
        direction=row.direction,
    )


def snapshot_from_row(row: models.DailySnapshot) -> records.DailySnapshot:
    return records.DailySnapshot(
        day=row.snapshot_date,
        branches=row.branches or {},
        total_settled_amount=row.total_settled_amount,
        total_order_count=row.total_order_count,
        summary_hash=row.summary_hash,
        computed_at=row.computed_at,
    )


def fetch_orders(db: Session, date_range: DateRange, scope: Optional[Scope] = None) -> list[records.Order]:
    starts_at, ends_at = _padded_bounds(date_range)
    query = db.query(models.Order).filter(
        models.Order.order_date >= starts_at,
        models.Order.order_date < ends_at,
    )
    if scope is not None and not scope.is_all:
        query = query.filter(
            or_(
                models.Order.branch_id == scope.branch_id,
                models.Order.process_branch_id == scope.branch_id,
            )
        )
    return [order_from_row(row) for row in query.order_by(models.Order.order_date, models.Order.id)]


def fetch_expenses(db: Session, date_range: DateRange, scope: Optional[Scope] = None) -> list[records.Expense]:
    starts_at, ends_at = _padded_bounds(date_range)
    query = db.query(models.Expense).filter(
        models.Expense.created_at >= starts_at,
        models.Expense.created_at < ends_at,
    )
    if scope is not None and not scope.is_all:
        query = query.filter(models.Expense.branch_id == scope.branch_id)
    return [expense_from_row(row) for row in query.order_by(models.Expense.id)]


def fetch_purchases(db: Session, date_range: DateRange, scope: Optional[Scope] = None) -> list[records.PurchaseEntry]:
    starts_at, ends_at = _padded_bounds(date_range)
    query = db.query(models.PurchaseEntry).filter(
        models.PurchaseEntry.entry_date >= starts_at,
        models.PurchaseEntry.entry_date < ends_at,
    )
    if scope is not None and not scope.is_all:
        query = query.filter(models.PurchaseEntry.branch_id == scope.branch_id)
    return [purchase_from_row(row) for row in query.order_by(models.PurchaseEntry.id)]


def fetch_snapshots(db: Session, date_range: DateRange) -> list[records.DailySnapshot]:
    rows = db.query(models.DailySnapshot).filter(
        models.DailySnapshot.snapshot_date >= date_range.start,
        models.DailySnapshot.snapshot_date <= date_range.end,
    ).order_by(models.DailySnapshot.snapshot_date)
    return [snapshot_from_row(row) for row in rows]


def get_snapshot_row(db: Session, day: date) -> Optional[models.DailySnapshot]:
    return db.query(models.DailySnapshot).filter(models.DailySnapshot.snapshot_date == day).first()


def upsert_snapshot(db: Session, snapshot: records.DailySnapshot) -> models.DailySnapshot:
    """Store ``snapshot`` as the one row for its day, replacing any previous row's content."""
    payload = {
        key: {
            "name": branch.name,
            "settled_amount": str(branch.settled_amount),
            "order_count": branch.order_count,
        }
        for key, branch in sorted(snapshot.branches.items())
    }
    row = get_snapshot_row(db, snapshot.day)
    if row is None:
        row = models.DailySnapshot(snapshot_date=snapshot.day)
        db.add(row)
    row.branches = payload
    row.total_settled_amount = snapshot.total_settled_amount
    row.total_order_count = snapshot.total_order_count
    row.summary_hash = snapshot.summary_hash
    row.computed_at = snapshot.computed_at or _now()
    db.commit()
    db.refresh(row)
    return row
