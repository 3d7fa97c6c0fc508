from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Literal, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, ValidationError
from sqlalchemy import or_
from sqlalchemy.orm import Session

from settlement import models, records, repository
from settlement.aggregation import aggregate
from settlement.backfill import (
    COMPUTED,
    backfill_snapshots,
    business_today,
    business_tz,
    recompute_day,
)
from settlement.cache import StatsCache
from settlement.config import configure_logging, settings
from settlement.db import SessionLocal
from settlement.debounce import RecomputeDebouncer
from settlement.fetch import gather_best_effort
from settlement.records import DateRange, local_day, to_business_time
from settlement.rollup import fold_snapshots
from settlement.scope import Scope, resolve_default_scope
from settlement.snapshots import branch_key

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    yield
    # Pending recomputes are dropped on shutdown.
    today_recompute.cancel()


app = FastAPI(title="Branch Settlement", lifespan=lifespan)

stats_cache = StatsCache(settings.stats_cache_ttl_seconds)

PENDING_ORDER_STATUSES = ("pending", "processing")
RECENT_ORDER_LIMIT = 10


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> Callable[[], Session]:
    return SessionLocal


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _amount(value) -> float:
    return float(value or 0)


def _paginate_by_id(query, model, limit: int, cursor: Optional[int]) -> tuple[list[Any], Optional[int]]:
    if cursor is not None:
        query = query.filter(model.id > cursor)
    rows = query.order_by(model.id).limit(limit + 1).all()
    next_cursor = None
    if len(rows) > limit:
        next_cursor = rows[limit - 1].id
        rows = rows[:limit]
    return rows, next_cursor


def _list_meta(limit: int, cursor: Optional[int], next_cursor: Optional[int], warnings: Optional[list[str]] = None) -> dict:
    meta = _meta(warnings=warnings)
    if next_cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(next_cursor)}
    elif cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(cursor)}
    else:
        meta["page"] = {"limit": limit, "cursor": None}
    return meta


def _date_range(from_date: Optional[date], to_date: Optional[date], default_days: int = 30) -> DateRange:
    end = to_date or business_today()
    start = from_date or end - timedelta(days=default_days - 1)
    if start > end:
        raise HTTPException(status_code=400, detail="'from' must not be after 'to'")
    return DateRange(start=start, end=end)


def _scope(branch_id: Optional[str]) -> Scope:
    return Scope.branch(branch_id) if branch_id else Scope.all()


def _recompute_today(day: date) -> None:
    db = SessionLocal()
    try:
        recompute_day(db, day, business_tz())
        logger.info("recomputed snapshot for %s", day)
    finally:
        db.close()


today_recompute = RecomputeDebouncer(settings.snapshot_debounce_seconds, _recompute_today)


def _after_ingest(touched_days: set[date]) -> None:
    stats_cache.clear()
    today = business_today()
    if settings.auto_recompute_today and today in touched_days:
        today_recompute.trigger(today)


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


# ---------------------------------------------------------------- branches


class BranchCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"id": "br-gangnam", "name": "Gangnam", "branch_type": "storefront"}}}
    id: str
    name: str
    branch_type: Literal["head_office", "storefront"] = "storefront"


def _branch_data(branch: models.Branch) -> dict:
    return {
        "branch_id": branch.id,
        "name": branch.name,
        "branch_type": branch.branch_type,
        "branch_key": branch_key(branch.id),
        "created_at": branch.created_at.isoformat(),
    }


@app.post("/api/v1/branches", tags=["Branches"])
def create_branch(payload: BranchCreate, db: Session = Depends(get_db)) -> dict:
    if db.get(models.Branch, payload.id):
        raise HTTPException(status_code=409, detail="branch already exists")
    branch = models.Branch(
        id=payload.id,
        name=payload.name,
        branch_type=payload.branch_type,
        created_at=_now(),
    )
    db.add(branch)
    db.commit()
    db.refresh(branch)
    return {"data": _branch_data(branch), "meta": _meta()}


@app.get("/api/v1/branches", tags=["Branches"])
def list_branches(
    branch_type: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(models.Branch)
    if branch_type is not None:
        query = query.filter(models.Branch.branch_type == branch_type)
    rows = query.order_by(models.Branch.name, models.Branch.id).all()
    return {"data": [_branch_data(row) for row in rows], "meta": _meta()}


@app.get("/api/v1/branches/{branch_id}/default-scope", tags=["Branches"])
def get_default_scope(branch_id: str, db: Session = Depends(get_db)) -> dict:
    branch = db.get(models.Branch, branch_id)
    if not branch:
        raise HTTPException(status_code=404, detail="branch not found")
    scope = resolve_default_scope(branch.id, branch.branch_type)
    return {
        "data": {"branch_id": branch.id, "scope": scope.cache_key(), "scope_branch_id": scope.branch_id},
        "meta": _meta(),
    }


# ---------------------------------------------------------------- ingestion


class OrderBulkUpsert(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "orders": [
                    {
                        "id": "ORD-20240501-0001",
                        "branch_id": "br-gangnam",
                        "branch_name": "Gangnam",
                        "order_date": "2024-05-01T10:30:00+09:00",
                        "status": "completed",
                        "items": [{"id": "P-100", "name": "Rose bouquet", "price": 2000, "quantity": 1}],
                        "summary": {"subtotal": 2000, "total": 2000},
                        "payment": {"method": "card", "status": "paid"},
                        "transfer_info": {
                            "is_transferred": True,
                            "status": "accepted",
                            "process_branch_id": "br-jamsil",
                            "process_branch_name": "Jamsil",
                            "amount_split": {"order_branch": 70, "process_branch": 30},
                        },
                    }
                ]
            }
        }
    }
    orders: list[records.Order]


class ExpenseBulkUpsert(BaseModel):
    model_config = {"json_schema_extra": {"example": {"expenses": [{"id": "EXP-1", "branch_id": "br-gangnam", "created_at": "2024-05-01T09:00:00+09:00", "total_amount": 1500, "status": "approved"}]}}}
    expenses: list[records.Expense]


class PurchaseBulkAppend(BaseModel):
    model_config = {"json_schema_extra": {"example": {"purchases": [{"entry_date": "2024-05-01T08:00:00+09:00", "branch_id": "br-gangnam", "supplier": "Flower Market", "item_name": "Rose", "quantity": 50, "total_amount": 25000, "direction": "in"}]}}}
    purchases: list[records.PurchaseEntry]


@app.post("/api/v1/ingest/orders:bulkUpsert", tags=["Ingestion - Orders"])
def bulk_upsert_orders(payload: OrderBulkUpsert, db: Session = Depends(get_db)) -> dict:
    inserted = 0
    updated = 0
    results = []
    touched_days: set[date] = set()
    tz = business_tz()
    for order in payload.orders:
        row = db.get(models.Order, order.id)
        if row is None:
            row = models.Order(id=order.id, ingested_at=_now())
            db.add(row)
            inserted += 1
            status = "INSERTED"
        else:
            if row.order_date is not None:
                touched_days.add(local_day(row.order_date, tz))
            updated += 1
            status = "UPDATED"
        dumped = order.model_dump(mode="json")
        transfer = order.transfer_info
        row.branch_id = order.branch_id
        row.branch_name = order.branch_name
        row.order_date = to_business_time(order.order_date, tz)
        row.status = order.status
        row.items = dumped["items"]
        row.summary = dumped["summary"]
        row.payment = dumped["payment"]
        row.transfer_info = dumped["transfer_info"]
        row.process_branch_id = transfer.process_branch_id if transfer and transfer.is_transferred else None
        if order.order_date is not None:
            touched_days.add(local_day(order.order_date, tz))
        results.append({"order_id": order.id, "upsert_status": status})
        db.flush()
    db.commit()
    _after_ingest(touched_days)
    return {
        "data": {"inserted": inserted, "updated": updated, "results": results},
        "meta": _meta(),
    }


@app.post("/api/v1/ingest/expenses:bulkUpsert", tags=["Ingestion - Expenses"])
def bulk_upsert_expenses(payload: ExpenseBulkUpsert, db: Session = Depends(get_db)) -> dict:
    inserted = 0
    updated = 0
    tz = business_tz()
    for expense in payload.expenses:
        row = db.get(models.Expense, expense.id)
        if row is None:
            row = models.Expense(id=expense.id)
            db.add(row)
            inserted += 1
        else:
            updated += 1
        row.branch_id = expense.branch_id
        row.branch_name = expense.branch_name
        row.created_at = to_business_time(expense.created_at, tz)
        row.total_amount = expense.total_amount
        row.status = expense.status
        db.flush()
    db.commit()
    stats_cache.clear()
    return {"data": {"inserted": inserted, "updated": updated}, "meta": _meta()}


@app.post("/api/v1/ingest/purchases:bulkAppend", tags=["Ingestion - Purchases"])
def bulk_append_purchases(payload: PurchaseBulkAppend, db: Session = Depends(get_db)) -> dict:
    tz = business_tz()
    for entry in payload.purchases:
        db.add(
            models.PurchaseEntry(
                entry_date=to_business_time(entry.entry_date, tz),
                branch_id=entry.branch_id,
                branch_name=entry.branch_name,
                supplier=entry.supplier,
                item_name=entry.item_name,
                quantity=entry.quantity,
                total_amount=entry.total_amount,
                direction=entry.direction,
            )
        )
    db.commit()
    stats_cache.clear()
    return {"data": {"accepted": len(payload.purchases)}, "meta": _meta()}


# ---------------------------------------------------------------- reports


@app.get("/api/v1/reports/stats", tags=["Reports"])
def get_report_stats(
    from_date: Optional[date] = Query(default=None, alias="from"),
    to_date: Optional[date] = Query(default=None, alias="to"),
    branch_id: Optional[str] = Query(default=None),
    top_products: int = Query(default=10, ge=1, le=500),
    db: Session = Depends(get_db),
) -> dict:
    date_range = _date_range(from_date, to_date)
    scope = _scope(branch_id)

    def compute() -> records.Stats:
        return aggregate(
            repository.fetch_orders(db, date_range, scope),
            repository.fetch_expenses(db, date_range, scope),
            repository.fetch_purchases(db, date_range, scope),
            date_range,
            scope,
            business_tz(),
        )

    stats = stats_cache.get_or_compute(StatsCache.key(scope, date_range), compute)
    data = stats.model_dump(mode="json")
    data["product_sales"] = data["product_sales"][:top_products]
    return {"data": data, "meta": _meta()}


# ---------------------------------------------------------------- snapshots


class SnapshotBuild(BaseModel):
    model_config = {"json_schema_extra": {"example": {"start": "2024-05-01", "end": "2024-05-31", "force_rebuild": False}}}
    start: date
    end: Optional[date] = None
    force_rebuild: bool = False


def _snapshot_data(row: models.DailySnapshot) -> dict:
    snapshot = repository.snapshot_from_row(row)
    data = snapshot.model_dump(mode="json")
    data["snapshot_id"] = row.id
    return data


@app.post("/api/v1/snapshots:build", tags=["Snapshots"])
def build_snapshots(payload: SnapshotBuild, db: Session = Depends(get_db)) -> dict:
    try:
        date_range = DateRange(start=payload.start, end=payload.end or payload.start)
    except ValidationError:
        raise HTTPException(status_code=400, detail="'start' must not be after 'end'")
    outcomes = backfill_snapshots(db, date_range, business_today(), payload.force_rebuild, business_tz())
    return {
        "data": {
            "computed": sum(1 for outcome in outcomes if outcome.status == COMPUTED),
            "days": [
                {
                    "day": outcome.day.isoformat(),
                    "status": outcome.status,
                    "summary_hash": outcome.summary_hash,
                }
                for outcome in outcomes
            ],
        },
        "meta": _meta(),
    }


@app.get("/api/v1/snapshots/{day}", tags=["Snapshots"])
def get_snapshot(day: date, db: Session = Depends(get_db)) -> dict:
    row = repository.get_snapshot_row(db, day)
    if not row:
        raise HTTPException(status_code=404, detail="snapshot not found")
    return {"data": _snapshot_data(row), "meta": _meta()}


@app.get("/api/v1/snapshots", tags=["Snapshots"])
def list_snapshots(
    from_date: Optional[date] = Query(default=None, alias="from"),
    to_date: Optional[date] = Query(default=None, alias="to"),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(models.DailySnapshot)
    if from_date is not None:
        query = query.filter(models.DailySnapshot.snapshot_date >= from_date)
    if to_date is not None:
        query = query.filter(models.DailySnapshot.snapshot_date <= to_date)
    rows, next_cursor = _paginate_by_id(query, models.DailySnapshot, limit, cursor)
    return {"data": [_snapshot_data(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


# ---------------------------------------------------------------- dashboard


@app.get("/api/v1/dashboard/rollups", tags=["Dashboard"])
def get_rollups(
    bucketing: Literal["week", "month"] = Query(default="week"),
    from_date: Optional[date] = Query(default=None, alias="from"),
    to_date: Optional[date] = Query(default=None, alias="to"),
    branch_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    date_range = _date_range(from_date, to_date, default_days=56 if bucketing == "week" else 365)
    scope = _scope(branch_id)
    result = fold_snapshots(repository.fetch_snapshots(db, date_range), bucketing, scope, date_range)
    data = result.model_dump(mode="json")
    data["status"] = "NO_DATA" if result.no_data else "OK"
    warnings = ["no_snapshot_data"] if result.no_data else []
    return {"data": data, "meta": _meta(warnings=warnings)}


def _scoped_orders(query, scope: Scope):
    if scope.is_all:
        return query
    return query.filter(
        or_(
            models.Order.branch_id == scope.branch_id,
            models.Order.process_branch_id == scope.branch_id,
        )
    )


def _recent_orders(session_factory: Callable[[], Session], scope: Scope) -> list[dict]:
    with session_factory() as db:
        query = _scoped_orders(db.query(models.Order), scope).filter(models.Order.status != records.ORDER_CANCELED)
        rows = query.order_by(models.Order.order_date.desc(), models.Order.id).limit(RECENT_ORDER_LIMIT).all()
        recent = []
        for row in rows:
            order = repository.order_from_row(row)
            recent.append(
                {
                    "order_id": order.id,
                    "branch_name": order.branch_name,
                    "order_date": order.order_date.isoformat() if order.order_date else None,
                    "status": order.status,
                    "total": _amount(order.total),
                    "product_names": ", ".join(item.name for item in order.items if item.name),
                }
            )
        return recent


def _pending_summary(session_factory: Callable[[], Session], scope: Scope) -> dict:
    with session_factory() as db:
        rows = _scoped_orders(db.query(models.Order), scope).filter(
            models.Order.status.in_(PENDING_ORDER_STATUSES)
        ).all()
        pending_payment_count = 0
        pending_payment_amount = records.ZERO
        for row in rows:
            order = repository.order_from_row(row)
            if order.payment.status == "pending":
                pending_payment_count += 1
                pending_payment_amount += order.total
        return {
            "pending_orders": len(rows),
            "pending_payment_count": pending_payment_count,
            "pending_payment_amount": _amount(pending_payment_amount),
        }


def _snapshot_summary(session_factory: Callable[[], Session], scope: Scope, today: date) -> Optional[dict]:
    year_start = today.replace(month=1, day=1)
    week_start = today - timedelta(days=today.weekday())
    with session_factory() as db:
        snapshots = repository.fetch_snapshots(db, DateRange(start=year_start, end=today))
    if not snapshots:
        return None
    key = None if scope.is_all else branch_key(scope.branch_id)
    year_revenue = records.ZERO
    week_orders = 0
    for snapshot in snapshots:
        if key is None:
            amount, count = snapshot.total_settled_amount, snapshot.total_order_count
        else:
            branch = snapshot.branches.get(key)
            if branch is None:
                continue
            amount, count = branch.settled_amount, branch.order_count
        year_revenue += amount
        if snapshot.day >= week_start:
            week_orders += count
    return {"year_settled_revenue": _amount(year_revenue), "week_orders": week_orders}


@app.get("/api/v1/dashboard/summary", tags=["Dashboard"])
def get_dashboard_summary(
    branch_id: Optional[str] = Query(default=None),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
) -> dict:
    scope = _scope(branch_id)
    today = business_today()
    fetched = gather_best_effort(
        {
            "recent_orders": lambda: _recent_orders(session_factory, scope),
            "pending": lambda: _pending_summary(session_factory, scope),
            "snapshots": lambda: _snapshot_summary(session_factory, scope, today),
        },
        max_workers=settings.fetch_max_workers,
    )
    warnings = fetched.warnings()
    snapshot_status = "FAILED" if "snapshots" in fetched.failures else "OK"
    if snapshot_status == "OK" and fetched.results.get("snapshots") is None:
        snapshot_status = "NO_DATA"
        warnings.append("no_snapshot_data")
    return {
        "data": {
            "scope_branch_id": scope.branch_id,
            "recent_orders": fetched.results.get("recent_orders"),
            "pending": fetched.results.get("pending"),
            "snapshot_summary": fetched.results.get("snapshots"),
            "snapshot_status": snapshot_status,
            "failed": sorted(fetched.failures),
            "generated_at": _now().isoformat(),
        },
        "meta": _meta(warnings=warnings),
    }
