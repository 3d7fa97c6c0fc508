from sqlalchemy import (
    BigInteger,
    Date,
    DateTime,
    Index,
    Integer,
    JSON,
    Numeric,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from settlement.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")


class Branch(Base):
    __tablename__ = "branch"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    branch_type: Mapped[str] = mapped_column(Text, nullable=False, default="storefront")
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_order_date", "order_date"),
        Index("ix_orders_branch_id", "branch_id"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    branch_id: Mapped[str | None] = mapped_column(Text)
    branch_name: Mapped[str | None] = mapped_column(Text)
    order_date: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    items: Mapped[list | None] = mapped_column(JSON_TYPE)
    summary: Mapped[dict | None] = mapped_column(JSON_TYPE)
    payment: Mapped[dict | None] = mapped_column(JSON_TYPE)
    transfer_info: Mapped[dict | None] = mapped_column(JSON_TYPE)
    process_branch_id: Mapped[str | None] = mapped_column(Text)
    ingested_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class Expense(Base):
    __tablename__ = "expense"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    branch_id: Mapped[str | None] = mapped_column(Text)
    branch_name: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    total_amount: Mapped[Numeric | None] = mapped_column(Numeric)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")


class PurchaseEntry(Base):
    __tablename__ = "purchase_entry"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    entry_date: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    branch_id: Mapped[str | None] = mapped_column(Text)
    branch_name: Mapped[str | None] = mapped_column(Text)
    supplier: Mapped[str | None] = mapped_column(Text)
    item_name: Mapped[str | None] = mapped_column(Text)
    quantity: Mapped[Numeric | None] = mapped_column(Numeric)
    total_amount: Mapped[Numeric | None] = mapped_column(Numeric)
    direction: Mapped[str] = mapped_column(Text, nullable=False, default="in")


class DailySnapshot(Base):
    __tablename__ = "daily_snapshot"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    snapshot_date: Mapped[Date] = mapped_column(Date, nullable=False, unique=True)
    branches: Mapped[dict] = mapped_column(JSON_TYPE, nullable=False)
    total_settled_amount: Mapped[Numeric] = mapped_column(Numeric, nullable=False)
    total_order_count: Mapped[int] = mapped_column(Integer, nullable=False)
    summary_hash: Mapped[str] = mapped_column(Text, nullable=False)
    computed_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
