from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, BeforeValidator, Field, PlainSerializer, field_validator, model_validator

ZERO = Decimal("0")

ORDER_CANCELED = "canceled"
ACTIVE_TRANSFER_STATUSES = frozenset({"accepted", "completed"})
COUNTED_EXPENSE_STATUSES = frozenset({"approved", "paid"})
SPLIT_PAYMENT_STATUS = "split_payment"
PURCHASE_IN = "in"


def _coerce_amount(value: Any) -> Decimal:
    # Missing or garbled numbers count as zero so one bad record cannot sink a report.
    if value is None or isinstance(value, bool):
        return ZERO
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return ZERO
    if not amount.is_finite():
        return ZERO
    return amount


def _coerce_count(value: Any) -> int:
    return int(_coerce_amount(value))


def _amount_json(value: Decimal) -> int | float:
    if value == value.to_integral_value():
        return int(value)
    return float(value)


Money = Annotated[Decimal, BeforeValidator(_coerce_amount), PlainSerializer(_amount_json, when_used="json")]
Quantity = Money
Count = Annotated[int, BeforeValidator(_coerce_count)]


def local_day(moment: datetime | date, tz: Optional[ZoneInfo] = None) -> date:
    if isinstance(moment, datetime):
        if tz is not None and moment.tzinfo is not None:
            moment = moment.astimezone(tz)
        return moment.date()
    return moment


def to_business_time(moment: Optional[datetime], tz: ZoneInfo) -> Optional[datetime]:
    """Pin ``moment`` to the business timezone before it is stored.

    Naive values are business-local wall time; aware values keep their instant.
    """
    if moment is None:
        return None
    if moment.tzinfo is None:
        return moment.replace(tzinfo=tz)
    return moment.astimezone(tz)


class DateRange(BaseModel):
    """Inclusive range of calendar days."""

    start: date
    end: date

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _ordered(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError("date range start must not be after end")
        return self

    @classmethod
    def single(cls, day: date) -> "DateRange":
        return cls(start=day, end=day)

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


# ---------------------------------------------------------------- inputs


class OrderItem(BaseModel):
    id: str = ""
    name: str = ""
    price: Money = ZERO
    quantity: Quantity = ZERO


class OrderSummary(BaseModel):
    subtotal: Money = ZERO
    discount_amount: Money = ZERO
    delivery_fee: Money = ZERO
    points_used: Money = ZERO
    total: Money = ZERO


class Payment(BaseModel):
    method: Optional[str] = None
    status: Optional[str] = None
    is_split_payment: bool = False
    first_payment_amount: Money = ZERO
    second_payment_amount: Money = ZERO

    @property
    def is_split(self) -> bool:
        return self.is_split_payment or self.status == SPLIT_PAYMENT_STATUS


class AmountSplit(BaseModel):
    order_branch: Money = Decimal("100")
    process_branch: Money = ZERO


class TransferInfo(BaseModel):
    is_transferred: bool = False
    status: Optional[str] = None
    process_branch_id: Optional[str] = None
    process_branch_name: Optional[str] = None
    amount_split: Optional[AmountSplit] = None

    @property
    def is_active(self) -> bool:
        return self.is_transferred and self.status in ACTIVE_TRANSFER_STATUSES


class Order(BaseModel):
    id: str
    branch_id: Optional[str] = None
    branch_name: Optional[str] = None
    order_date: Optional[datetime] = None
    status: str = "pending"
    items: list[OrderItem] = Field(default_factory=list)
    summary: OrderSummary = Field(default_factory=OrderSummary)
    payment: Payment = Field(default_factory=Payment)
    transfer_info: Optional[TransferInfo] = None

    @field_validator("items", "summary", "payment", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any, info) -> Any:
        if value is None:
            return [] if info.field_name == "items" else {}
        return value

    @property
    def total(self) -> Decimal:
        return self.summary.total

    @property
    def is_canceled(self) -> bool:
        return self.status == ORDER_CANCELED


class Expense(BaseModel):
    id: str
    branch_id: Optional[str] = None
    branch_name: Optional[str] = None
    created_at: Optional[datetime] = None
    total_amount: Money = ZERO
    status: str = "pending"

    @property
    def is_counted(self) -> bool:
        return self.status in COUNTED_EXPENSE_STATUSES


class PurchaseEntry(BaseModel):
    entry_date: Optional[datetime] = None
    branch_id: Optional[str] = None
    branch_name: Optional[str] = None
    supplier: str = ""
    item_name: str = ""
    quantity: Quantity = ZERO
    total_amount: Money = ZERO
    direction: str = PURCHASE_IN


class SnapshotBranch(BaseModel):
    name: str = ""
    settled_amount: Money = ZERO
    order_count: Count = 0


class DailySnapshot(BaseModel):
    day: date
    branches: dict[str, SnapshotBranch] = Field(default_factory=dict)
    total_settled_amount: Money = ZERO
    total_order_count: Count = 0
    summary_hash: str = ""
    computed_at: Optional[datetime] = None


# ---------------------------------------------------------------- outputs


class BranchSales(BaseModel):
    branch_id: str
    branch_name: str
    sales: Money = ZERO
    orders: int = 0


class ProductSales(BaseModel):
    product_id: str
    product_name: str
    sales: Money = ZERO
    quantity: Money = ZERO


class PaymentMethodSales(BaseModel):
    method: str
    sales: Money = ZERO
    orders: int = 0


class DailySales(BaseModel):
    date: str
    sales: Money = ZERO
    orders: int = 0


class SplitPaymentStats(BaseModel):
    total_split_payments: int = 0
    total_split_amount: Money = ZERO
    first_payment_amount: Money = ZERO
    second_payment_amount: Money = ZERO


class TransferStats(BaseModel):
    outgoing_transfer_amount: Money = ZERO
    incoming_transfer_amount: Money = ZERO
    outgoing_transfer_count: int = 0
    incoming_transfer_count: int = 0


class PurchaseGroup(BaseModel):
    name: str
    amount: Money = ZERO
    quantity: Money = ZERO


class PurchaseStats(BaseModel):
    total_amount: Money = ZERO
    total_quantity: Money = ZERO
    entry_count: int = 0
    by_supplier: list[PurchaseGroup] = Field(default_factory=list)
    by_item: list[PurchaseGroup] = Field(default_factory=list)


class Stats(BaseModel):
    start: date
    end: date
    scope_branch_id: Optional[str] = None
    total_sales: Money = ZERO
    total_orders: int = 0
    contributing_orders: int = 0
    average_order_value: Money = ZERO
    total_expenses: Money = ZERO
    net_profit: Money = ZERO
    branch_sales: list[BranchSales] = Field(default_factory=list)
    product_sales: list[ProductSales] = Field(default_factory=list)
    payment_method_sales: list[PaymentMethodSales] = Field(default_factory=list)
    daily_sales: list[DailySales] = Field(default_factory=list)
    split_payment_stats: SplitPaymentStats = Field(default_factory=SplitPaymentStats)
    transfer_stats: TransferStats = Field(default_factory=TransferStats)
    purchase_stats: PurchaseStats = Field(default_factory=PurchaseStats)


class Bucket(BaseModel):
    key: str
    label: str
    sort_key: str
    start: date
    end: date
    sales: Money = ZERO
    order_count: int = 0
    branch_sales: dict[str, Money] = Field(default_factory=dict)
    branch_names: dict[str, str] = Field(default_factory=dict)


class RollupResult(BaseModel):
    bucketing: str
    scope_branch_id: Optional[str] = None
    no_data: bool = False
    buckets: list[Bucket] = Field(default_factory=list)
