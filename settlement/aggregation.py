from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from settlement.allocation import Allocation, allocate, round_amount
from settlement.records import (
    PURCHASE_IN,
    ZERO,
    BranchSales,
    DailySales,
    DateRange,
    Expense,
    Order,
    PaymentMethodSales,
    ProductSales,
    PurchaseEntry,
    PurchaseGroup,
    PurchaseStats,
    SplitPaymentStats,
    Stats,
    TransferStats,
    local_day,
)
from settlement.scope import Scope, is_relevant, proportional_factor, weight_for

logger = logging.getLogger(__name__)

UNASSIGNED_BRANCH = "unassigned"


def select_orders(
    orders: Iterable[Order],
    date_range: DateRange,
    scope: Scope,
    tz: Optional[ZoneInfo] = None,
) -> list[Order]:
    selected = []
    for order in orders:
        if order.is_canceled or order.order_date is None:
            continue
        if not date_range.contains(local_day(order.order_date, tz)):
            continue
        if is_relevant(order, scope):
            selected.append(order)
    return selected


def _credit_branch(
    branch_map: dict[str, BranchSales],
    branch_id: Optional[str],
    branch_name: Optional[str],
    amount: Decimal,
) -> None:
    key = branch_id or UNASSIGNED_BRANCH
    entry = branch_map.get(key)
    if entry is None:
        entry = BranchSales(branch_id=key, branch_name=branch_name or key)
        branch_map[key] = entry
    entry.sales += amount
    entry.orders += 1


def _fold_branch_shares(
    branch_map: dict[str, BranchSales],
    order: Order,
    allocation: Allocation,
    scope: Scope,
) -> None:
    credits: dict[Optional[str], tuple[Optional[str], Decimal]] = {}
    if scope.matches(order.branch_id):
        credits[order.branch_id] = (order.branch_name, allocation.order_branch_share)
    if allocation.is_split and (
        (scope.is_all and allocation.process_branch_share > 0)
        or allocation.process_branch_id == scope.branch_id
    ):
        # A self-transfer folds both shares into one credit for one order.
        name, amount = credits.get(allocation.process_branch_id, (allocation.process_branch_name, ZERO))
        credits[allocation.process_branch_id] = (name, amount + allocation.process_branch_share)
    for branch_id, (branch_name, amount) in credits.items():
        _credit_branch(branch_map, branch_id, branch_name, amount)


def _fold_products(
    product_map: dict[str, ProductSales],
    order: Order,
    factor: Decimal,
    scope: Scope,
) -> None:
    for item in order.items:
        amount = item.price * item.quantity
        if not scope.is_all:
            amount = round_amount(amount * factor)
        key = item.id or item.name
        entry = product_map.get(key)
        if entry is None:
            entry = ProductSales(product_id=key, product_name=item.name or key)
            product_map[key] = entry
        entry.sales += amount
        entry.quantity += item.quantity


def _transfer_stats(orders: list[Order], scope: Scope) -> TransferStats:
    stats = TransferStats()
    if scope.is_all:
        return stats
    for order in orders:
        allocation = allocate(order)
        if not allocation.is_split:
            continue
        if order.branch_id == scope.branch_id:
            stats.outgoing_transfer_count += 1
            stats.outgoing_transfer_amount += allocation.order_branch_share
        if allocation.process_branch_id == scope.branch_id:
            stats.incoming_transfer_count += 1
            stats.incoming_transfer_amount += allocation.process_branch_share
    return stats


def _split_payment_stats(orders: list[Order]) -> SplitPaymentStats:
    stats = SplitPaymentStats()
    for order in orders:
        if not order.payment.is_split:
            continue
        stats.total_split_payments += 1
        stats.total_split_amount += order.total
        stats.first_payment_amount += order.payment.first_payment_amount
        stats.second_payment_amount += order.payment.second_payment_amount
    return stats


def sum_expenses(
    expenses: Iterable[Expense],
    date_range: DateRange,
    scope: Scope,
    tz: Optional[ZoneInfo] = None,
) -> Decimal:
    total = ZERO
    for expense in expenses:
        if not expense.is_counted or expense.created_at is None:
            continue
        if not date_range.contains(local_day(expense.created_at, tz)):
            continue
        if scope.matches(expense.branch_id):
            total += expense.total_amount
    return total


def _group_purchase(groups: dict[str, PurchaseGroup], name: str, entry: PurchaseEntry) -> None:
    group = groups.get(name)
    if group is None:
        group = PurchaseGroup(name=name)
        groups[name] = group
    group.amount += entry.total_amount
    group.quantity += entry.quantity


def purchase_stats(
    purchases: Iterable[PurchaseEntry],
    date_range: DateRange,
    scope: Scope,
    tz: Optional[ZoneInfo] = None,
) -> PurchaseStats:
    stats = PurchaseStats()
    by_supplier: dict[str, PurchaseGroup] = {}
    by_item: dict[str, PurchaseGroup] = {}
    for entry in purchases:
        if entry.direction != PURCHASE_IN or entry.entry_date is None:
            continue
        if not date_range.contains(local_day(entry.entry_date, tz)):
            continue
        if not scope.matches(entry.branch_id):
            continue
        stats.entry_count += 1
        stats.total_amount += entry.total_amount
        stats.total_quantity += entry.quantity
        _group_purchase(by_supplier, entry.supplier or "-", entry)
        _group_purchase(by_item, entry.item_name or "-", entry)
    stats.by_supplier = sorted(by_supplier.values(), key=lambda g: (-g.amount, g.name))
    stats.by_item = sorted(by_item.values(), key=lambda g: (-g.amount, g.name))
    return stats


def aggregate(
    orders: Iterable[Order],
    expenses: Iterable[Expense],
    purchases: Iterable[PurchaseEntry],
    date_range: DateRange,
    scope: Scope,
    tz: Optional[ZoneInfo] = None,
) -> Stats:
    """Fold raw records into the statistics shown for one scope and range.

    Orders are weighted by what the scope actually earns from them: the whole
    total system-wide, or the transfer-adjusted share for a single branch.
    Product, payment-method and daily figures are scaled by the same weight so
    they add up to the branch revenue figure.
    """
    selected = select_orders(orders, date_range, scope, tz)

    branch_map: dict[str, BranchSales] = {}
    product_map: dict[str, ProductSales] = {}
    method_map: dict[str, PaymentMethodSales] = {}
    day_map: dict[str, DailySales] = {}
    contributing = 0

    for order in selected:
        allocation = allocate(order)
        _fold_branch_shares(branch_map, order, allocation, scope)

        weight = weight_for(order, scope, allocation)
        if weight <= 0:
            continue
        contributing += 1

        day_key = local_day(order.order_date, tz).isoformat()
        day = day_map.setdefault(day_key, DailySales(date=day_key))
        day.sales += weight
        day.orders += 1

        _fold_products(product_map, order, proportional_factor(order, weight), scope)

        method = order.payment.method
        if method:
            entry = method_map.setdefault(method, PaymentMethodSales(method=method))
            entry.sales += weight
            entry.orders += 1

    total_sales = sum((day.sales for day in day_map.values()), ZERO)
    total_expenses = sum_expenses(expenses, date_range, scope, tz)

    logger.debug(
        "aggregated %s orders (%s contributing) for %s %s..%s",
        len(selected),
        contributing,
        scope.cache_key(),
        date_range.start,
        date_range.end,
    )

    return Stats(
        start=date_range.start,
        end=date_range.end,
        scope_branch_id=scope.branch_id,
        total_sales=total_sales,
        total_orders=len(selected),
        contributing_orders=contributing,
        average_order_value=total_sales / contributing if contributing else ZERO,
        total_expenses=total_expenses,
        net_profit=total_sales - total_expenses,
        branch_sales=sorted(branch_map.values(), key=lambda b: (-b.sales, b.branch_id)),
        product_sales=sorted(product_map.values(), key=lambda p: (-p.sales, p.product_id)),
        payment_method_sales=sorted(method_map.values(), key=lambda m: (-m.sales, m.method)),
        daily_sales=[day_map[key] for key in sorted(day_map)],
        split_payment_stats=_split_payment_stats(selected),
        transfer_stats=_transfer_stats(selected, scope),
        purchase_stats=purchase_stats(purchases, date_range, scope, tz),
    )
