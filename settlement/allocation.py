"""Splitting one order's revenue between the branch that took it and the
branch that fulfilled it.

Shares of a transferred order are rounded independently, so
``order_branch_share + process_branch_share`` can differ from the order total
by one currency unit. Historical figures were produced this way and callers
tolerate the drift.
"""

from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal
from typing import NamedTuple, Optional

from settlement.records import ZERO, AmountSplit, Order

HUNDRED = Decimal("100")
HALF = Decimal("0.5")
DEFAULT_SPLIT = AmountSplit(order_branch=HUNDRED, process_branch=ZERO)


class Allocation(NamedTuple):
    order_branch_share: Decimal
    process_branch_share: Decimal
    process_branch_id: Optional[str] = None
    process_branch_name: Optional[str] = None

    @property
    def is_split(self) -> bool:
        return self.process_branch_id is not None


def round_amount(amount: Decimal) -> Decimal:
    # Halves round toward positive infinity at every sign: 2.5 -> 3, -2.5 -> -2.
    return (amount + HALF).quantize(Decimal("1"), rounding=ROUND_FLOOR)


def percent_of(total: Decimal, percent: Decimal) -> Decimal:
    return round_amount(total * percent / HUNDRED)


def allocate(order: Order) -> Allocation:
    total = order.total
    transfer = order.transfer_info
    if transfer is None or not transfer.is_active:
        return Allocation(total, ZERO)
    split = transfer.amount_split or DEFAULT_SPLIT
    return Allocation(
        order_branch_share=percent_of(total, split.order_branch),
        process_branch_share=percent_of(total, split.process_branch),
        process_branch_id=transfer.process_branch_id,
        process_branch_name=transfer.process_branch_name,
    )
