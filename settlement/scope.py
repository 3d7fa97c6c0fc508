from __future__ import annotations

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel

from settlement.allocation import Allocation, allocate
from settlement.records import ZERO, Order

HEAD_OFFICE = "head_office"


class Scope(BaseModel):
    """Reporting context: the whole system (``branch_id is None``) or one branch."""

    branch_id: Optional[str] = None

    model_config = {"frozen": True}

    @classmethod
    def all(cls) -> "Scope":
        return cls()

    @classmethod
    def branch(cls, branch_id: str) -> "Scope":
        return cls(branch_id=branch_id)

    @property
    def is_all(self) -> bool:
        return self.branch_id is None

    def matches(self, branch_id: Optional[str]) -> bool:
        return self.is_all or branch_id == self.branch_id

    def cache_key(self) -> str:
        return "all" if self.is_all else f"branch:{self.branch_id}"


def resolve_default_scope(branch_id: Optional[str], branch_type: Optional[str]) -> Scope:
    if branch_id is None or branch_type == HEAD_OFFICE:
        return Scope.all()
    return Scope.branch(branch_id)


def is_relevant(order: Order, scope: Scope) -> bool:
    if scope.is_all or order.branch_id == scope.branch_id:
        return True
    transfer = order.transfer_info
    return bool(
        transfer
        and transfer.is_transferred
        and transfer.process_branch_id == scope.branch_id
    )


def weight_for(order: Order, scope: Scope, allocation: Optional[Allocation] = None) -> Decimal:
    if scope.is_all:
        return order.total
    if allocation is None:
        allocation = allocate(order)
    weight = ZERO
    if order.branch_id == scope.branch_id:
        weight += allocation.order_branch_share
    # A branch that transferred an order to itself earns both shares.
    if allocation.is_split and allocation.process_branch_id == scope.branch_id:
        weight += allocation.process_branch_share
    return weight


def proportional_factor(order: Order, weight: Decimal) -> Decimal:
    if not order.total:
        return ZERO
    return weight / order.total
