"""Settlement package: return aggregation and the settlement engine."""

from loanbook.settlement.engine import (
    SettlementEngine,
    opening_transaction,
    partial_transaction,
    settlement_transaction,
)
from loanbook.settlement.returns import (
    apply_status_transition,
    can_transition,
    compute_remaining,
    compute_total_returned,
    has_partial_history,
    is_fully_repaid,
    linked_transaction_ids,
    outstanding,
    sort_for_display,
)

__all__ = [
    "SettlementEngine",
    "opening_transaction",
    "partial_transaction",
    "settlement_transaction",
    "apply_status_transition",
    "can_transition",
    "compute_remaining",
    "compute_total_returned",
    "has_partial_history",
    "is_fully_repaid",
    "linked_transaction_ids",
    "outstanding",
    "sort_for_display",
]
