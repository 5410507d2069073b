"""
Consensus rules turning node votes and bank approvals into a transaction status.

Evaluation order is fixed: rejection, then Rule A (node supermajority), then
Rule B (bank-assisted majority). Rejection wins when both thresholds are met.
"""
from dataclasses import dataclass

from cedefi.models import TransactionStatus


@dataclass(frozen=True)
class Thresholds:
    rejection: int      # floor(n/2) + 1 "no" votes
    rule_a: int         # ceil(2n/3) "yes" votes
    rule_b_nodes: int   # ceil(n/2) "yes" votes plus one bank approval


def thresholds(total_active_nodes: int) -> Thresholds:
    """Integer thresholds for a given number of active nodes."""
    n = total_active_nodes
    return Thresholds(
        rejection=n // 2 + 1,
        rule_a=(2 * n + 2) // 3,
        rule_b_nodes=(n + 1) // 2,
    )


def evaluate(
    total_active_nodes: int,
    yes_votes: int,
    no_votes: int,
    bank_approval_count: int,
    current_status: TransactionStatus,
) -> TransactionStatus:
    """
    Compute the next status of a transaction.

    Pure: identical inputs always produce the identical status. Terminal
    statuses are returned unchanged, and with no active nodes the
    transaction stays PENDING.
    """
    current_status = TransactionStatus(current_status)
    if current_status.is_terminal:
        return current_status

    if total_active_nodes <= 0:
        return TransactionStatus.PENDING

    limits = thresholds(total_active_nodes)

    if no_votes >= limits.rejection:
        return TransactionStatus.REJECTED

    if yes_votes >= limits.rule_a:
        return TransactionStatus.APPROVED

    if bank_approval_count >= 1 and yes_votes >= limits.rule_b_nodes:
        return TransactionStatus.APPROVED

    return TransactionStatus.PENDING


def describe(total_active_nodes: int, yes_votes: int, no_votes: int, bank_approval_count: int) -> str:
    """One-line summary of the inputs and thresholds, for logs."""
    limits = thresholds(total_active_nodes)
    return (
        f"nodes={total_active_nodes} yes={yes_votes} no={no_votes} banks={bank_approval_count} "
        f"(reject>={limits.rejection}, ruleA>={limits.rule_a}, ruleB>={limits.rule_b_nodes}+bank)"
    )
