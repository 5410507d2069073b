"""
Vote ledger: one vote per (transaction, voter).
"""
from typing import Tuple

from cedefi.errors import ConflictError, ValidationError
from cedefi.logger import get_logger
from cedefi.models import Transaction, Vote
from cedefi.transactions import TransactionRepository

logger = get_logger(__name__)


def tally(transaction: Transaction) -> Tuple[int, int]:
    """Return (yes, no) vote counts."""
    yes = sum(1 for vote in transaction.votes if vote.decision)
    return yes, len(transaction.votes) - yes


def has_voted(transaction: Transaction, voter_id: str) -> bool:
    return any(vote.voter_id == voter_id for vote in transaction.votes)


class VoteLedger:
    """Records votes durably. Callers serialise access per transaction id."""

    def __init__(self, transactions: TransactionRepository):
        self.transactions = transactions

    async def record_vote(self, transaction_id: str, voter_id: str, decision: bool) -> Transaction:
        if not voter_id or not voter_id.strip():
            raise ValidationError("Missing voter")

        transaction = await self.transactions.require(transaction_id)
        if has_voted(transaction, voter_id):
            raise ConflictError("Already voted")

        transaction.votes.append(Vote(voter_id=voter_id, decision=decision))
        await self.transactions.save(transaction)
        logger.info(
            "Vote recorded on %s by %s: %s",
            transaction_id, voter_id, "YES" if decision else "NO"
        )
        return transaction
