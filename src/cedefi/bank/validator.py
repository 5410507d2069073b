"""
Autonomous validator node run by each bank.

Independently of the bank's signing policy, it polls the ledger, votes on
pending transactions it has not voted on yet, and applies a fixed rule set.
"""
import asyncio
from typing import List, Optional, Tuple

from cedefi.bank.ledger_client import LedgerClient
from cedefi.errors import ConflictError, LedgerUnavailableError, NotFoundError
from cedefi.logger import get_logger
from cedefi.models import Transaction, TransactionStatus

logger = get_logger(__name__)

DEFAULT_BALANCE_CEILING = 10_000


class ValidatorService:
    def __init__(
        self,
        ledger: LedgerClient,
        address: str,
        interval: float = 5.0,
        balance_ceiling: float = DEFAULT_BALANCE_CEILING,
    ):
        self.ledger = ledger
        self.voter_id = f"did:cedefi:bank:{address.lower()}"
        self.interval = interval
        self.balance_ceiling = balance_ceiling
        self._task: Optional[asyncio.Task] = None

    def validate(self, transaction: Transaction) -> Tuple[bool, str]:
        """Local rules: a sender signature is required and the amount must fit the mock balance."""
        if not transaction.signature:
            return False, "Missing Signature"
        if transaction.amount > self.balance_ceiling:
            return False, "Insufficient Balance (Mock Limit)"
        return True, ""

    def pending_unvoted(self, transactions: List[Transaction]) -> List[Transaction]:
        return [
            tx for tx in transactions
            if tx.status == TransactionStatus.PENDING
            and not any(vote.voter_id == self.voter_id for vote in tx.votes)
        ]

    async def run_once(self) -> int:
        """One polling sweep. Returns the number of votes cast."""
        transactions = await self.ledger.list_transactions()
        cast = 0
        for tx in self.pending_unvoted(transactions):
            is_valid, reason = self.validate(tx)
            logger.info(
                "Decision for %s: %s%s",
                tx.transaction_id, "APPROVE" if is_valid else "REJECT", f" ({reason})" if reason else ""
            )
            try:
                await self.ledger.cast_vote(tx.transaction_id, self.voter_id, is_valid)
                cast += 1
            except (ConflictError, LedgerUnavailableError, NotFoundError) as e:
                logger.error("Failed to vote on %s: %s", tx.transaction_id, e)
        return cast

    async def _poll(self) -> None:
        while True:
            try:
                await self.run_once()
            except (LedgerUnavailableError, NotFoundError) as e:
                logger.debug("Polling error: %s", e)
            except Exception:
                logger.exception("Validator sweep failed")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            logger.info("Validator %s polling every %ss", self.voter_id, self.interval)
            self._task = asyncio.create_task(self._poll(), name=f"validator-{self.voter_id}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
