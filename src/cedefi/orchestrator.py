"""
Transaction orchestration for the ledger service.

Every read-modify-write of a transaction (vote, bank approval merge,
consensus commit, claim) runs under a lock keyed by transaction id, so two
concurrent triggers for the same transaction cannot lose each other's update.
Bank broadcasts run as background tasks and never block the caller.
"""
import asyncio
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Set

from cedefi.broadcast import BankBroadcastCoordinator
from cedefi.chain import ImmutableLedger
from cedefi.committer import LedgerCommitter
from cedefi.crypto import is_valid_did
from cedefi.database import DocumentStore
from cedefi.errors import ValidationError
from cedefi.logger import get_logger
from cedefi.models import BankApproval, Transaction, TransactionStatus
from cedefi.nodes import NodeRegistry
from cedefi.transactions import TransactionRepository
from cedefi.votes import VoteLedger

logger = get_logger(__name__)

SYSTEM_DID = "did:cedefi:system"


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or awaits it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


def merge_approvals(transaction: Transaction, approvals: List[BankApproval]) -> int:
    """Add approvals from banks not yet recorded. Returns how many were added."""
    known = {approval.bank_id for approval in transaction.bank_approvals}
    added = 0
    for approval in approvals:
        if approval.bank_id in known:
            continue
        transaction.bank_approvals.append(approval)
        known.add(approval.bank_id)
        added += 1
    return added


class TransactionOrchestrator:
    def __init__(
        self,
        store: DocumentStore,
        chain: ImmutableLedger,
        coordinator: BankBroadcastCoordinator,
        rebroadcast_on_vote: bool = True,
    ):
        self.transactions = TransactionRepository(store)
        self.nodes = NodeRegistry(store)
        self.votes = VoteLedger(self.transactions)
        self.committer = LedgerCommitter(self.transactions, self.nodes, chain)
        self.coordinator = coordinator
        self.rebroadcast_on_vote = rebroadcast_on_vote
        self.locks = KeyedLock()
        self._tasks: Set[asyncio.Task] = set()

    # Background work

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every in-flight broadcast to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def trigger_broadcast(self, transaction: Transaction) -> asyncio.Task:
        return self._spawn(
            self._broadcast_and_commit(transaction),
            name=f"broadcast-{transaction.transaction_id}",
        )

    async def _broadcast_and_commit(self, transaction: Transaction) -> None:
        try:
            approvals = await self.coordinator.broadcast(transaction)
            async with self.locks.hold(transaction.transaction_id):
                current = await self.transactions.require(transaction.transaction_id)
                added = merge_approvals(current, approvals)
                if added:
                    logger.info("Received %d new bank approvals for %s", added, current.transaction_id)
                    await self.transactions.save(current)
                await self.committer.commit(current)
        except Exception:
            logger.exception("Post-broadcast update failed for %s", transaction.transaction_id)

    # Operations

    async def create_transaction(
        self,
        transaction_id: str,
        sender: str,
        recipient: str,
        amount: float,
        signature: Optional[str] = None,
    ) -> Transaction:
        if not transaction_id:
            raise ValidationError("Missing transactionId")
        if not is_valid_did(sender):
            raise ValidationError(f"Invalid sender DID: {sender!r}")
        if not is_valid_did(recipient):
            raise ValidationError(f"Invalid recipient DID: {recipient!r}")
        if amount is None or amount <= 0:
            raise ValidationError("Amount must be positive")

        transaction = Transaction(
            transaction_id=transaction_id,
            sender=sender,
            recipient=recipient,
            amount=amount,
            signature=signature,
        )
        await self.transactions.create(transaction)
        logger.info("Transaction %s created: %s -> %s (%s)", transaction_id, sender, recipient, amount)

        self.trigger_broadcast(transaction)
        return transaction

    async def submit_vote(self, transaction_id: str, voter_id: str, decision: bool) -> Transaction:
        async with self.locks.hold(transaction_id):
            transaction = await self.votes.record_vote(transaction_id, voter_id, decision)
            transaction = await self.committer.commit(transaction)

        if self.rebroadcast_on_vote and transaction.status == TransactionStatus.PENDING:
            self.trigger_broadcast(transaction)
        return transaction

    async def receive_bank_approval(
        self,
        transaction_id: str,
        bank_id: str,
        signature: Optional[str],
        approved: bool = True,
        reason: Optional[str] = None,
    ) -> Transaction:
        async with self.locks.hold(transaction_id):
            transaction = await self.transactions.require(transaction_id)

            if not approved:
                logger.info("Bank %s refused %s: %s", bank_id, transaction_id, reason or "no reason given")
                return transaction

            if not signature:
                raise ValidationError("Missing signature")

            if merge_approvals(transaction, [BankApproval(bank_id=bank_id, signature=signature)]):
                logger.info("Bank approval from %s recorded for %s", bank_id, transaction_id)
                await self.transactions.save(transaction)
            else:
                logger.info("Duplicate approval from %s for %s ignored", bank_id, transaction_id)

            return await self.committer.commit(transaction)

    async def claim(self, transaction_id: str) -> Transaction:
        async with self.locks.hold(transaction_id):
            transaction = await self.transactions.require(transaction_id)
            return await self.committer.claim(transaction)

    async def create_faucet(
        self,
        recipient: str,
        amount: float,
        transaction_id: Optional[str] = None,
    ) -> Transaction:
        """System-issued funds: approved on creation and written straight to the chain."""
        if not is_valid_did(recipient):
            raise ValidationError(f"Invalid recipient DID: {recipient!r}")
        if amount is None or amount <= 0:
            raise ValidationError("Amount must be positive")

        transaction = Transaction(
            transaction_id=transaction_id or f"faucet-{uuid.uuid4().hex}",
            sender=SYSTEM_DID,
            recipient=recipient,
            amount=amount,
            status=TransactionStatus.APPROVED,
            is_faucet=True,
        )
        async with self.locks.hold(transaction.transaction_id):
            await self.transactions.create(transaction)
            logger.info("Faucet transaction %s: %s to %s", transaction.transaction_id, amount, recipient)
            return await self.committer.commit(transaction)

    async def get_transaction(self, transaction_id: str) -> Transaction:
        return await self.transactions.require(transaction_id)

    async def list_transactions(self, status: Optional[str] = None) -> List[Transaction]:
        return await self.transactions.list(status)
