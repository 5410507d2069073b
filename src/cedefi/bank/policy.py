"""
Per-bank approval policy.

A bank signs a transaction id only when the amount is within its limit and
enough of the nodes it trusts have voted yes. A forced approval (manual
operator override) skips both checks. Policy state belongs to one BankState
instance; banks never share it.
"""
import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional, Set

from cryptography.hazmat.primitives.asymmetric import ec

from cedefi.bank.ledger_client import LedgerClient
from cedefi.crypto import address_for, public_key_hex, sign_message
from cedefi.errors import LedgerUnavailableError, NotFoundError, ValidationError
from cedefi.logger import get_logger
from cedefi.models import (
    ApprovalResponse,
    BankInfo,
    BankSettingsResponse,
    BankSettingsUpdate,
    DecisionLogEntry,
    SecurityPolicy,
)

logger = get_logger(__name__)

DEFAULT_AMOUNT_LIMIT = 1_000_000
DECISION_LOG_SIZE = 1000


@dataclass
class BankState:
    """Identity, signing key and mutable policy of one bank instance."""
    bank_id: str
    private_key: ec.EllipticCurvePrivateKey
    trusted_nodes: Set[str] = field(default_factory=set)
    security_policy: SecurityPolicy = field(default_factory=SecurityPolicy)
    amount_limit: float = DEFAULT_AMOUNT_LIMIT
    decisions: Deque[DecisionLogEntry] = field(default_factory=lambda: deque(maxlen=DECISION_LOG_SIZE))

    @property
    def address(self) -> str:
        return address_for(self.private_key.public_key())

    @property
    def public_key(self) -> str:
        return public_key_hex(self.private_key.public_key())


class BankPolicyService:
    def __init__(self, state: BankState, ledger: LedgerClient):
        self.state = state
        self.ledger = ledger
        self._notifications: Set[asyncio.Task] = set()

    @property
    def bank_id(self) -> str:
        return self.state.bank_id

    def info(self) -> BankInfo:
        return BankInfo(bank_id=self.bank_id, address=self.state.address, public_key=self.state.public_key)

    def _refuse(self, transaction_id: str, reason: str) -> ApprovalResponse:
        logger.info("[%s] Refusing transaction %s (%s)", self.bank_id, transaction_id, reason)
        self.state.decisions.append(DecisionLogEntry(
            transaction_id=transaction_id, action="approve", approved=False, reason=reason
        ))
        return ApprovalResponse(approved=False, bank_id=self.bank_id, reason=reason)

    async def count_trusted_votes(self, transaction_id: str) -> int:
        """Yes votes on the ledger cast by nodes this bank trusts."""
        votes = await self.ledger.get_votes(transaction_id)
        return sum(1 for vote in votes if vote.decision and vote.voter_id in self.state.trusted_nodes)

    async def approve(
        self,
        transaction_id: str,
        sender: Optional[str] = None,
        amount: Optional[float] = None,
        force: bool = False,
    ) -> ApprovalResponse:
        if not transaction_id:
            raise ValidationError("Missing transactionId")

        if not force:
            if amount is not None and amount > self.state.amount_limit:
                return self._refuse(transaction_id, "Amount exceeds limit")

            required = self.state.security_policy.min_trusted_votes
            try:
                valid_trusted_votes = await self.count_trusted_votes(transaction_id)
            except (LedgerUnavailableError, NotFoundError) as e:
                logger.warning("[%s] Vote verification for %s failed: %s", self.bank_id, transaction_id, e)
                return self._refuse(transaction_id, "Vote verification failed")

            if valid_trusted_votes < required:
                return self._refuse(
                    transaction_id,
                    f"Insufficient trusted votes ({valid_trusted_votes}/{required})",
                )

        signature = sign_message(self.state.private_key, transaction_id)
        self.state.decisions.append(DecisionLogEntry(
            transaction_id=transaction_id, action="approve", approved=True, forced=force
        ))
        logger.info(
            "[%s] Approved transaction %s%s", self.bank_id, transaction_id, " (forced)" if force else ""
        )

        self.notify(transaction_id, approved=True, signature=signature)
        return ApprovalResponse(
            approved=True,
            bank_id=self.bank_id,
            signature=signature,
            signer_address=self.state.address,
        )

    async def reject(self, transaction_id: str, reason: Optional[str] = None) -> ApprovalResponse:
        if not transaction_id:
            raise ValidationError("Missing transactionId")
        reason = reason or "Rejected by bank"
        logger.info("[%s] Rejected transaction %s", self.bank_id, transaction_id)
        self.state.decisions.append(DecisionLogEntry(
            transaction_id=transaction_id, action="reject", approved=False, reason=reason
        ))
        self.notify(transaction_id, approved=False, reason=reason)
        return ApprovalResponse(approved=False, bank_id=self.bank_id, reason=reason)

    # Ledger notifications are at-most-once and best-effort

    def notify(
        self,
        transaction_id: str,
        approved: bool,
        signature: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> asyncio.Task:
        task = asyncio.create_task(self._notify(transaction_id, approved, signature, reason))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)
        return task

    async def _notify(
        self,
        transaction_id: str,
        approved: bool,
        signature: Optional[str],
        reason: Optional[str],
    ) -> None:
        try:
            await self.ledger.notify_decision(
                transaction_id, self.bank_id, approved, signature=signature, reason=reason
            )
            logger.info("[%s] Ledger notified of decision on %s", self.bank_id, transaction_id)
        except (LedgerUnavailableError, NotFoundError) as e:
            logger.warning("[%s] Failed to notify ledger about %s: %s", self.bank_id, transaction_id, e)

    async def drain(self) -> None:
        while self._notifications:
            await asyncio.gather(*list(self._notifications), return_exceptions=True)

    # Settings

    def settings(self) -> BankSettingsResponse:
        return BankSettingsResponse(
            trusted_nodes=sorted(self.state.trusted_nodes),
            security_policy=self.state.security_policy,
        )

    def update_settings(self, update: BankSettingsUpdate) -> BankSettingsResponse:
        if update.trusted_nodes is not None:
            self.state.trusted_nodes = {node.strip() for node in update.trusted_nodes if node.strip()}
        if update.security_policy is not None:
            self.state.security_policy = update.security_policy
        logger.info(
            "[%s] Settings updated: %d trusted nodes, min trusted votes %d",
            self.bank_id,
            len(self.state.trusted_nodes),
            self.state.security_policy.min_trusted_votes,
        )
        return self.settings()

    def decision_log(self, limit: int = 100, offset: int = 0) -> List[DecisionLogEntry]:
        """Most recent decisions first."""
        entries = list(reversed(self.state.decisions))
        return entries[offset:offset + limit]
