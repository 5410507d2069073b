"""
Data models for the consensus and bank-broadcast services.
Stored documents use snake_case keys; the HTTP wire format is camelCase.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Set

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base model serialised with camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


class RecipientStatus(str, Enum):
    PENDING = "PENDING"
    CLAIMED = "CLAIMED"


class NodeStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    FRAUDULENT = "FRAUDULENT"


class Vote(WireModel):
    """One node's decision on a transaction."""
    voter_id: str
    decision: bool
    timestamp: datetime = Field(default_factory=utcnow)


class BankApproval(WireModel):
    """Signed approval returned by a bank service."""
    bank_id: str
    signature: str
    timestamp: datetime = Field(default_factory=utcnow)


class Transaction(WireModel):
    """Transaction tracked by the ledger service."""
    transaction_id: str
    sender: str
    recipient: str
    amount: float = Field(allow_inf_nan=False)
    signature: Optional[str] = None  # Sender signature, checked by validators
    status: TransactionStatus = TransactionStatus.PENDING
    recipient_status: RecipientStatus = RecipientStatus.PENDING
    votes: List[Vote] = Field(default_factory=list)
    bank_approvals: List[BankApproval] = Field(default_factory=list)
    is_faucet: bool = False
    chain_finalized: bool = False
    claimed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class NodeHistoryEntry(WireModel):
    action: str
    timestamp: datetime = Field(default_factory=utcnow)


class Node(WireModel):
    """Voting node known to the ledger service."""
    public_key: str
    name: str
    url: str
    status: NodeStatus = NodeStatus.PENDING
    is_active: bool = False
    reputation: int = 50
    history: List[NodeHistoryEntry] = Field(default_factory=list)
    registered_at: datetime = Field(default_factory=utcnow)


class SecurityPolicy(WireModel):
    min_trusted_votes: int = Field(default=0, ge=0)
    require_bank_consensus: bool = False


# Ledger service request bodies
class TransactionCreateRequest(WireModel):
    transaction_id: str = Field(min_length=1)
    sender: str
    recipient: str
    amount: float = Field(gt=0, allow_inf_nan=False)
    signature: Optional[str] = None


class FaucetRequest(WireModel):
    recipient: str
    amount: float = Field(gt=0, allow_inf_nan=False)
    transaction_id: Optional[str] = None


class VoteRequest(WireModel):
    voter: str = Field(min_length=1)
    decision: bool


class BankApprovalCallback(WireModel):
    bank_id: str = Field(min_length=1)
    signature: Optional[str] = None
    approved: bool = True
    reason: Optional[str] = None


class NodeRegistrationRequest(WireModel):
    url: str = Field(min_length=1)
    name: str = Field(min_length=1)
    public_key: str = Field(min_length=1)


class NodeVerificationRequest(WireModel):
    action: str  # 'APPROVE' or 'REJECT'


class BankHealth(WireModel):
    url: str
    status: str
    error: Optional[str] = None


# Bank service request/response bodies
class ApprovalRequest(WireModel):
    transaction_id: str = Field(min_length=1)
    sender: Optional[str] = None
    amount: Optional[float] = Field(default=None, allow_inf_nan=False)
    force: bool = False


class RejectionRequest(WireModel):
    transaction_id: str = Field(min_length=1)
    reason: Optional[str] = None


class ApprovalResponse(WireModel):
    """Outcome of a bank decision; signature fields only set on approval."""
    approved: bool
    bank_id: str
    signature: Optional[str] = None
    signer_address: Optional[str] = None
    reason: Optional[str] = None


class BankSettingsUpdate(WireModel):
    trusted_nodes: Optional[Set[str]] = None
    security_policy: Optional[SecurityPolicy] = None


class BankSettingsResponse(WireModel):
    trusted_nodes: List[str]
    security_policy: SecurityPolicy


class BankInfo(WireModel):
    bank_id: str
    address: str
    public_key: str


class DecisionLogEntry(WireModel):
    """Audit record of a bank decision."""
    transaction_id: str
    action: str
    approved: bool
    forced: bool = False
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
