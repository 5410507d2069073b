"""
Transaction persistence on top of the document store.
"""
from typing import List, Optional

from cedefi.database import DocumentStore
from cedefi.errors import ConflictError, NotFoundError
from cedefi.models import Transaction

COLLECTION = "transactions"


class TransactionRepository:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def get(self, transaction_id: str) -> Optional[Transaction]:
        """Get transaction by id. Returns None if not found."""
        document = await self.store.get(COLLECTION, transaction_id)
        return Transaction.model_validate(document) if document else None

    async def require(self, transaction_id: str) -> Transaction:
        transaction = await self.get(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    async def create(self, transaction: Transaction) -> Transaction:
        try:
            await self.store.insert(COLLECTION, transaction.transaction_id, transaction.model_dump(mode="json"))
        except ConflictError:
            raise ConflictError(f"Transaction {transaction.transaction_id} already exists")
        return transaction

    async def save(self, transaction: Transaction) -> Transaction:
        await self.store.upsert(COLLECTION, transaction.transaction_id, transaction.model_dump(mode="json"))
        return transaction

    async def list(self, status: Optional[str] = None) -> List[Transaction]:
        """All transactions, newest first."""
        filters = {"status": status} if status else None
        documents = await self.store.find(COLLECTION, filters)
        transactions = [Transaction.model_validate(doc) for doc in documents]
        return sorted(transactions, key=lambda tx: tx.created_at, reverse=True)
