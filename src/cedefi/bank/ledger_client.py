"""
HTTP client a bank uses to talk to the ledger service.
"""
from typing import List, Optional

import httpx
from pydantic import ValidationError as ModelValidationError

from cedefi.errors import ConflictError, LedgerUnavailableError, NotFoundError
from cedefi.logger import get_logger
from cedefi.models import Transaction, Vote

logger = get_logger(__name__)


class LedgerClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise LedgerUnavailableError(f"Ledger at {self.base_url} unreachable: {e}") from e

    async def get_transaction(self, transaction_id: str) -> Transaction:
        response = await self._request("GET", f"/transactions/{transaction_id}")
        if response.status_code == 404:
            raise NotFoundError(f"Transaction {transaction_id} not found on ledger")
        if response.status_code != 200:
            raise LedgerUnavailableError(f"Ledger returned HTTP {response.status_code}")
        try:
            return Transaction.model_validate(response.json())
        except (ModelValidationError, ValueError) as e:
            raise LedgerUnavailableError(f"Unreadable transaction {transaction_id} from ledger: {e}") from e

    async def get_votes(self, transaction_id: str) -> List[Vote]:
        transaction = await self.get_transaction(transaction_id)
        return transaction.votes

    async def list_transactions(self) -> List[Transaction]:
        response = await self._request("GET", "/transactions")
        if response.status_code != 200:
            raise LedgerUnavailableError(f"Ledger returned HTTP {response.status_code}")
        try:
            items = response.json()
        except ValueError as e:
            raise LedgerUnavailableError(f"Unreadable transaction list from ledger: {e}") from e

        transactions = []
        for item in items:
            try:
                transactions.append(Transaction.model_validate(item))
            except ModelValidationError as e:
                # One malformed entry must not hide the rest of the listing
                transaction_id = item.get("transactionId") if isinstance(item, dict) else item
                logger.warning("Skipping unreadable transaction %s: %s", transaction_id, e)
        return transactions

    async def cast_vote(self, transaction_id: str, voter: str, decision: bool) -> None:
        response = await self._request(
            "POST",
            f"/transactions/{transaction_id}/vote",
            json={"voter": voter, "decision": decision},
        )
        if response.status_code == 404:
            raise NotFoundError(f"Transaction {transaction_id} not found on ledger")
        if response.status_code == 409:
            raise ConflictError(f"Already voted on {transaction_id}")
        if response.status_code >= 400:
            raise LedgerUnavailableError(
                f"Vote on {transaction_id} rejected: HTTP {response.status_code} {response.text[:200]}"
            )

    async def notify_decision(
        self,
        transaction_id: str,
        bank_id: str,
        approved: bool,
        signature: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        response = await self._request(
            "POST",
            f"/transactions/{transaction_id}/bank-approval",
            json={"bankId": bank_id, "signature": signature, "approved": approved, "reason": reason},
        )
        if response.status_code >= 400:
            raise LedgerUnavailableError(
                f"Ledger refused callback for {transaction_id}: HTTP {response.status_code}"
            )
