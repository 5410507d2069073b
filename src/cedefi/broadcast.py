"""
Fan-out of approval requests to every configured bank service.

Each bank is called concurrently with its own timeout. Timeouts are retried
a bounded number of times; refused connections are not. The broadcast never
raises: a bank that fails simply contributes no approval.
"""
import asyncio
from typing import List, Optional

import httpx
from pydantic import ValidationError

from cedefi.logger import get_logger
from cedefi.models import BankApproval, BankHealth, Transaction

logger = get_logger(__name__)


class BankBroadcastCoordinator:
    """Stateless; safe to call repeatedly for the same transaction."""

    def __init__(
        self,
        bank_urls: List[str],
        timeout: float = 5.0,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        health_timeout: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.bank_urls = [url.rstrip("/") for url in bank_urls]
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.health_timeout = health_timeout
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def request_approval(self, client: httpx.AsyncClient, bank_url: str, transaction: Transaction) -> Optional[dict]:
        """
        Ask one bank for approval. Returns the bank's JSON answer, or None when
        the bank is offline, keeps timing out, or answers with an error.
        """
        payload = {
            "transactionId": transaction.transaction_id,
            "sender": transaction.sender,
            "amount": transaction.amount,
        }
        attempts = 1 + self.max_retries

        for attempt in range(1, attempts + 1):
            logger.info("Requesting approval from %s (attempt %d/%d)", bank_url, attempt, attempts)
            try:
                response = await client.post(f"{bank_url}/bank/approve", json=payload)
            except httpx.ConnectError:
                logger.warning("Bank %s is offline (connection refused)", bank_url)
                return None
            except httpx.TimeoutException:
                logger.warning("Bank %s timeout after %ss", bank_url, self.timeout)
                if attempt < attempts:
                    logger.info("Retrying %s in %ss", bank_url, self.retry_delay)
                    await asyncio.sleep(self.retry_delay)
                    continue
                return None
            except httpx.HTTPError as e:
                logger.error("Error from %s: %s", bank_url, e)
                return None

            if response.status_code == 200:
                try:
                    body = response.json()
                except ValueError:
                    logger.warning("Bank %s returned a non-JSON body", bank_url)
                    return None
                logger.info("Answer received from %s", bank_url)
                return body

            logger.warning("Bank %s returned status %d", bank_url, response.status_code)
            return None

        return None

    async def broadcast(self, transaction: Transaction) -> List[BankApproval]:
        """Broadcast to all banks and collect the explicit approvals."""
        logger.info(
            "Broadcasting transaction %s to %d banks",
            transaction.transaction_id, len(self.bank_urls)
        )
        if not self.bank_urls:
            return []

        async with self._client(self.timeout) as client:
            results = await asyncio.gather(
                *(self.request_approval(client, url, transaction) for url in self.bank_urls),
                return_exceptions=True,
            )

        approvals = []
        for url, result in zip(self.bank_urls, results):
            if isinstance(result, BaseException):
                logger.error("Broadcast to %s failed: %r", url, result)
                continue
            if not isinstance(result, dict) or result.get("approved") is not True:
                if isinstance(result, dict):
                    logger.info("Bank %s refused %s: %s", url, transaction.transaction_id, result.get("reason"))
                continue
            bank_id = result.get("bankId")
            signature = result.get("signature")
            if not bank_id or not signature:
                logger.warning("Bank %s approved without bankId/signature; ignoring", url)
                continue
            try:
                approvals.append(BankApproval(bank_id=bank_id, signature=signature))
            except ValidationError as e:
                logger.warning("Bank %s sent a malformed approval; ignoring: %s", url, e)

        logger.info(
            "Collected %d/%d bank approvals for %s",
            len(approvals), len(self.bank_urls), transaction.transaction_id
        )
        return approvals

    async def _check_one(self, client: httpx.AsyncClient, url: str) -> BankHealth:
        try:
            response = await client.get(f"{url}/bank/health")
        except httpx.HTTPError as e:
            return BankHealth(url=url, status="offline", error=str(e) or type(e).__name__)
        if response.status_code == 200:
            return BankHealth(url=url, status="online")
        return BankHealth(url=url, status="offline", error=f"HTTP {response.status_code}")

    async def check_health(self) -> List[BankHealth]:
        """Liveness of every configured bank."""
        async with self._client(self.health_timeout) as client:
            return list(await asyncio.gather(*(self._check_one(client, url) for url in self.bank_urls)))
