import asyncio

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from cedefi.bank.policy import BankState
from cedefi.broadcast import BankBroadcastCoordinator
from cedefi.chain import InMemoryChain
from cedefi.database import InMemoryDocumentStore
from cedefi.models import SecurityPolicy
from cedefi.orchestrator import TransactionOrchestrator

SENDER = "did:cedefi:user:alice"
RECIPIENT = "did:cedefi:user:bob"


class SlowStore(InMemoryDocumentStore):
    """Yields to the event loop on every read and write, exposing races."""

    async def get(self, collection, key):
        await asyncio.sleep(0)
        document = await super().get(collection, key)
        await asyncio.sleep(0)
        return document

    async def upsert(self, collection, key, document):
        await asyncio.sleep(0)
        await super().upsert(collection, key, document)


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def chain():
    return InMemoryChain()


@pytest.fixture
async def orchestrator(store, chain):
    orchestrator = TransactionOrchestrator(store, chain, BankBroadcastCoordinator([]))
    yield orchestrator
    await orchestrator.drain()


async def activate_nodes(orchestrator, count):
    """Register and admin-approve `count` nodes; returns their public keys."""
    keys = []
    for i in range(count):
        key = f"did:cedefi:node:{i}"
        await orchestrator.nodes.register(f"http://node-{i}", f"Node {i}", key)
        await orchestrator.nodes.verify(key, "APPROVE")
        keys.append(key)
    return keys


def make_bank_state(bank_id="BankA", trusted_nodes=(), min_trusted_votes=0, amount_limit=1_000_000):
    return BankState(
        bank_id=bank_id,
        private_key=ec.generate_private_key(ec.SECP256K1()),
        trusted_nodes=set(trusted_nodes),
        security_policy=SecurityPolicy(min_trusted_votes=min_trusted_votes),
        amount_limit=amount_limit,
    )


def approving_bank(bank_id):
    """MockTransport handler answering every approval request with a signature."""
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={
            "approved": True,
            "bankId": bank_id,
            "signature": f"sig-{bank_id}",
            "signerAddress": "0xabc",
        })
    return handler


class HostRouter(httpx.AsyncBaseTransport):
    """Dispatch requests by host; unknown hosts behave like refused connections."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    async def handle_async_request(self, request):
        self.calls.append(request.url.host)
        transport = self.routes.get(request.url.host)
        if transport is None:
            raise httpx.ConnectError("connection refused", request=request)
        return await transport.handle_async_request(request)
