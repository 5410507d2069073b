import asyncio

import httpx
import pytest

from cedefi.broadcast import BankBroadcastCoordinator
from cedefi.chain import InMemoryChain
from cedefi.errors import ChainUnavailableError, ConflictError, NotFoundError, ValidationError
from cedefi.models import RecipientStatus, TransactionStatus
from cedefi.orchestrator import SYSTEM_DID, KeyedLock, TransactionOrchestrator

from conftest import RECIPIENT, SENDER, SlowStore, activate_nodes, approving_bank


async def create(orchestrator, transaction_id="tx-1", amount=100):
    return await orchestrator.create_transaction(transaction_id, SENDER, RECIPIENT, amount)


@pytest.mark.asyncio
async def test_create_transaction_starts_pending(orchestrator):
    transaction = await create(orchestrator)
    await orchestrator.drain()

    stored = await orchestrator.get_transaction("tx-1")
    assert transaction.status == TransactionStatus.PENDING
    assert stored.status == TransactionStatus.PENDING
    assert stored.recipient_status == RecipientStatus.PENDING
    assert stored.votes == [] and stored.bank_approvals == []


@pytest.mark.asyncio
@pytest.mark.parametrize("sender, recipient", [
    ("alice", RECIPIENT),
    (SENDER, "did:cedefi"),
    ("did::bob", RECIPIENT),
    (SENDER, ""),
])
async def test_malformed_did_is_rejected_without_side_effects(orchestrator, sender, recipient):
    with pytest.raises(ValidationError):
        await orchestrator.create_transaction("tx-bad", sender, recipient, 10)
    assert await orchestrator.list_transactions() == []


@pytest.mark.asyncio
async def test_duplicate_transaction_id_conflicts(orchestrator):
    await create(orchestrator)
    with pytest.raises(ConflictError):
        await create(orchestrator, amount=999)
    assert (await orchestrator.get_transaction("tx-1")).amount == 100


@pytest.mark.asyncio
async def test_broadcast_approvals_are_merged_after_creation(store, chain):
    def handler(request):
        if request.url.host == "bank-a":
            return approving_bank("BankA")(request)
        raise httpx.ConnectError("connection refused", request=request)

    coordinator = BankBroadcastCoordinator(
        ["http://bank-a", "http://bank-b"], retry_delay=0, transport=httpx.MockTransport(handler)
    )
    orchestrator = TransactionOrchestrator(store, chain, coordinator)

    await create(orchestrator)
    await orchestrator.drain()

    stored = await orchestrator.get_transaction("tx-1")
    assert [a.bank_id for a in stored.bank_approvals] == ["BankA"]


@pytest.mark.asyncio
async def test_supermajority_approves_and_finalizes_on_chain(orchestrator, chain):
    nodes = await activate_nodes(orchestrator, 3)
    await create(orchestrator)

    await orchestrator.submit_vote("tx-1", nodes[0], True)
    transaction = await orchestrator.submit_vote("tx-1", nodes[1], True)
    await orchestrator.drain()

    assert transaction.status == TransactionStatus.APPROVED
    assert transaction.recipient_status == RecipientStatus.PENDING
    assert transaction.chain_finalized
    record = await chain.get_record("tx-1")
    assert record.finalized and record.approved is True


@pytest.mark.asyncio
async def test_rejection_majority_even_with_a_yes_vote(orchestrator, chain):
    nodes = await activate_nodes(orchestrator, 3)
    await create(orchestrator)

    await orchestrator.submit_vote("tx-1", nodes[0], True)
    await orchestrator.submit_vote("tx-1", nodes[1], False)
    transaction = await orchestrator.submit_vote("tx-1", nodes[2], False)

    assert transaction.status == TransactionStatus.REJECTED
    assert (await chain.get_record("tx-1")).approved is False


@pytest.mark.asyncio
async def test_rule_b_with_bank_approval(orchestrator):
    nodes = await activate_nodes(orchestrator, 4)
    await create(orchestrator)

    await orchestrator.receive_bank_approval("tx-1", "BankA", "sig-a")
    await orchestrator.submit_vote("tx-1", nodes[0], True)
    transaction = await orchestrator.submit_vote("tx-1", nodes[1], True)

    assert transaction.status == TransactionStatus.APPROVED


@pytest.mark.asyncio
async def test_terminal_status_never_reverts(orchestrator):
    nodes = await activate_nodes(orchestrator, 3)
    await create(orchestrator)
    await orchestrator.submit_vote("tx-1", nodes[0], False)
    await orchestrator.submit_vote("tx-1", nodes[1], False)

    transaction = await orchestrator.submit_vote("tx-1", nodes[2], True)
    transaction = await orchestrator.receive_bank_approval("tx-1", "BankA", "sig-a")

    assert transaction.status == TransactionStatus.REJECTED


@pytest.mark.asyncio
async def test_duplicate_vote_is_rejected_and_state_preserved(orchestrator):
    nodes = await activate_nodes(orchestrator, 5)
    await create(orchestrator)
    await orchestrator.submit_vote("tx-1", nodes[0], True)

    with pytest.raises(ConflictError):
        await orchestrator.submit_vote("tx-1", nodes[0], False)

    stored = await orchestrator.get_transaction("tx-1")
    assert [(v.voter_id, v.decision) for v in stored.votes] == [(nodes[0], True)]


@pytest.mark.asyncio
async def test_vote_on_unknown_transaction(orchestrator):
    with pytest.raises(NotFoundError):
        await orchestrator.submit_vote("missing", "did:cedefi:node:0", True)


@pytest.mark.asyncio
async def test_no_active_nodes_keeps_transaction_pending(orchestrator):
    await orchestrator.nodes.register("http://node-x", "Pending node", "did:cedefi:node:x")
    await create(orchestrator)

    await orchestrator.submit_vote("tx-1", "did:cedefi:node:x", True)
    transaction = await orchestrator.receive_bank_approval("tx-1", "BankA", "sig-a")

    assert transaction.status == TransactionStatus.PENDING


@pytest.mark.asyncio
async def test_fraudulent_nodes_do_not_count(orchestrator):
    nodes = await activate_nodes(orchestrator, 3)
    await orchestrator.nodes.verify(nodes[2], "REJECT")
    await create(orchestrator)

    # 2 active nodes: Rule A needs 2 yes votes
    await orchestrator.submit_vote("tx-1", nodes[0], True)
    assert (await orchestrator.get_transaction("tx-1")).status == TransactionStatus.PENDING
    transaction = await orchestrator.submit_vote("tx-1", nodes[1], True)
    assert transaction.status == TransactionStatus.APPROVED


@pytest.mark.asyncio
async def test_bank_approvals_are_deduplicated(orchestrator):
    await create(orchestrator)

    await orchestrator.receive_bank_approval("tx-1", "BankA", "sig-1")
    await orchestrator.receive_bank_approval("tx-1", "BankA", "sig-2")
    transaction = await orchestrator.receive_bank_approval("tx-1", "BankB", "sig-3")

    assert [(a.bank_id, a.signature) for a in transaction.bank_approvals] == [
        ("BankA", "sig-1"),
        ("BankB", "sig-3"),
    ]


@pytest.mark.asyncio
async def test_bank_refusal_changes_nothing(orchestrator):
    await create(orchestrator)
    transaction = await orchestrator.receive_bank_approval("tx-1", "BankA", None, approved=False, reason="no")
    assert transaction.bank_approvals == []


@pytest.mark.asyncio
async def test_bank_approval_requires_signature(orchestrator):
    await create(orchestrator)
    with pytest.raises(ValidationError):
        await orchestrator.receive_bank_approval("tx-1", "BankA", None)


@pytest.mark.asyncio
async def test_claim_flow(orchestrator):
    nodes = await activate_nodes(orchestrator, 1)
    await create(orchestrator)

    with pytest.raises(ConflictError):
        await orchestrator.claim("tx-1")

    await orchestrator.submit_vote("tx-1", nodes[0], True)
    transaction = await orchestrator.claim("tx-1")
    assert transaction.recipient_status == RecipientStatus.CLAIMED
    assert transaction.claimed_at is not None

    with pytest.raises(ConflictError):
        await orchestrator.claim("tx-1")


@pytest.mark.asyncio
async def test_claim_rejected_transaction(orchestrator):
    nodes = await activate_nodes(orchestrator, 1)
    await create(orchestrator)
    await orchestrator.submit_vote("tx-1", nodes[0], False)

    with pytest.raises(ConflictError):
        await orchestrator.claim("tx-1")


@pytest.mark.asyncio
async def test_faucet_is_approved_and_on_chain(orchestrator, chain):
    transaction = await orchestrator.create_faucet(RECIPIENT, 500)

    assert transaction.status == TransactionStatus.APPROVED
    assert transaction.is_faucet
    assert transaction.sender == SYSTEM_DID
    assert transaction.transaction_id.startswith("faucet-")
    assert transaction.chain_finalized
    assert (await chain.get_record(transaction.transaction_id)).approved is True

    claimed = await orchestrator.claim(transaction.transaction_id)
    assert claimed.recipient_status == RecipientStatus.CLAIMED


@pytest.mark.asyncio
async def test_faucet_rejects_bad_recipient(orchestrator):
    with pytest.raises(ValidationError):
        await orchestrator.create_faucet("bob", 500)


@pytest.mark.asyncio
async def test_list_is_newest_first(orchestrator):
    for i in range(3):
        await create(orchestrator, transaction_id=f"tx-{i}")
        await asyncio.sleep(0.001)

    listed = await orchestrator.list_transactions()
    assert [t.transaction_id for t in listed] == ["tx-2", "tx-1", "tx-0"]


@pytest.mark.asyncio
async def test_concurrent_votes_are_not_lost(chain):
    orchestrator = TransactionOrchestrator(SlowStore(), chain, BankBroadcastCoordinator([]))
    nodes = await activate_nodes(orchestrator, 9)
    await create(orchestrator)

    await asyncio.gather(*(orchestrator.submit_vote("tx-1", node, True) for node in nodes[:5]))
    await orchestrator.drain()

    stored = await orchestrator.get_transaction("tx-1")
    assert len(stored.votes) == 5
    assert len({v.voter_id for v in stored.votes}) == 5
    assert len(orchestrator.locks) == 0


@pytest.mark.asyncio
async def test_concurrent_duplicate_votes_record_one(chain):
    orchestrator = TransactionOrchestrator(SlowStore(), chain, BankBroadcastCoordinator([]))
    nodes = await activate_nodes(orchestrator, 3)
    await create(orchestrator)

    results = await asyncio.gather(
        *(orchestrator.submit_vote("tx-1", nodes[0], True) for _ in range(4)),
        return_exceptions=True,
    )

    assert sum(isinstance(r, ConflictError) for r in results) == 3
    assert len((await orchestrator.get_transaction("tx-1")).votes) == 1
    await orchestrator.drain()


class FlakyChain(InMemoryChain):
    def __init__(self, failures):
        super().__init__()
        self.failures = failures

    async def finalize(self, transaction_id, approved):
        if self.failures:
            self.failures -= 1
            raise ChainUnavailableError("RPC unreachable")
        return await super().finalize(transaction_id, approved)


@pytest.mark.asyncio
async def test_chain_outage_is_retried_on_next_commit(store):
    chain = FlakyChain(failures=1)
    orchestrator = TransactionOrchestrator(store, chain, BankBroadcastCoordinator([]))
    nodes = await activate_nodes(orchestrator, 1)
    await create(orchestrator)

    transaction = await orchestrator.submit_vote("tx-1", nodes[0], True)
    assert transaction.status == TransactionStatus.APPROVED
    assert not transaction.chain_finalized

    transaction = await orchestrator.receive_bank_approval("tx-1", "BankA", "sig-a")
    assert transaction.chain_finalized
    assert (await chain.get_record("tx-1")).finalized
    await orchestrator.drain()


@pytest.mark.asyncio
async def test_keyed_lock_serialises_same_key():
    locks = KeyedLock()
    order = []

    async def worker(name):
        async with locks.hold("k"):
            order.append(f"{name}-in")
            await asyncio.sleep(0)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))

    assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_malformed_bank_answer_still_commits_other_approvals(store, chain):
    def handler(request):
        if request.url.host == "bank-a":
            return httpx.Response(200, json={"approved": True, "bankId": 7, "signature": "s"})
        return approving_bank("BankB")(request)

    coordinator = BankBroadcastCoordinator(
        ["http://bank-a", "http://bank-b"], retry_delay=0, transport=httpx.MockTransport(handler)
    )
    orchestrator = TransactionOrchestrator(store, chain, coordinator)
    nodes = await activate_nodes(orchestrator, 4)
    await create(orchestrator)
    await orchestrator.drain()

    stored = await orchestrator.get_transaction("tx-1")
    assert [a.bank_id for a in stored.bank_approvals] == ["BankB"]

    await orchestrator.submit_vote("tx-1", nodes[0], True)
    transaction = await orchestrator.submit_vote("tx-1", nodes[1], True)
    await orchestrator.drain()
    assert transaction.status == TransactionStatus.APPROVED


@pytest.mark.asyncio
async def test_outcome_already_on_chain_is_success(orchestrator, chain):
    nodes = await activate_nodes(orchestrator, 1)
    await create(orchestrator)
    await chain.create_record("tx-1", SENDER, 100)
    await chain.finalize("tx-1", True)

    transaction = await orchestrator.submit_vote("tx-1", nodes[0], True)

    assert transaction.status == TransactionStatus.APPROVED
    assert transaction.chain_finalized is True
    assert (await orchestrator.get_transaction("tx-1")).chain_finalized is True
    assert len(chain) == 1


@pytest.mark.asyncio
async def test_recording_outcome_twice_keeps_one_record(orchestrator, chain):
    nodes = await activate_nodes(orchestrator, 1)
    await create(orchestrator)
    transaction = await orchestrator.submit_vote("tx-1", nodes[0], True)

    assert await orchestrator.committer.record_outcome(transaction) is True
    assert await orchestrator.committer.record_outcome(transaction) is True

    record = await chain.get_record("tx-1")
    assert record.finalized and record.approved is True
    assert len(chain) == 1
