"""
Applies consensus outcomes to stored transactions and the immutable chain.

Every method here expects the caller to hold the transaction's lock.
"""
from cedefi import consensus
from cedefi.chain import ImmutableLedger
from cedefi.errors import AlreadyFinalizedError, ChainUnavailableError, ConflictError, NotFoundError
from cedefi.logger import get_logger
from cedefi.models import RecipientStatus, Transaction, TransactionStatus, utcnow
from cedefi.nodes import NodeRegistry
from cedefi.transactions import TransactionRepository
from cedefi.votes import tally

logger = get_logger(__name__)


class LedgerCommitter:
    def __init__(self, transactions: TransactionRepository, nodes: NodeRegistry, chain: ImmutableLedger):
        self.transactions = transactions
        self.nodes = nodes
        self.chain = chain

    async def commit(self, transaction: Transaction) -> Transaction:
        """
        Re-evaluate consensus for a transaction and persist any change.
        Terminal outcomes are written to the chain; a chain write that failed
        earlier is retried on the next commit.
        """
        total_nodes = await self.nodes.count_active()
        yes_votes, no_votes = tally(transaction)
        approvals = len(transaction.bank_approvals)

        status = consensus.evaluate(total_nodes, yes_votes, no_votes, approvals, transaction.status)
        logger.info(
            "Consensus for %s: %s -> %s",
            transaction.transaction_id,
            consensus.describe(total_nodes, yes_votes, no_votes, approvals),
            status.value,
        )

        if status != transaction.status:
            transaction.status = status
            # An approved transaction keeps recipient_status PENDING until claimed
            await self.transactions.save(transaction)

        if transaction.status.is_terminal and not transaction.chain_finalized:
            if await self.record_outcome(transaction):
                transaction.chain_finalized = True
                await self.transactions.save(transaction)

        return transaction

    async def record_outcome(self, transaction: Transaction) -> bool:
        """
        Write the terminal outcome to the chain. Returns True once the chain
        holds the final outcome, including when it was already finalized.
        """
        transaction_id = transaction.transaction_id
        approved = transaction.status == TransactionStatus.APPROVED
        try:
            record = await self.chain.get_record(transaction_id)
            if record is None:
                logger.info("Creating transaction %s on-chain before finalizing", transaction_id)
                await self.chain.create_record(transaction_id, transaction.sender, transaction.amount)

            logger.info("Recording %s as %s on chain", transaction_id, transaction.status.value)
            await self.chain.finalize(transaction_id, approved)
            logger.info("Transaction %s finalized on chain", transaction_id)
            return True
        except AlreadyFinalizedError:
            logger.info("Transaction %s was already finalized on chain", transaction_id)
            return True
        except (ChainUnavailableError, NotFoundError) as e:
            logger.error("Error writing %s to chain: %s", transaction_id, e)
            return False

    async def claim(self, transaction: Transaction) -> Transaction:
        """Recipient claims the funds of an approved transaction."""
        if transaction.status != TransactionStatus.APPROVED:
            raise ConflictError(
                f"Transaction {transaction.transaction_id} is {transaction.status.value}; only approved funds can be claimed"
            )
        if transaction.recipient_status == RecipientStatus.CLAIMED:
            raise ConflictError(f"Transaction {transaction.transaction_id} already claimed")

        transaction.recipient_status = RecipientStatus.CLAIMED
        transaction.claimed_at = utcnow()
        await self.transactions.save(transaction)
        logger.info("Transaction %s claimed by %s", transaction.transaction_id, transaction.recipient)
        return transaction
