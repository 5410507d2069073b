"""
FastAPI ledger service.
Accepts transactions, votes and bank callbacks, and drives consensus.
"""
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from cedefi import __version__
from cedefi.api import request_validation_handler
from cedefi.broadcast import BankBroadcastCoordinator
from cedefi.chain import ImmutableLedger, create_chain
from cedefi.config import LedgerSettings
from cedefi.database import DocumentStore, create_store
from cedefi.errors import ConflictError, NotFoundError, ValidationError
from cedefi.logger import get_logger
from cedefi.models import (
    BankApprovalCallback,
    BankHealth,
    FaucetRequest,
    Node,
    NodeRegistrationRequest,
    NodeVerificationRequest,
    Transaction,
    TransactionCreateRequest,
    VoteRequest,
)
from cedefi.orchestrator import TransactionOrchestrator

logger = get_logger(__name__)


def to_http_error(error: Exception, action: str) -> HTTPException:
    """Map a domain error to the HTTP status the API reports."""
    if isinstance(error, HTTPException):
        return error
    if isinstance(error, ValidationError):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, ConflictError):
        return HTTPException(status_code=409, detail=str(error))
    logger.exception("%s failed", action)
    return HTTPException(status_code=500, detail=f"{action} failed: {str(error)}")


def create_app(
    settings: Optional[LedgerSettings] = None,
    store: Optional[DocumentStore] = None,
    chain: Optional[ImmutableLedger] = None,
    coordinator: Optional[BankBroadcastCoordinator] = None,
) -> FastAPI:
    settings = settings or LedgerSettings.from_env()
    store = store or create_store(settings.database_url)
    chain = chain or create_chain(settings.database_url)
    coordinator = coordinator or BankBroadcastCoordinator(
        settings.bank_urls,
        timeout=settings.bank_request_timeout,
        max_retries=settings.bank_max_retries,
        retry_delay=settings.bank_retry_delay,
        health_timeout=settings.bank_health_timeout,
    )
    orchestrator = TransactionOrchestrator(store, chain, coordinator)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for backend in (store, chain):
            if hasattr(backend, "init_schema"):
                await backend.init_schema()
        logger.info("Ledger service started with %d banks", len(coordinator.bank_urls))
        yield
        await orchestrator.drain()
        await store.close()

    app = FastAPI(
        title="CeDeFi Ledger Service",
        description="Transaction consensus between voting nodes and bank approvals",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # CORS middleware to allow dashboard access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {
            "service": "CeDeFi Ledger Service",
            "status": "running",
            "banks": coordinator.bank_urls,
        }

    @app.post("/transactions", response_model=Transaction, status_code=201)
    async def create_transaction(request: TransactionCreateRequest):
        """Create a transaction and broadcast it to the banks in the background."""
        try:
            return await orchestrator.create_transaction(
                transaction_id=request.transaction_id,
                sender=request.sender,
                recipient=request.recipient,
                amount=request.amount,
                signature=request.signature,
            )
        except Exception as e:
            raise to_http_error(e, "Transaction creation")

    @app.post("/transactions/faucet", response_model=Transaction, status_code=201)
    async def faucet(request: FaucetRequest):
        """Issue system funds, approved without banks or nodes."""
        try:
            return await orchestrator.create_faucet(
                recipient=request.recipient,
                amount=request.amount,
                transaction_id=request.transaction_id,
            )
        except Exception as e:
            raise to_http_error(e, "Faucet")

    @app.get("/transactions", response_model=List[Transaction])
    async def list_transactions(status: Optional[str] = None):
        """List transactions, newest first."""
        try:
            return await orchestrator.list_transactions(status)
        except Exception as e:
            raise to_http_error(e, "Listing transactions")

    @app.get("/transactions/{transaction_id}", response_model=Transaction)
    async def get_transaction(transaction_id: str):
        try:
            return await orchestrator.get_transaction(transaction_id)
        except Exception as e:
            raise to_http_error(e, "Fetching transaction")

    @app.post("/transactions/{transaction_id}/vote", response_model=Transaction)
    async def vote(transaction_id: str, request: VoteRequest):
        """Record a node's vote and re-evaluate consensus."""
        try:
            return await orchestrator.submit_vote(transaction_id, request.voter, request.decision)
        except Exception as e:
            raise to_http_error(e, "Vote")

    @app.post("/transactions/{transaction_id}/bank-approval", response_model=Transaction)
    async def bank_approval(transaction_id: str, request: BankApprovalCallback):
        """Callback from a bank after it signed (or refused) a transaction."""
        try:
            return await orchestrator.receive_bank_approval(
                transaction_id,
                bank_id=request.bank_id,
                signature=request.signature,
                approved=request.approved,
                reason=request.reason,
            )
        except Exception as e:
            raise to_http_error(e, "Bank approval")

    @app.post("/transactions/{transaction_id}/claim", response_model=Transaction)
    async def claim(transaction_id: str):
        """Recipient claims the funds of an approved transaction."""
        try:
            return await orchestrator.claim(transaction_id)
        except Exception as e:
            raise to_http_error(e, "Claim")

    # Node Endpoints
    @app.post("/nodes/register", response_model=Node, status_code=201)
    async def register_node(request: NodeRegistrationRequest):
        try:
            return await orchestrator.nodes.register(request.url, request.name, request.public_key)
        except Exception as e:
            raise to_http_error(e, "Node registration")

    @app.get("/nodes", response_model=List[Node])
    async def list_nodes():
        try:
            return await orchestrator.nodes.list()
        except Exception as e:
            raise to_http_error(e, "Listing nodes")

    @app.post("/nodes/{public_key}/verify", response_model=Node)
    async def verify_node(public_key: str, request: NodeVerificationRequest):
        """Admin approval (ACTIVE) or rejection (FRAUDULENT) of a node."""
        try:
            return await orchestrator.nodes.verify(public_key, request.action)
        except Exception as e:
            raise to_http_error(e, "Node verification")

    @app.get("/banks/health", response_model=List[BankHealth])
    async def banks_health():
        """Liveness of every configured bank service."""
        return await coordinator.check_health()

    return app
