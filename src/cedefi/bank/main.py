"""
FastAPI bank service.
Evaluates approval requests against local policy and signs approvals.
"""
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from cedefi import __version__
from cedefi.api import request_validation_handler
from cedefi.bank.ledger_client import LedgerClient
from cedefi.bank.policy import BankPolicyService, BankState
from cedefi.bank.validator import ValidatorService
from cedefi.config import BankSettings
from cedefi.errors import ValidationError
from cedefi.key_manager import get_or_create_bank_keypair
from cedefi.logger import get_logger
from cedefi.models import (
    ApprovalRequest,
    ApprovalResponse,
    BankInfo,
    BankSettingsResponse,
    BankSettingsUpdate,
    DecisionLogEntry,
    RejectionRequest,
    SecurityPolicy,
)

logger = get_logger(__name__)


def build_state(settings: BankSettings) -> BankState:
    return BankState(
        bank_id=settings.bank_id,
        private_key=get_or_create_bank_keypair(settings.key_file, settings.private_key_pem),
        trusted_nodes=set(settings.trusted_nodes),
        security_policy=SecurityPolicy(
            min_trusted_votes=settings.min_trusted_votes,
            require_bank_consensus=settings.require_bank_consensus,
        ),
        amount_limit=settings.amount_limit,
    )


def create_app(
    settings: Optional[BankSettings] = None,
    state: Optional[BankState] = None,
    ledger: Optional[LedgerClient] = None,
) -> FastAPI:
    settings = settings or BankSettings.from_env()
    state = state or build_state(settings)
    ledger = ledger or LedgerClient(settings.main_system_url, timeout=settings.ledger_timeout)
    service = BankPolicyService(state, ledger)
    validator = ValidatorService(
        ledger,
        address=state.address,
        interval=settings.validator_interval,
        balance_ceiling=settings.validator_balance_ceiling,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("[%s] Initialized with address: %s", state.bank_id, state.address)
        if settings.validator_enabled:
            validator.start()
        yield
        await validator.stop()
        await service.drain()
        await ledger.close()

    app = FastAPI(
        title=f"CeDeFi Bank Service [{state.bank_id}]",
        description="Bank policy checks and signed transaction approvals",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.bank = service
    app.state.validator = validator

    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/bank/info", response_model=BankInfo)
    async def info():
        return service.info()

    @app.post("/bank/approve", response_model=ApprovalResponse, response_model_exclude_none=True)
    async def approve(request: ApprovalRequest):
        """
        Evaluate an approval request. Refusals are returned with HTTP 200 and
        approved=false; only a signing failure is a server error.
        """
        try:
            return await service.approve(
                request.transaction_id,
                sender=request.sender,
                amount=request.amount,
                force=request.force,
            )
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            logger.exception("[%s] Signing failed for %s", state.bank_id, request.transaction_id)
            raise HTTPException(status_code=500, detail=f"Signing failed: {str(e)}")

    @app.post("/bank/reject", response_model=ApprovalResponse, response_model_exclude_none=True)
    async def reject(request: RejectionRequest):
        """Record a refusal and notify the ledger."""
        try:
            return await service.reject(request.transaction_id, request.reason)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.get("/bank/settings", response_model=BankSettingsResponse)
    async def get_settings():
        return service.settings()

    @app.post("/bank/settings", response_model=BankSettingsResponse)
    async def update_settings(request: BankSettingsUpdate):
        """Replace the trusted node set and/or the security policy."""
        return service.update_settings(request)

    @app.get("/bank/logs", response_model=List[DecisionLogEntry])
    async def get_bank_logs(limit: int = 100, offset: int = 0):
        """Recent approval and rejection decisions, newest first."""
        return service.decision_log(limit=limit, offset=offset)

    @app.get("/bank/health")
    async def health():
        """Liveness check."""
        return {"status": "ok", "bankId": state.bank_id, "validator": validator.running}

    return app
