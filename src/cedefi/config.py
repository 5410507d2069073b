"""
Service settings loaded from the environment (and a local .env file).
"""
import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

DEFAULT_BANK_URLS = "http://localhost:3001,http://localhost:3002,http://localhost:3003"


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class LedgerSettings:
    """Settings for the ledger (orchestrator) service."""
    database_url: Optional[str] = None
    bank_urls: List[str] = field(default_factory=lambda: _split_list(DEFAULT_BANK_URLS))
    bank_request_timeout: float = 5.0
    bank_max_retries: int = 2
    bank_retry_delay: float = 1.0
    bank_health_timeout: float = 2.0
    port: int = 5000

    @classmethod
    def from_env(cls) -> "LedgerSettings":
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            bank_urls=_split_list(os.getenv("BANK_URLS", DEFAULT_BANK_URLS)),
            bank_request_timeout=float(os.getenv("BANK_REQUEST_TIMEOUT", "5")),
            bank_max_retries=int(os.getenv("BANK_MAX_RETRIES", "2")),
            bank_retry_delay=float(os.getenv("BANK_RETRY_DELAY", "1")),
            bank_health_timeout=float(os.getenv("BANK_HEALTH_TIMEOUT", "2")),
            port=int(os.getenv("PORT", "5000")),
        )


@dataclass
class BankSettings:
    """Settings for one bank service instance."""
    bank_id: str = "UnknownBank"
    key_file: str = "bank_keys.json"
    private_key_pem: Optional[str] = None
    main_system_url: str = "http://localhost:5000"
    amount_limit: float = 1_000_000
    trusted_nodes: List[str] = field(default_factory=list)
    min_trusted_votes: int = 0
    require_bank_consensus: bool = False
    validator_enabled: bool = True
    validator_interval: float = 5.0
    validator_balance_ceiling: float = 10_000
    ledger_timeout: float = 5.0
    port: int = 3000

    @classmethod
    def from_env(cls) -> "BankSettings":
        return cls(
            bank_id=os.getenv("BANK_ID", "UnknownBank"),
            key_file=os.getenv("BANK_KEY_FILE", "bank_keys.json"),
            private_key_pem=os.getenv("BANK_PRIVATE_KEY") or None,
            main_system_url=os.getenv("MAIN_SYSTEM_URL", "http://localhost:5000"),
            amount_limit=float(os.getenv("BANK_AMOUNT_LIMIT", "1000000")),
            trusted_nodes=_split_list(os.getenv("BANK_TRUSTED_NODES", "")),
            min_trusted_votes=int(os.getenv("BANK_MIN_TRUSTED_VOTES", "0")),
            require_bank_consensus=_bool(os.getenv("BANK_REQUIRE_BANK_CONSENSUS", "false")),
            validator_enabled=_bool(os.getenv("VALIDATOR_ENABLED", "true")),
            validator_interval=float(os.getenv("VALIDATOR_INTERVAL", "5")),
            validator_balance_ceiling=float(os.getenv("VALIDATOR_BALANCE_CEILING", "10000")),
            ledger_timeout=float(os.getenv("LEDGER_TIMEOUT", "5")),
            port=int(os.getenv("PORT", "3000")),
        )
