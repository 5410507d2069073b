"""
Run one of the services with uvicorn.
Usage: python run.py ledger|bank
"""
import os
import sys

import uvicorn
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

SERVICES = {
    "ledger": ("cedefi.ledger.main:create_app", "5000"),
    "bank": ("cedefi.bank.main:create_app", "3000"),
}

if __name__ == "__main__":
    service = sys.argv[1] if len(sys.argv) > 1 else "ledger"
    if service not in SERVICES:
        sys.exit(f"Unknown service {service!r}; expected one of: {', '.join(SERVICES)}")

    factory, default_port = SERVICES[service]
    port = int(os.getenv("PORT", default_port))
    uvicorn.run(
        factory,
        factory=True,
        host="0.0.0.0",
        port=port,
        reload=os.getenv("RELOAD", "false").lower() == "true",
        reload_dirs=["src"],
        reload_excludes=["venv/**", "*.pyc", "__pycache__/**"],
    )
