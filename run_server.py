#!/usr/bin/env python3
"""Rentchain platform server.

Signing key from RENTCHAIN_PRIVATE_KEY env var (never in code).
RENTCHAIN_SIM=1 runs against the in-process simulated chain with a
throwaway funded key, for local development.
"""

import os
import sys

import structlog
import uvicorn
from eth_account import Account

from rentchain.agreement import load_artifact
from rentchain.app import create_app
from rentchain.broadcast import BroadcastQueue
from rentchain.ledger import RpcLedger, SimLedger
from rentchain.logs import configure_logging
from rentchain.protocol import (
    ARTIFACT_PATH, DB_PATH, DEFAULT_CONFIRM_TIMEOUT, DEFAULT_POLL_INTERVAL,
    GAS_LIMIT_FALLBACK, RECONCILE_INTERVAL, RPC_URL,
)
from rentchain.store import ListingStore

PRIVATE_KEY = os.environ.get("RENTCHAIN_PRIVATE_KEY", "")
SIMULATE = os.environ.get("RENTCHAIN_SIM", "") == "1"
PORT = int(os.environ.get("RENTCHAIN_PORT", "8000"))

log = structlog.get_logger("run_server")


def _fail(message: str):
    print(message, file=sys.stderr)
    sys.exit(1)


def queue_db_path(db_path: str) -> str:
    """Transaction log lives beside the listing database."""
    if db_path == ":memory:":
        return db_path
    return os.path.splitext(db_path)[0] + "_tx.db"


def build_app():
    if SIMULATE:
        ledger = SimLedger(auto_mine=True)
        bytecode = ledger.bytecode
        private_key = PRIVATE_KEY or "0x" + bytes(Account.create().key).hex()
        ledger.fund(Account.from_key(private_key).address, "1000")
    else:
        if not PRIVATE_KEY:
            _fail("RENTCHAIN_PRIVATE_KEY env var required (or RENTCHAIN_SIM=1)")
        if not ARTIFACT_PATH:
            _fail("RENTCHAIN_ARTIFACT env var required (compiled RentalAgreement JSON)")
        try:
            _, bytecode = load_artifact(ARTIFACT_PATH)
        except (OSError, ValueError) as e:
            _fail(f"Cannot load contract artifact {ARTIFACT_PATH}: {e}")
        ledger = RpcLedger(RPC_URL)
        private_key = PRIVATE_KEY

    if DB_PATH != ":memory:" and os.path.dirname(DB_PATH):
        os.makedirs(os.path.dirname(DB_PATH), exist_ok=True)

    store = ListingStore(DB_PATH)
    queue = BroadcastQueue(
        ledger, private_key, db_path=queue_db_path(DB_PATH), bytecode=bytecode,
        poll_interval=DEFAULT_POLL_INTERVAL, gas_limit_fallback=GAS_LIMIT_FALLBACK,
    )
    log.info("server_configured", signer=queue.address, simulated=SIMULATE,
             rpc_url=None if SIMULATE else RPC_URL, db=DB_PATH,
             confirm_timeout=DEFAULT_CONFIRM_TIMEOUT, reconcile_interval=RECONCILE_INTERVAL)
    return create_app(store=store, queue=queue, confirm_timeout=DEFAULT_CONFIRM_TIMEOUT,
                      reconcile_interval=RECONCILE_INTERVAL)


def main():
    configure_logging()
    app = build_app()
    log.info("server_listening", port=PORT)
    uvicorn.run(app, host="0.0.0.0", port=PORT, log_config=None)


if __name__ == "__main__":
    main()
