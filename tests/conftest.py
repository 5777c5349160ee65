import sys
import os

# Ensure the repo root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from eth_account import Account

from rentchain.aggregator import ReadAggregator
from rentchain.broadcast import BroadcastQueue
from rentchain.ledger import SimLedger
from rentchain.lifecycle import AgreementCoordinator
from rentchain.store import ListingStore


# --- Identities (deterministic test keys, never used anywhere real) ---

SIGNER_KEY = "0x" + "11" * 32
SIGNER = Account.from_key(SIGNER_KEY).address
OWNER = Account.from_key("0x" + "22" * 32).address
RENTER = Account.from_key("0x" + "33" * 32).address
OUTSIDER_KEY = "0x" + "44" * 32

CONTENT_HASH = "QmYwAPJzv5CZsnA625s3Xf2nemtYgPpHdWEz79ojWnPbdG"
RENT = 500000000000000000        # 0.5 ETH
DEPOSIT = 1000000000000000000    # 1 ETH


def listing_terms(**overrides) -> dict:
    terms = {
        "owner": OWNER,
        "renter": RENTER,
        "content_hash": CONTENT_HASH,
        "rent_amount": RENT,
        "deposit_amount": DEPOSIT,
        "duration_days": 30,
    }
    terms.update(overrides)
    return terms


@pytest.fixture
def sim():
    """Simulated chain with a funded signer. Mines on every submission."""
    ledger = SimLedger()
    ledger.fund(SIGNER, "100")
    return ledger


@pytest.fixture
def queue(sim):
    q = BroadcastQueue(sim, SIGNER_KEY, poll_interval=0.01)
    yield q
    q.close()


@pytest.fixture
def store():
    s = ListingStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def aggregator(sim):
    return ReadAggregator(sim)


@pytest.fixture
def coordinator(store, queue, aggregator):
    return AgreementCoordinator(store, queue, aggregator, confirm_timeout=0.5)


def sign_raw(key: str, nonce: int, to: str | None = None, value: int = 0, data: str = "0x",
             gas: int = 2_000_000, gas_price: int = 1_000_000_000, chain_id: int = SimLedger.CHAIN_ID) -> str:
    """Sign a legacy transaction outside the queue (another wallet, or the same key elsewhere)."""
    tx = {"chainId": chain_id, "nonce": nonce, "gas": gas, "gasPrice": gas_price,
          "value": value, "data": data}
    if to:
        tx["to"] = to
    signed = Account.from_key(key).sign_transaction(tx)
    raw = getattr(signed, "raw_transaction", None)
    if raw is None:
        raw = signed.rawTransaction
    return "0x" + bytes(raw).hex()
