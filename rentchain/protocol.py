"""Shared constants and enums for the rentchain platform.

All modules import from here to avoid circular dependencies.
"""

import os
from decimal import Decimal
from enum import Enum

# --- Units ---

# 1 ETH = 10^18 wei. Amounts are carried as wei integers everywhere.
WEI_PER_ETH = 10**18

# --- Runtime configuration (environment) ---

RPC_URL = os.environ.get("RENTCHAIN_RPC_URL", "http://localhost:8545")
ARTIFACT_PATH = os.environ.get("RENTCHAIN_ARTIFACT", "")
DB_PATH = os.environ.get("RENTCHAIN_DB", ":memory:")

DEFAULT_CONFIRM_TIMEOUT = float(os.environ.get("RENTCHAIN_CONFIRM_TIMEOUT", "120"))
DEFAULT_POLL_INTERVAL = float(os.environ.get("RENTCHAIN_POLL_INTERVAL", "2"))
RECONCILE_INTERVAL = float(os.environ.get("RENTCHAIN_RECONCILE_INTERVAL", "0"))
GAS_LIMIT_FALLBACK = int(os.environ.get("RENTCHAIN_GAS_LIMIT_FALLBACK", "3000000"))

LOG_LEVEL = os.environ.get("RENTCHAIN_LOG_LEVEL", "INFO")
LOG_FORMAT = os.environ.get("RENTCHAIN_LOG_FORMAT", "console")

# Gas estimate headroom, as an integer ratio (estimate * 6 / 5 = +20%)
GAS_HEADROOM = (6, 5)
# Replacement fee bid (gas price * 5 / 4 = +25%); nodes require >= +10%
REPLACEMENT_BUMP = (5, 4)
# Consecutive nonce rejections (each after a resync) before admission halts
MAX_NONCE_RESYNCS = 3

# JSON-RPC request timeout (seconds)
RPC_TIMEOUT = 30


def eth_to_wei(amount: str | Decimal) -> int:
    """Convert an ETH amount to wei (integer)."""
    result = Decimal(amount) * WEI_PER_ETH
    return int(result.to_integral_value())


def wei_to_eth(wei: int | str) -> Decimal:
    """Convert wei to ETH."""
    return Decimal(str(wei)) / WEI_PER_ETH


# --- Listing state machine ---

class ListingStatus(Enum):
    DRAFT = "draft"
    AVAILABLE = "available"
    OCCUPIED = "occupied"
    TERMINATED = "terminated"


# Valid transitions: current -> set of valid next states. Monotonic.
STATUS_TRANSITIONS = {
    ListingStatus.DRAFT: {ListingStatus.AVAILABLE},
    ListingStatus.AVAILABLE: {ListingStatus.OCCUPIED, ListingStatus.TERMINATED},
    ListingStatus.OCCUPIED: {ListingStatus.TERMINATED},
    ListingStatus.TERMINATED: set(),
}

# Forward order, used to tell a lagging projection from a regressed one
STATUS_RANK = {
    ListingStatus.DRAFT: 0,
    ListingStatus.AVAILABLE: 1,
    ListingStatus.OCCUPIED: 2,
    ListingStatus.TERMINATED: 3,
}


def chain_status(is_active: bool, is_terminated: bool) -> ListingStatus:
    """Listing status implied by the contract's two flags."""
    if is_terminated:
        return ListingStatus.TERMINATED
    if is_active:
        return ListingStatus.OCCUPIED
    return ListingStatus.AVAILABLE


# --- Broadcast queue ---

class OperationKind(Enum):
    DEPLOY = "deploy"
    ACTIVATE = "activate"
    TERMINATE = "terminate"


class TxState(Enum):
    QUEUED = "queued"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    TIMED_OUT = "timed_out"
    FAILED = "failed"  # node refused the submission; nonce not consumed


# Status reached when each operation confirms
OPERATION_TARGET = {
    OperationKind.DEPLOY: ListingStatus.AVAILABLE,
    OperationKind.ACTIVATE: ListingStatus.OCCUPIED,
    OperationKind.TERMINATE: ListingStatus.TERMINATED,
}
