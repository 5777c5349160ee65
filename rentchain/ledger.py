"""Ledger clients for the rentchain platform.

A LedgerClient is a stateless adapter over an Ethereum-style chain: submit a
signed transaction, fetch receipts, run read-only calls, query nonce and
balance. It never holds a private key; signing happens in the broadcast
queue and only raw signed transactions cross this boundary.

Two implementations:
  - RpcLedger: raw JSON-RPC over HTTP (requests). Production.
  - SimLedger: in-process chain in SQLite that executes the RentalAgreement
    rules. Supports holding transactions in the mempool, dropping them, and
    simulated outages, so every failure window can be exercised in tests.
"""

import asyncio
import sqlite3
import threading
import time
from abc import ABC, abstractmethod

import requests
import rlp
import structlog
from eth_account import Account
from eth_utils import big_endian_to_int, keccak, to_checksum_address

from rentchain import agreement
from rentchain.protocol import (
    DEFAULT_POLL_INTERVAL, RPC_TIMEOUT, RPC_URL, eth_to_wei, wei_to_eth,
)

log = structlog.get_logger(__name__)


# --- Errors ---

class LedgerError(Exception):
    """Node refused a request."""


class RpcUnavailable(LedgerError):
    """Endpoint unreachable or returned a transport-level failure."""


class NonceTooLow(LedgerError):
    pass


class InsufficientFunds(LedgerError):
    pass


class ExecutionReverted(LedgerError):
    def __init__(self, reason: str = ""):
        super().__init__(reason or "execution reverted")
        self.reason = reason or "execution reverted"


def _classify_rpc_error(error: dict) -> LedgerError:
    message = str(error.get("message", error))
    lowered = message.lower()
    if "nonce too low" in lowered or "nonce has already been used" in lowered:
        return NonceTooLow(message)
    if "insufficient funds" in lowered:
        return InsufficientFunds(message)
    if "revert" in lowered or error.get("code") == 3:
        data = error.get("data")
        if isinstance(data, dict):
            data = data.get("data")
        reason = agreement.decode_revert(data) if isinstance(data, str) else ""
        if not reason and ":" in message:
            reason = message.split(":", 1)[1].strip()
        return ExecutionReverted(reason)
    return LedgerError(message)


def _hexify(tx: dict) -> dict:
    """JSON-RPC wants quantities as hex strings."""
    out = {}
    for key, value in tx.items():
        if isinstance(value, int) and not isinstance(value, bool):
            out[key] = hex(value)
        elif value is not None:
            out[key] = value
    return out


def tx_hash_of(raw_tx: str) -> str:
    return "0x" + keccak(hexstr=raw_tx).hex()


class LedgerClient(ABC):
    """Abstract chain adapter. The platform injects one into the broadcast queue."""

    @abstractmethod
    def chain_id(self) -> int:
        ...

    @abstractmethod
    def get_nonce(self, address: str, block: str = "pending") -> int:
        """Next nonce for address. "pending" counts mempool transactions."""
        ...

    @abstractmethod
    def get_balance(self, address: str) -> int:
        """Balance in wei."""
        ...

    @abstractmethod
    def gas_price(self) -> int:
        ...

    @abstractmethod
    def estimate_gas(self, tx: dict) -> int:
        """Raises ExecutionReverted if the call would revert."""
        ...

    @abstractmethod
    def send_raw_transaction(self, raw_tx: str) -> str:
        """Broadcast a signed transaction. Returns its hash."""
        ...

    @abstractmethod
    def get_receipt(self, tx_hash: str) -> dict | None:
        """{"status", "contract_address", "block_number", "tx_hash"} or None if not mined."""
        ...

    @abstractmethod
    def transaction_known(self, tx_hash: str) -> bool:
        """True while the node holds the transaction, pending or mined."""
        ...

    @abstractmethod
    def call(self, to: str, data: str, block: str = "latest") -> str:
        """Read-only call. Returns hex-encoded return data."""
        ...

    @abstractmethod
    def revert_reason(self, tx_hash: str, receipt: dict) -> str:
        """Best-effort reason string for a mined transaction with status 0."""
        ...

    async def wait_for_receipt(self, tx_hashes: list[str], timeout: float,
                               poll_interval: float = DEFAULT_POLL_INTERVAL) -> tuple[str, dict] | None:
        """Suspend until any of tx_hashes is mined or timeout elapses.

        Several hashes share one nonce after a fee-bumped replacement; at most
        one of them can ever be mined. Returns (hash, receipt) or None.
        A timeout of 0 checks once without waiting.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            for tx_hash in list(tx_hashes):
                try:
                    receipt = await asyncio.to_thread(self.get_receipt, tx_hash)
                except RpcUnavailable as e:
                    log.warning("receipt_poll_failed", tx_hash=tx_hash, error=str(e))
                    continue
                if receipt is not None:
                    return tx_hash, receipt
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(poll_interval, remaining))


class RpcLedger(LedgerClient):
    """Ethereum JSON-RPC over HTTP."""

    def __init__(self, node_url: str | None = None, timeout: float = RPC_TIMEOUT):
        self.node_url = node_url or RPC_URL
        self.timeout = timeout
        self._ids = 0
        self._id_lock = threading.Lock()

    def _next_id(self) -> int:
        with self._id_lock:
            self._ids += 1
            return self._ids

    def _rpc(self, method: str, *params):
        """Make a JSON-RPC call."""
        body = {"jsonrpc": "2.0", "id": self._next_id(), "method": method, "params": list(params)}
        try:
            resp = requests.post(self.node_url, json=body, timeout=self.timeout)
            resp.raise_for_status()
            result = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise RpcUnavailable(f"{method}: {e}") from e
        if "error" in result:
            raise _classify_rpc_error(result["error"])
        return result.get("result")

    def chain_id(self) -> int:
        return int(self._rpc("eth_chainId"), 16)

    def get_nonce(self, address: str, block: str = "pending") -> int:
        return int(self._rpc("eth_getTransactionCount", address, block), 16)

    def get_balance(self, address: str) -> int:
        return int(self._rpc("eth_getBalance", address, "latest"), 16)

    def gas_price(self) -> int:
        return int(self._rpc("eth_gasPrice"), 16)

    def estimate_gas(self, tx: dict) -> int:
        return int(self._rpc("eth_estimateGas", _hexify(tx)), 16)

    def send_raw_transaction(self, raw_tx: str) -> str:
        try:
            return self._rpc("eth_sendRawTransaction", raw_tx)
        except LedgerError as e:
            # Same signed bytes already in the pool (e.g. retried broadcast)
            if "already known" in str(e).lower():
                return tx_hash_of(raw_tx)
            raise

    def get_receipt(self, tx_hash: str) -> dict | None:
        r = self._rpc("eth_getTransactionReceipt", tx_hash)
        if not r:
            return None
        return {
            "status": int(r.get("status", "0x0"), 16),
            "contract_address": to_checksum_address(r["contractAddress"]) if r.get("contractAddress") else None,
            "block_number": int(r["blockNumber"], 16),
            "tx_hash": r["transactionHash"],
        }

    def transaction_known(self, tx_hash: str) -> bool:
        return self._rpc("eth_getTransactionByHash", tx_hash) is not None

    def call(self, to: str, data: str, block: str = "latest") -> str:
        return self._rpc("eth_call", {"to": to, "data": data}, block)

    def revert_reason(self, tx_hash: str, receipt: dict) -> str:
        # Replay the transaction as a call at its block to recover Error(string)
        tx = self._rpc("eth_getTransactionByHash", tx_hash)
        if not tx:
            return "execution reverted"
        replay = {"from": tx["from"], "to": tx.get("to"), "data": tx.get("input", "0x"),
                  "value": tx.get("value", "0x0"), "gas": tx.get("gas")}
        try:
            self._rpc("eth_call", replay, hex(receipt["block_number"]))
        except ExecutionReverted as e:
            return e.reason
        except LedgerError as e:
            return str(e)
        return "execution reverted"


# Gas charged per executed transaction on the simulated chain
SIM_DEPLOY_GAS = 1_500_000
SIM_CALL_GAS = 50_000


class SimLedger(LedgerClient):
    """Simulated chain for development/integration testing.

    Tracks balances, nonces, a mempool and RentalAgreement contracts in
    SQLite. Enforces:
    - nonce ordering (gaps wait, nonce too low rejected, replacement needs +10% fee)
    - balance checks on submission and gas charged on inclusion
    - the contract's require() rules, with revert reasons

    Usage:
        sim = SimLedger()
        sim.fund(signer_address, "10")
        sim.auto_mine = False      # hold transactions pending
        ...
        sim.mine()                 # include everything includable
    """

    CHAIN_ID = 31337

    def __init__(self, db_path: str = ":memory:", bytecode: str = agreement.SIM_BYTECODE,
                 gas_price_wei: int = 1_000_000_000, auto_mine: bool = True):
        self.bytecode = bytecode
        self.gas_price_wei = gas_price_wei
        self.auto_mine = auto_mine
        self.rpc_down = False
        self.failing_reads: set[str] = set()  # accessor signatures, e.g. "isActive()"
        self.block_number = 0

        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self):
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_accounts (
                address TEXT PRIMARY KEY,
                balance_wei TEXT NOT NULL DEFAULT '0',
                nonce INTEGER NOT NULL DEFAULT 0
            )
        """)
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_contracts (
                address TEXT PRIMARY KEY,
                landlord TEXT NOT NULL,
                renter TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                rent_amount TEXT NOT NULL,
                deposit_amount TEXT NOT NULL,
                duration_days INTEGER NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 0,
                is_terminated INTEGER NOT NULL DEFAULT 0
            )
        """)
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_transactions (
                hash TEXT PRIMARY KEY,
                sender TEXT NOT NULL,
                nonce INTEGER NOT NULL,
                to_address TEXT,
                value_wei TEXT NOT NULL,
                data TEXT NOT NULL,
                gas INTEGER NOT NULL,
                gas_price TEXT NOT NULL,
                state TEXT NOT NULL DEFAULT 'pending',
                status INTEGER,
                contract_address TEXT,
                block_number INTEGER,
                revert_reason TEXT,
                submitted_at REAL NOT NULL
            )
        """)
        self._db.commit()

    def _ensure_up(self):
        if self.rpc_down:
            raise RpcUnavailable("simulated RPC outage")

    # --- account helpers ---

    def _account(self, address: str) -> tuple[int, int]:
        row = self._db.execute(
            "SELECT balance_wei, nonce FROM sim_accounts WHERE address = ?",
            (to_checksum_address(address),),
        ).fetchone()
        if not row:
            return 0, 0
        return int(row["balance_wei"]), row["nonce"]

    def _set_account(self, address: str, balance: int, nonce: int):
        self._db.execute(
            "INSERT INTO sim_accounts (address, balance_wei, nonce) VALUES (?, ?, ?) "
            "ON CONFLICT(address) DO UPDATE SET balance_wei = ?, nonce = ?",
            (to_checksum_address(address), str(balance), nonce, str(balance), nonce),
        )

    def _contract(self, address: str | None):
        if not address:
            return None
        return self._db.execute(
            "SELECT * FROM sim_contracts WHERE address = ?",
            (to_checksum_address(address),),
        ).fetchone()

    # --- contract rules ---

    def _check(self, sender: str, to: str | None, value: int, data: str) -> str:
        """Revert reason for executing against current state; '' if it succeeds."""
        if not to:
            try:
                agreement.decode_deploy(data, self.bytecode)
            except ValueError as e:
                return str(e)
            if value:
                return "constructor is not payable"
            return ""
        contract = self._contract(to)
        if contract is None:
            return "call to non-contract"
        sel = data[2:10].lower() if data.startswith("0x") else data[:8].lower()
        if sel == agreement.selector(agreement.ACTIVATE_SIGNATURE).hex():
            if contract["is_terminated"]:
                return "Agreement terminated"
            if contract["is_active"]:
                return "Agreement already active"
            if value != int(contract["rent_amount"]) + int(contract["deposit_amount"]):
                return "Incorrect payment amount"
            return ""
        if sel == agreement.selector(agreement.TERMINATE_SIGNATURE).hex():
            if contract["is_terminated"]:
                return "Agreement already terminated"
            if to_checksum_address(sender) not in (contract["landlord"], contract["renter"]):
                return "Only landlord or renter"
            if value:
                return "terminateAgreement is not payable"
            return ""
        return "unknown function selector"

    def _execute(self, row) -> tuple[int, str | None, str]:
        """Apply a mined transaction. Returns (status, contract_address, reason)."""
        sender, to, value = row["sender"], row["to_address"], int(row["value_wei"])
        balance, nonce = self._account(sender)
        gas_used = SIM_DEPLOY_GAS if not to else SIM_CALL_GAS
        fee = min(gas_used, row["gas"]) * int(row["gas_price"])

        reason = self._check(sender, to, value, row["data"])
        if reason:
            self._set_account(sender, max(balance - fee, 0), nonce + 1)
            return 0, None, reason

        contract_address = None
        if not to:
            args = agreement.decode_deploy(row["data"], self.bytecode)
            contract_address = to_checksum_address(
                keccak(rlp.encode([bytes.fromhex(sender[2:]), nonce]))[12:]
            )
            self._db.execute(
                "INSERT INTO sim_contracts (address, landlord, renter, content_hash, "
                "rent_amount, deposit_amount, duration_days) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (contract_address, to_checksum_address(sender), args["renter"],
                 args["content_hash"], str(args["rent_amount"]),
                 str(args["deposit_amount"]), args["duration_days"]),
            )
        else:
            sel = row["data"][2:10].lower()
            if sel == agreement.selector(agreement.ACTIVATE_SIGNATURE).hex():
                self._db.execute(
                    "UPDATE sim_contracts SET is_active = 1 WHERE address = ?",
                    (to_checksum_address(to),),
                )
            else:
                self._db.execute(
                    "UPDATE sim_contracts SET is_terminated = 1, is_active = 0 WHERE address = ?",
                    (to_checksum_address(to),),
                )
        self._set_account(sender, balance - fee - value, nonce + 1)
        return 1, contract_address, ""

    def mine(self) -> int:
        """Include every pending transaction whose nonce is next in line. Returns count."""
        with self._lock:
            self.block_number += 1
            mined = 0
            progressed = True
            while progressed:
                progressed = False
                rows = self._db.execute(
                    "SELECT * FROM sim_transactions WHERE state = 'pending' ORDER BY sender, nonce"
                ).fetchall()
                for row in rows:
                    _, account_nonce = self._account(row["sender"])
                    if row["nonce"] < account_nonce:
                        self._db.execute(
                            "UPDATE sim_transactions SET state = 'dropped' WHERE hash = ?",
                            (row["hash"],),
                        )
                        continue
                    if row["nonce"] != account_nonce:
                        continue  # gap: waits for the missing nonce
                    status, contract_address, reason = self._execute(row)
                    self._db.execute(
                        "UPDATE sim_transactions SET state = 'mined', status = ?, "
                        "contract_address = ?, block_number = ?, revert_reason = ? WHERE hash = ?",
                        (status, contract_address, self.block_number, reason or None, row["hash"]),
                    )
                    mined += 1
                    progressed = True
            self._db.commit()
            return mined

    def drop_pending(self) -> int:
        """Evict every pending transaction from the mempool (node restart, low fee)."""
        with self._lock:
            cursor = self._db.execute(
                "UPDATE sim_transactions SET state = 'dropped' WHERE state = 'pending'"
            )
            self._db.commit()
            return cursor.rowcount

    # --- LedgerClient interface ---

    def chain_id(self) -> int:
        self._ensure_up()
        return self.CHAIN_ID

    def get_nonce(self, address: str, block: str = "pending") -> int:
        self._ensure_up()
        with self._lock:
            _, nonce = self._account(address)
            if block != "pending":
                return nonce
            while self._db.execute(
                "SELECT 1 FROM sim_transactions WHERE sender = ? AND nonce = ? AND state = 'pending'",
                (to_checksum_address(address), nonce),
            ).fetchone():
                nonce += 1
            return nonce

    def get_balance(self, address: str) -> int:
        self._ensure_up()
        with self._lock:
            return self._account(address)[0]

    def gas_price(self) -> int:
        self._ensure_up()
        return self.gas_price_wei

    def estimate_gas(self, tx: dict) -> int:
        self._ensure_up()
        with self._lock:
            reason = self._check(tx.get("from", ""), tx.get("to"), int(tx.get("value", 0)),
                                 tx.get("data", "0x"))
        if reason:
            raise ExecutionReverted(reason)
        return SIM_DEPLOY_GAS if not tx.get("to") else SIM_CALL_GAS

    def send_raw_transaction(self, raw_tx: str) -> str:
        self._ensure_up()
        fields = rlp.decode(bytes.fromhex(raw_tx[2:] if raw_tx.startswith("0x") else raw_tx))
        nonce, gas_price, gas = (big_endian_to_int(f) for f in fields[:3])
        to = to_checksum_address(fields[3]) if fields[3] else None
        value = big_endian_to_int(fields[4])
        data = "0x" + fields[5].hex()
        sender = Account.recover_transaction(raw_tx)
        tx_hash = tx_hash_of(raw_tx)

        with self._lock:
            if self._db.execute("SELECT 1 FROM sim_transactions WHERE hash = ?", (tx_hash,)).fetchone():
                return tx_hash  # already known
            balance, account_nonce = self._account(sender)
            if nonce < account_nonce:
                raise NonceTooLow(f"nonce too low: next nonce {account_nonce}, tx nonce {nonce}")
            if balance < gas * gas_price + value:
                raise InsufficientFunds(
                    f"insufficient funds for gas * price + value: have {wei_to_eth(balance)} ETH, "
                    f"need {wei_to_eth(gas * gas_price + value)} ETH"
                )
            existing = self._db.execute(
                "SELECT hash, gas_price FROM sim_transactions "
                "WHERE sender = ? AND nonce = ? AND state = 'pending'",
                (sender, nonce),
            ).fetchone()
            if existing:
                if gas_price * 10 < int(existing["gas_price"]) * 11:
                    raise LedgerError("replacement transaction underpriced")
                self._db.execute(
                    "UPDATE sim_transactions SET state = 'replaced' WHERE hash = ?",
                    (existing["hash"],),
                )
            self._db.execute(
                "INSERT INTO sim_transactions (hash, sender, nonce, to_address, value_wei, data, "
                "gas, gas_price, submitted_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (tx_hash, sender, nonce, to, str(value), data, gas, str(gas_price), time.time()),
            )
            self._db.commit()
            if self.auto_mine:
                self.mine()
        return tx_hash

    def get_receipt(self, tx_hash: str) -> dict | None:
        self._ensure_up()
        with self._lock:
            row = self._db.execute(
                "SELECT * FROM sim_transactions WHERE hash = ? AND state = 'mined'",
                (tx_hash,),
            ).fetchone()
        if not row:
            return None
        return {
            "status": row["status"],
            "contract_address": row["contract_address"],
            "block_number": row["block_number"],
            "tx_hash": row["hash"],
        }

    def transaction_known(self, tx_hash: str) -> bool:
        self._ensure_up()
        with self._lock:
            row = self._db.execute(
                "SELECT 1 FROM sim_transactions WHERE hash = ? AND state IN ('pending', 'mined')",
                (tx_hash,),
            ).fetchone()
        return row is not None

    def call(self, to: str, data: str, block: str = "latest") -> str:
        self._ensure_up()
        sel = bytes.fromhex(data[2:10])
        for signature, abi_type in agreement.READ_ACCESSORS.values():
            if agreement.selector(signature) != sel:
                continue
            if signature in self.failing_reads:
                raise RpcUnavailable(f"simulated failure reading {signature}")
            with self._lock:
                contract = self._contract(to)
            if contract is None:
                return "0x"
            column = {
                "landlord()": "landlord", "renter()": "renter",
                "propertyIPFSHash()": "content_hash", "rentAmount()": "rent_amount",
                "depositAmount()": "deposit_amount", "rentalDuration()": "duration_days",
                "isActive()": "is_active", "isTerminated()": "is_terminated",
            }[signature]
            value = contract[column]
            if abi_type == "uint256":
                value = int(value)
            elif abi_type == "bool":
                value = bool(value)
            return agreement.encode_result(abi_type, value)
        raise ExecutionReverted("unknown function selector")

    def revert_reason(self, tx_hash: str, receipt: dict) -> str:
        self._ensure_up()
        with self._lock:
            row = self._db.execute(
                "SELECT revert_reason FROM sim_transactions WHERE hash = ?", (tx_hash,)
            ).fetchone()
        return (row["revert_reason"] if row else None) or "execution reverted"

    # --- SimLedger-only methods (for test setup) ---

    def fund(self, address: str, amount_eth: str):
        """Credit an account with funds (simulates an external deposit)."""
        with self._lock:
            balance, nonce = self._account(address)
            self._set_account(address, balance + eth_to_wei(amount_eth), nonce)
            self._db.commit()

    def set_flags(self, address: str, is_active: bool | None = None,
                  is_terminated: bool | None = None):
        """Change contract flags directly (a transaction sent by someone else)."""
        with self._lock:
            if is_active is not None:
                self._db.execute("UPDATE sim_contracts SET is_active = ? WHERE address = ?",
                                 (int(is_active), to_checksum_address(address)))
            if is_terminated is not None:
                self._db.execute("UPDATE sim_contracts SET is_terminated = ? WHERE address = ?",
                                 (int(is_terminated), to_checksum_address(address)))
            self._db.commit()

    def get_transactions(self, to: str | None = None, signature: str | None = None) -> list[dict]:
        """Transaction log, optionally filtered by target and method signature."""
        with self._lock:
            rows = self._db.execute("SELECT * FROM sim_transactions ORDER BY submitted_at").fetchall()
        txs = [dict(r) for r in rows]
        if to is not None:
            txs = [t for t in txs if t["to_address"] and t["to_address"] == to_checksum_address(to)]
        if signature is not None:
            sel = "0x" + agreement.selector(signature).hex()
            txs = [t for t in txs if t["data"].startswith(sel)]
        return txs
