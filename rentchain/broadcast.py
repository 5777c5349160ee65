"""Transaction broadcast queue: the single custodial signer.

Every chain-mutating call goes through one BroadcastQueue, because all of
them share one signing key and a transaction is only includable if its nonce
is assigned exactly once, in increasing order.

Admission (nonce assignment + sign + submit) is a strictly sequential
critical section guarded by an asyncio.Lock. Confirmation waiting happens
outside it, so many transactions can be in flight at once, each with its own
already-assigned nonce.

Every admitted operation is recorded in SQLite with its state:

    queued -> submitted -> confirmed | reverted | timed_out
    queued -> failed                 (node refused it; nonce not consumed)
    timed_out -> submitted           (replace: same nonce, higher fee)
    timed_out -> failed              (nonce consumed by another transaction)
    submitted | timed_out -> failed  (dropped from the mempool; nonce reassigned)

The private key lives in this object only.
"""

import asyncio
import json
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass, field

import structlog
from eth_account import Account

from rentchain import agreement
from rentchain.errors import (
    ChainRejected, InvalidStateTransition, LedgerUnavailable, QueueHalted, SignerFailure,
)
from rentchain.ledger import (
    ExecutionReverted, InsufficientFunds, LedgerClient, LedgerError, NonceTooLow,
    RpcUnavailable, tx_hash_of,
)
from rentchain.protocol import (
    DEFAULT_POLL_INTERVAL, GAS_HEADROOM, GAS_LIMIT_FALLBACK, MAX_NONCE_RESYNCS,
    OperationKind, REPLACEMENT_BUMP, TxState, wei_to_eth,
)

log = structlog.get_logger(__name__)


@dataclass
class PendingTransaction:
    kind: OperationKind
    payload: dict = field(default_factory=dict)
    target: str | None = None
    value: int = 0
    listing_id: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    nonce: int | None = None
    gas: int | None = None
    gas_price: int | None = None
    state: TxState = TxState.QUEUED
    tx_hashes: list[str] = field(default_factory=list)
    submitted_at: float | None = None
    result_address: str | None = None
    reason: str = ""
    orphaned: bool = False
    created_at: float = field(default_factory=time.time)

    @property
    def tx_hash(self) -> str | None:
        """Most recently broadcast hash for this nonce."""
        return self.tx_hashes[-1] if self.tx_hashes else None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "nonce": self.nonce,
            "target": self.target,
            "value": self.value,
            "listing_id": self.listing_id,
            "gas": self.gas,
            "gas_price": self.gas_price,
            "state": self.state.value,
            "tx_hashes": list(self.tx_hashes),
            "submitted_at": self.submitted_at,
            "result_address": self.result_address,
            "reason": self.reason,
            "orphaned": self.orphaned,
            "created_at": self.created_at,
        }


@dataclass
class TxOutcome:
    state: TxState
    tx_hash: str | None = None
    result_address: str | None = None
    reason: str = ""

    @property
    def confirmed(self) -> bool:
        return self.state == TxState.CONFIRMED


class BroadcastQueue:
    """Serializes nonce assignment and submission for one custodial signer."""

    def __init__(self, ledger: LedgerClient, private_key: str, db_path: str = ":memory:",
                 bytecode: str = agreement.SIM_BYTECODE,
                 poll_interval: float = DEFAULT_POLL_INTERVAL,
                 gas_limit_fallback: int = GAS_LIMIT_FALLBACK):
        self.ledger = ledger
        self.bytecode = bytecode
        self.poll_interval = poll_interval
        self.gas_limit_fallback = gas_limit_fallback
        self._account = Account.from_key(private_key)
        self.address = self._account.address

        self._admission = asyncio.Lock()
        self._chain_id: int | None = None
        self._next_nonce: int | None = None  # None = resync from chain before next use
        self._resync_requested = False  # set outside the admission lock, honored inside it
        self._nonce_rejections = 0
        self.halted = False

        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                nonce INTEGER,
                target TEXT,
                payload TEXT NOT NULL DEFAULT '{}',
                value TEXT NOT NULL DEFAULT '0',
                listing_id TEXT,
                gas INTEGER,
                gas_price TEXT,
                state TEXT NOT NULL,
                tx_hashes TEXT NOT NULL DEFAULT '[]',
                submitted_at REAL,
                result_address TEXT,
                reason TEXT NOT NULL DEFAULT '',
                orphaned INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_tx_state ON transactions(state)")
        self.db.commit()

    # --- persistence ---

    def _save(self, record: PendingTransaction):
        with self._lock:
            self.db.execute(
                "INSERT INTO transactions (id, kind, nonce, target, payload, value, listing_id, gas, "
                "gas_price, state, tx_hashes, submitted_at, result_address, reason, orphaned, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET nonce = excluded.nonce, gas = excluded.gas, "
                "gas_price = excluded.gas_price, state = excluded.state, tx_hashes = excluded.tx_hashes, "
                "submitted_at = excluded.submitted_at, result_address = excluded.result_address, "
                "reason = excluded.reason, orphaned = excluded.orphaned",
                (record.id, record.kind.value, record.nonce, record.target,
                 json.dumps(record.payload), str(record.value), record.listing_id, record.gas,
                 str(record.gas_price) if record.gas_price is not None else None,
                 record.state.value, json.dumps(record.tx_hashes), record.submitted_at,
                 record.result_address, record.reason, int(record.orphaned), record.created_at),
            )
            self.db.commit()

    def get(self, tx_id: str) -> PendingTransaction | None:
        row = self.db.execute("SELECT * FROM transactions WHERE id = ?", (tx_id,)).fetchone()
        return self._row_to_record(row) if row else None

    def list_transactions(self, state: TxState | None = None, kind: OperationKind | None = None,
                          limit: int = 100) -> list[PendingTransaction]:
        query = "SELECT * FROM transactions WHERE 1 = 1"
        params: list = []
        if state is not None:
            query += " AND state = ?"
            params.append(state.value)
        if kind is not None:
            query += " AND kind = ?"
            params.append(kind.value)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_record(r) for r in self.db.execute(query, params).fetchall()]

    def recent_deploys(self, limit: int = 100) -> list[PendingTransaction]:
        """Confirmed or timed-out deploys not yet flagged as orphans (sweep input)."""
        rows = self.db.execute(
            "SELECT * FROM transactions WHERE kind = ? AND state IN (?, ?) AND orphaned = 0 "
            "ORDER BY created_at DESC LIMIT ?",
            (OperationKind.DEPLOY.value, TxState.CONFIRMED.value, TxState.TIMED_OUT.value, limit),
        ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def outstanding(self, min_nonce: int = 0) -> list[PendingTransaction]:
        """Submitted or timed-out records, lowest nonce first."""
        rows = self.db.execute(
            "SELECT * FROM transactions WHERE state IN (?, ?) AND nonce >= ? ORDER BY nonce",
            (TxState.SUBMITTED.value, TxState.TIMED_OUT.value, min_nonce),
        ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def mark_orphaned(self, tx_id: str) -> bool:
        with self._lock:
            cursor = self.db.execute(
                "UPDATE transactions SET orphaned = 1 WHERE id = ?", (tx_id,)
            )
            self.db.commit()
            return cursor.rowcount > 0

    def _row_to_record(self, row) -> PendingTransaction:
        return PendingTransaction(
            id=row["id"],
            kind=OperationKind(row["kind"]),
            nonce=row["nonce"],
            target=row["target"],
            payload=json.loads(row["payload"]),
            value=int(row["value"]),
            listing_id=row["listing_id"],
            gas=row["gas"],
            gas_price=int(row["gas_price"]) if row["gas_price"] is not None else None,
            state=TxState(row["state"]),
            tx_hashes=json.loads(row["tx_hashes"]),
            submitted_at=row["submitted_at"],
            result_address=row["result_address"],
            reason=row["reason"],
            orphaned=bool(row["orphaned"]),
            created_at=row["created_at"],
        )

    # --- signing ---

    def _calldata(self, kind: OperationKind, payload: dict) -> str:
        if kind == OperationKind.DEPLOY:
            return agreement.encode_deploy(
                self.bytecode, payload["renter"], payload["content_hash"],
                payload["rent_amount"], payload["deposit_amount"], payload["duration_days"],
            )
        if kind == OperationKind.ACTIVATE:
            return agreement.encode_call(agreement.ACTIVATE_SIGNATURE)
        return agreement.encode_call(agreement.TERMINATE_SIGNATURE)

    def _sign(self, record: PendingTransaction, data: str) -> str:
        unsigned = {
            "chainId": self._chain_id,
            "nonce": record.nonce,
            "gas": record.gas,
            "gasPrice": record.gas_price,
            "value": record.value,
            "data": data,
        }
        if record.target:
            unsigned["to"] = record.target
        signed = self._account.sign_transaction(unsigned)
        raw_tx = getattr(signed, "raw_transaction", None)
        if raw_tx is None:
            raw_tx = signed.rawTransaction
        return "0x" + bytes(raw_tx).hex()

    # --- admission ---

    def _sync_nonce(self):
        """Check the cursor against the node's pending nonce before every assignment.

        In steady state they agree, since the node counts our own submissions.
        A lower chain value means a gap (something we sent was evicted), a
        higher one means the key was used elsewhere. Either way the chain wins.
        """
        chain_next = self.ledger.get_nonce(self.address, "pending")
        if self._next_nonce == chain_next and not self._resync_requested:
            return
        if self._next_nonce is not None and self._next_nonce != chain_next:
            log.warning("nonce_cursor_drift", signer=self.address, cursor=self._next_nonce,
                        chain=chain_next)
        self._resync_requested = False
        self._next_nonce = chain_next
        self._release_lost(chain_next)
        log.info("nonce_synced", signer=self.address, nonce=chain_next)

    def _release_lost(self, next_nonce: int):
        """Fail outstanding records whose nonce is about to be reassigned."""
        for record in self.outstanding(min_nonce=next_nonce):
            if any(self.ledger.transaction_known(h) for h in record.tx_hashes):
                continue
            self._fail(record, f"nonce {record.nonce} dropped from the mempool; reassigned")

    def _admit(self, record: PendingTransaction, data: str):
        """Assign nonce, sign, submit. Runs in a worker thread under the admission lock."""
        if self._chain_id is None:
            self._chain_id = self.ledger.chain_id()
        self._sync_nonce()

        gas_price = self.ledger.gas_price()
        call = {"from": self.address, "to": record.target, "value": record.value, "data": data}
        try:
            estimate = self.ledger.estimate_gas(call)
            gas = estimate * GAS_HEADROOM[0] // GAS_HEADROOM[1]
        except (ExecutionReverted, RpcUnavailable):
            raise
        except LedgerError as e:
            gas = self.gas_limit_fallback
            log.warning("gas_estimate_failed", kind=record.kind.value, error=str(e), fallback=gas)

        balance = self.ledger.get_balance(self.address)
        cost = gas * gas_price + record.value
        if balance < cost:
            raise InsufficientFunds(
                f"signer {self.address} has {wei_to_eth(balance)} ETH, "
                f"operation needs {wei_to_eth(cost)} ETH"
            )

        record.nonce = self._next_nonce
        record.gas = gas
        record.gas_price = gas_price
        raw_tx = self._sign(record, data)
        try:
            tx_hash = self.ledger.send_raw_transaction(raw_tx)
        except RpcUnavailable as e:
            # Unknown whether the node accepted it: track it as submitted and
            # let the outcome wait (or a replacement) settle it. The cursor is
            # re-read from the chain before the next admission.
            tx_hash = tx_hash_of(raw_tx)
            self._next_nonce = None
            log.warning("tx_send_unacknowledged", tx_id=record.id, nonce=record.nonce, error=str(e))
        else:
            self._next_nonce = record.nonce + 1
        self._nonce_rejections = 0
        record.tx_hashes = [tx_hash]
        record.state = TxState.SUBMITTED
        record.submitted_at = time.time()

    async def enqueue(self, kind: OperationKind, payload: dict | None = None,
                      target: str | None = None, value: int = 0,
                      listing_id: str | None = None) -> PendingTransaction:
        """Admit a mutating operation. Returns once it is submitted.

        Raises ChainRejected if the call would revert (checked before a nonce
        is consumed), SignerFailure / QueueHalted / LedgerUnavailable if it
        could not be submitted.
        """
        record = PendingTransaction(kind=kind, payload=payload or {}, target=target,
                                    value=value, listing_id=listing_id)
        self._save(record)
        data = self._calldata(kind, record.payload)

        async with self._admission:
            if self.halted:
                self._fail(record, "queue halted: operator resync required")
                raise QueueHalted("Admission halted after repeated nonce rejections; resync required")
            try:
                await asyncio.to_thread(self._admit, record, data)
            except ExecutionReverted as e:
                self._fail(record, e.reason)
                raise ChainRejected(e.reason) from e
            except InsufficientFunds as e:
                self._fail(record, str(e))
                log.error("signer_underfunded", signer=self.address, error=str(e))
                raise SignerFailure(str(e)) from e
            except NonceTooLow as e:
                self._fail(record, str(e))
                self._nonce_rejected(str(e))
                raise SignerFailure(f"Nonce conflict on signer {self.address}: {e}") from e
            except RpcUnavailable as e:
                self._fail(record, str(e))
                self._next_nonce = None
                raise LedgerUnavailable(str(e)) from e
            except LedgerError as e:
                self._fail(record, str(e))
                self._next_nonce = None
                raise SignerFailure(str(e)) from e

        self._save(record)
        log.info("tx_submitted", tx_id=record.id, kind=kind.value, nonce=record.nonce,
                 tx_hash=record.tx_hash, listing_id=listing_id, value=record.value)
        return record

    def _fail(self, record: PendingTransaction, reason: str):
        record.state = TxState.FAILED
        record.reason = reason
        self._save(record)
        log.warning("tx_failed", tx_id=record.id, kind=record.kind.value, reason=reason)

    def _nonce_rejected(self, error: str):
        """External interference with the signer: resync, halt if it keeps happening."""
        self._next_nonce = None
        self._nonce_rejections += 1
        if self._nonce_rejections >= MAX_NONCE_RESYNCS:
            self.halted = True
            log.error("queue_halted", signer=self.address, rejections=self._nonce_rejections,
                      error=error)
        else:
            log.warning("nonce_rejected", signer=self.address, rejections=self._nonce_rejections,
                        error=error)

    # --- outcome ---

    async def await_outcome(self, handle: PendingTransaction, timeout: float) -> TxOutcome:
        """Suspend until the transaction is included or timeout elapses.

        Never raises for reverts: they come back as TxState.REVERTED with the
        contract's reason. A timeout ends the wait, not the transaction.
        """
        record = self.get(handle.id) or handle
        if record.state in (TxState.CONFIRMED, TxState.REVERTED, TxState.FAILED):
            return self._recorded_outcome(record)

        found = await self.ledger.wait_for_receipt(record.tx_hashes, timeout, self.poll_interval)
        if found is None:
            return await self._settle_unmined(record)
        return await self._apply_receipt(record, *found)

    def _recorded_outcome(self, record: PendingTransaction) -> TxOutcome:
        if record.state == TxState.CONFIRMED:
            return TxOutcome(record.state, record.tx_hash, record.result_address)
        return TxOutcome(record.state, record.tx_hash, reason=record.reason)

    async def _apply_receipt(self, record: PendingTransaction, tx_hash: str, receipt: dict) -> TxOutcome:
        if receipt["status"] == 1:
            record.state = TxState.CONFIRMED
            record.result_address = receipt.get("contract_address")
            record.reason = ""
            self._save(record)
            log.info("tx_confirmed", tx_id=record.id, kind=record.kind.value, tx_hash=tx_hash,
                     block=receipt.get("block_number"), result_address=record.result_address)
            return TxOutcome(TxState.CONFIRMED, tx_hash, record.result_address)

        try:
            reason = await asyncio.to_thread(self.ledger.revert_reason, tx_hash, receipt)
        except LedgerError as e:
            reason = f"execution reverted ({e})"
        record.state = TxState.REVERTED
        record.reason = reason
        self._save(record)
        log.info("tx_reverted", tx_id=record.id, kind=record.kind.value, tx_hash=tx_hash, reason=reason)
        return TxOutcome(TxState.REVERTED, tx_hash, reason=reason)

    async def _lookup_receipt(self, tx_hashes: list[str]) -> tuple[str, dict] | None:
        """One strict pass: None only if every lookup succeeded and found nothing."""
        failure = None
        for tx_hash in tx_hashes:
            try:
                receipt = await asyncio.to_thread(self.ledger.get_receipt, tx_hash)
            except RpcUnavailable as e:
                failure = e
                continue
            if receipt is not None:
                return tx_hash, receipt
        if failure is not None:
            raise failure
        return None

    async def _known(self, tx_hashes: list[str]) -> bool:
        for tx_hash in tx_hashes:
            if await asyncio.to_thread(self.ledger.transaction_known, tx_hash):
                return True
        return False

    async def _settle_unmined(self, record: PendingTransaction) -> TxOutcome:
        """No receipt in time: timed out, unless the nonce is spent or was lost.

        Spent: the chain moved past our nonce without any of our hashes.
        Lost: the node neither mined nor holds any of our hashes, so the
        nonce is free and will be reassigned. Both are final for this record
        and ask the next admission to resync. Any lookup failure leaves the
        record timed out for a later pass.
        """
        current = self.get(record.id)
        if current is not None and current.state in (TxState.CONFIRMED, TxState.REVERTED, TxState.FAILED):
            return self._recorded_outcome(current)

        if record.nonce is not None:
            try:
                latest = await asyncio.to_thread(self.ledger.get_nonce, self.address, "latest")
                if record.nonce < latest:
                    found = await self._lookup_receipt(record.tx_hashes)
                    if found is not None:
                        return await self._apply_receipt(record, *found)
                    return self._lose(record, f"nonce {record.nonce} consumed by another transaction")
                pending = await asyncio.to_thread(self.ledger.get_nonce, self.address, "pending")
                if pending <= record.nonce and not await self._known(record.tx_hashes):
                    return self._lose(record, f"nonce {record.nonce} dropped from the mempool")
            except RpcUnavailable as e:
                log.warning("tx_settle_deferred", tx_id=record.id, nonce=record.nonce, error=str(e))

        if record.state != TxState.TIMED_OUT:
            record.state = TxState.TIMED_OUT
            self._save(record)
        log.warning("tx_timed_out", tx_id=record.id, kind=record.kind.value, nonce=record.nonce,
                    tx_hash=record.tx_hash, listing_id=record.listing_id)
        return TxOutcome(TxState.TIMED_OUT, record.tx_hash)

    def _lose(self, record: PendingTransaction, reason: str) -> TxOutcome:
        self._resync_requested = True
        self._fail(record, reason)
        return TxOutcome(TxState.FAILED, record.tx_hash, reason=reason)

    # --- replacement / resync ---

    def _rebroadcast(self, record: PendingTransaction, data: str) -> bool:
        """Same nonce, higher fee. Returns False if the nonce is already spent."""
        network_price = self.ledger.gas_price()
        bumped = record.gas_price * REPLACEMENT_BUMP[0] // REPLACEMENT_BUMP[1]
        record.gas_price = max(bumped, record.gas_price + 1, network_price)
        raw_tx = self._sign(record, data)
        try:
            tx_hash = self.ledger.send_raw_transaction(raw_tx)
        except NonceTooLow:
            return False
        record.tx_hashes.append(tx_hash)
        record.state = TxState.SUBMITTED
        record.submitted_at = time.time()
        return True

    async def replace(self, handle: PendingTransaction) -> PendingTransaction:
        """Fee-bump a timed-out transaction, keeping its nonce."""
        record = self.get(handle.id)
        if record is None or record.state != TxState.TIMED_OUT:
            state = record.state.value if record else "unknown"
            raise InvalidStateTransition(f"Only timed-out transactions can be replaced (state: {state})")

        data = self._calldata(record.kind, record.payload)
        async with self._admission:
            if self.halted:
                raise QueueHalted("Admission halted after repeated nonce rejections; resync required")
            if self._chain_id is None:
                self._chain_id = await asyncio.to_thread(self.ledger.chain_id)
            try:
                replaced = await asyncio.to_thread(self._rebroadcast, record, data)
            except InsufficientFunds as e:
                raise SignerFailure(str(e)) from e
            except RpcUnavailable as e:
                raise LedgerUnavailable(str(e)) from e
            except LedgerError as e:
                raise SignerFailure(str(e)) from e

        if replaced:
            self._save(record)
            log.info("tx_replaced", tx_id=record.id, nonce=record.nonce,
                     gas_price=record.gas_price, tx_hash=record.tx_hash)
        else:
            log.info("tx_replacement_skipped", tx_id=record.id, nonce=record.nonce,
                     reason="nonce already mined")
        return record

    async def resync(self) -> int:
        """Operator action: re-read the chain's pending nonce and resume admission."""
        async with self._admission:
            self._resync_requested = True
            try:
                await asyncio.to_thread(self._sync_nonce)
            except RpcUnavailable as e:
                raise LedgerUnavailable(str(e)) from e
            self._nonce_rejections = 0
            was_halted, self.halted = self.halted, False
        log.info("queue_resynced", signer=self.address, nonce=self._next_nonce, was_halted=was_halted)
        return self._next_nonce

    def info(self) -> dict:
        counts = {
            row["state"]: row["n"]
            for row in self.db.execute("SELECT state, COUNT(*) AS n FROM transactions GROUP BY state")
        }
        return {
            "signer": self.address,
            "chain_id": self._chain_id,
            "next_nonce": self._next_nonce,
            "halted": self.halted,
            "transactions": counts,
        }

    def close(self):
        self.db.close()
