"""Listing storage for the rentchain platform.

SQLite-backed projection of each rental listing: status, cached contract
address, cached economic terms and drift bookkeeping. A read-model only;
the chain is authoritative for agreement state.

Amounts are wei integers stored as decimal TEXT so they survive beyond
SQLite's 64-bit INTEGER range.
"""

import sqlite3
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field

from rentchain.protocol import ListingStatus, STATUS_TRANSITIONS


@dataclass
class Listing:
    owner: str
    renter: str
    content_hash: str
    rent_amount: int
    deposit_amount: int
    duration_days: int
    id: str = ""
    status: ListingStatus = ListingStatus.DRAFT
    contract_address: str | None = None
    title: str = ""
    description: str = ""
    image_url: str = ""
    last_reconciled_at: float | None = None
    last_known_chain_active: bool | None = None
    last_known_chain_terminated: bool | None = None
    needs_reconcile: bool = False
    pending_tx_id: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def payment_due(self) -> int:
        """Value attached to activateAgreement(): exact wei sum of rent and deposit."""
        return self.rent_amount + self.deposit_amount

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


class ListingStore:
    """SQLite-backed listing storage with state machine enforcement."""

    def __init__(self, db_path: str = ":memory:"):
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        # Enable WAL mode for safe concurrent reads during writes
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS listings (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL DEFAULT 'draft',
                owner TEXT NOT NULL,
                renter TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                rent_amount TEXT NOT NULL,
                deposit_amount TEXT NOT NULL,
                duration_days INTEGER NOT NULL,
                contract_address TEXT UNIQUE,
                title TEXT NOT NULL DEFAULT '',
                description TEXT NOT NULL DEFAULT '',
                image_url TEXT NOT NULL DEFAULT '',
                last_reconciled_at REAL,
                last_known_chain_active INTEGER,
                last_known_chain_terminated INTEGER,
                needs_reconcile INTEGER NOT NULL DEFAULT 0,
                pending_tx_id TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_listing_status ON listings(status)")
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_listing_owner ON listings(owner)")
        self.db.commit()

    def create(self, listing: Listing) -> Listing:
        """Persist a listing in one write. Assigns and returns it with its id."""
        listing.id = listing.id or uuid.uuid4().hex[:16]
        now = time.time()
        listing.created_at = listing.updated_at = now
        self.db.execute(
            "INSERT INTO listings (id, status, owner, renter, content_hash, rent_amount, "
            "deposit_amount, duration_days, contract_address, title, description, image_url, "
            "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (listing.id, listing.status.value, listing.owner, listing.renter,
             listing.content_hash, str(listing.rent_amount), str(listing.deposit_amount),
             listing.duration_days, listing.contract_address, listing.title,
             listing.description, listing.image_url, now, now),
        )
        self.db.commit()
        return listing

    def get(self, listing_id: str) -> Listing | None:
        row = self.db.execute("SELECT * FROM listings WHERE id = ?", (listing_id,)).fetchone()
        if not row:
            return None
        return self._row_to_listing(row)

    def get_by_contract(self, contract_address: str) -> Listing | None:
        row = self.db.execute(
            "SELECT * FROM listings WHERE contract_address = ?", (contract_address,)
        ).fetchone()
        return self._row_to_listing(row) if row else None

    def list_all(self, status: str | None = None, limit: int = 100) -> list[Listing]:
        if status:
            rows = self.db.execute(
                "SELECT * FROM listings WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                (status, limit),
            ).fetchall()
        else:
            rows = self.db.execute(
                "SELECT * FROM listings ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._row_to_listing(r) for r in rows]

    def list_by_owner(self, owner: str) -> list[Listing]:
        rows = self.db.execute(
            "SELECT * FROM listings WHERE lower(owner) = lower(?) ORDER BY created_at DESC",
            (owner,),
        ).fetchall()
        return [self._row_to_listing(r) for r in rows]

    def list_reconcilable(self) -> list[Listing]:
        """Non-terminated listings with a deployed contract (periodic sweep set)."""
        rows = self.db.execute(
            "SELECT * FROM listings WHERE contract_address IS NOT NULL AND status != ? "
            "ORDER BY updated_at",
            (ListingStatus.TERMINATED.value,),
        ).fetchall()
        return [self._row_to_listing(r) for r in rows]

    def update_status(self, listing_id: str, status: ListingStatus) -> bool:
        """Move a listing along a legal edge. Raises ValueError otherwise."""
        with self._lock:
            row = self.db.execute("SELECT status FROM listings WHERE id = ?", (listing_id,)).fetchone()
            if not row:
                return False
            current = ListingStatus(row["status"])
            if status not in STATUS_TRANSITIONS[current]:
                raise ValueError(f"Invalid state transition: {current.value} -> {status.value}")
            cursor = self.db.execute(
                "UPDATE listings SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (status.value, time.time(), listing_id, current.value),
            )
            self.db.commit()
            return cursor.rowcount > 0

    def attach_contract(self, listing_id: str, contract_address: str) -> bool:
        """Record the deployed address and make a draft available. Set-once."""
        with self._lock:
            cursor = self.db.execute(
                "UPDATE listings SET contract_address = ?, status = ?, updated_at = ? "
                "WHERE id = ? AND contract_address IS NULL AND status = ?",
                (contract_address, ListingStatus.AVAILABLE.value, time.time(),
                 listing_id, ListingStatus.DRAFT.value),
            )
            self.db.commit()
            return cursor.rowcount > 0

    def set_pending_tx(self, listing_id: str, tx_id: str) -> bool:
        """Record the in-flight transaction as soon as it is submitted."""
        cursor = self.db.execute(
            "UPDATE listings SET pending_tx_id = ?, updated_at = ? WHERE id = ?",
            (tx_id, time.time(), listing_id),
        )
        self.db.commit()
        return cursor.rowcount > 0

    def mark_pending(self, listing_id: str, tx_id: str) -> bool:
        """Flag for reconciliation after a timed-out outcome."""
        cursor = self.db.execute(
            "UPDATE listings SET needs_reconcile = 1, pending_tx_id = ?, updated_at = ? WHERE id = ?",
            (tx_id, time.time(), listing_id),
        )
        self.db.commit()
        return cursor.rowcount > 0

    def clear_pending(self, listing_id: str) -> bool:
        cursor = self.db.execute(
            "UPDATE listings SET needs_reconcile = 0, pending_tx_id = NULL, updated_at = ? WHERE id = ?",
            (time.time(), listing_id),
        )
        self.db.commit()
        return cursor.rowcount > 0

    def flag_for_reconcile(self, listing_id: str) -> bool:
        cursor = self.db.execute(
            "UPDATE listings SET needs_reconcile = 1 WHERE id = ?", (listing_id,)
        )
        self.db.commit()
        return cursor.rowcount > 0

    def record_chain_view(self, listing_id: str, is_active: bool, is_terminated: bool,
                          at: float | None = None) -> bool:
        """Drift bookkeeping from the latest authoritative read."""
        cursor = self.db.execute(
            "UPDATE listings SET last_reconciled_at = ?, last_known_chain_active = ?, "
            "last_known_chain_terminated = ? WHERE id = ?",
            (at or time.time(), int(is_active), int(is_terminated), listing_id),
        )
        self.db.commit()
        return cursor.rowcount > 0

    def _row_to_listing(self, row) -> Listing:
        def _flag(value):
            return None if value is None else bool(value)

        return Listing(
            id=row["id"],
            status=ListingStatus(row["status"]),
            owner=row["owner"],
            renter=row["renter"],
            content_hash=row["content_hash"],
            rent_amount=int(row["rent_amount"]),
            deposit_amount=int(row["deposit_amount"]),
            duration_days=row["duration_days"],
            contract_address=row["contract_address"],
            title=row["title"],
            description=row["description"],
            image_url=row["image_url"],
            last_reconciled_at=row["last_reconciled_at"],
            last_known_chain_active=_flag(row["last_known_chain_active"]),
            last_known_chain_terminated=_flag(row["last_known_chain_terminated"]),
            needs_reconcile=bool(row["needs_reconcile"]),
            pending_tx_id=row["pending_tx_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def close(self):
        self.db.close()
