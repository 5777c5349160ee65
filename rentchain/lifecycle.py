"""Agreement lifecycle coordinator.

Drives each listing through

    draft --deploy--> available --activate--> occupied --terminate--> terminated
                      available --terminate--> terminated

against the broadcast queue, and writes the listing store only from
confirmed outcomes. Timed-out operations leave the listing at its prior
status with the transaction recorded as pending; reconciliation against the
chain (always authoritative) settles them.

One mutating operation (or reconciliation) per listing at a time: a second
caller for the same listing is rejected immediately, independent of the
signer-level serialization in the queue.
"""

import asyncio
import contextlib
import threading
import time
from dataclasses import asdict, dataclass

import structlog
from eth_utils import is_address, to_checksum_address

from rentchain.aggregator import AgreementView, ReadAggregator
from rentchain.broadcast import BroadcastQueue, PendingTransaction, TxOutcome
from rentchain.errors import (
    ChainRejected, ConfirmationTimeout, DriftDetected, InvalidRequest,
    InvalidStateTransition, LifecycleError, ListingNotFound, SignerFailure,
)
from rentchain.protocol import (
    DEFAULT_CONFIRM_TIMEOUT, ListingStatus, OPERATION_TARGET, OperationKind,
    STATUS_RANK, STATUS_TRANSITIONS, TxState, chain_status,
)
from rentchain.store import Listing, ListingStore

log = structlog.get_logger(__name__)


@dataclass
class ReconcileReport:
    listing_id: str
    previous_status: str
    status: str
    chain_status: str
    is_active: bool
    is_terminated: bool
    drift: bool = False
    corrected: bool = False
    pending_cleared: bool = False
    detail: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


def _validate_terms(owner, renter, content_hash, rent_amount, deposit_amount, duration_days):
    for name, address in (("owner", owner), ("renter", renter)):
        if not isinstance(address, str) or not is_address(address):
            raise InvalidRequest(f"Invalid {name} address: {address!r}")
    if not isinstance(content_hash, str) or not content_hash.strip():
        raise InvalidRequest("content_hash is required")
    for name, amount in (("rent_amount", rent_amount), ("deposit_amount", deposit_amount)):
        # bool is an int subclass; floats never carry wei
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidRequest(f"{name} must be an integer amount in wei, got {type(amount).__name__}")
        if amount < 0 or amount >= 2**256:
            raise InvalidRequest(f"{name} out of range: {amount}")
    if isinstance(duration_days, bool) or not isinstance(duration_days, int) or duration_days <= 0:
        raise InvalidRequest(f"duration_days must be a positive integer, got {duration_days!r}")


class AgreementCoordinator:
    def __init__(self, store: ListingStore, queue: BroadcastQueue, aggregator: ReadAggregator,
                 confirm_timeout: float = DEFAULT_CONFIRM_TIMEOUT):
        self.store = store
        self.queue = queue
        self.aggregator = aggregator
        self.confirm_timeout = confirm_timeout
        self._inflight: set[str] = set()
        self._inflight_lock = threading.Lock()

    # --- helpers ---

    @contextlib.asynccontextmanager
    async def _exclusive(self, listing_id: str):
        """Per-listing in-flight marker."""
        with self._inflight_lock:
            if listing_id in self._inflight:
                raise InvalidStateTransition(f"Listing {listing_id} already has an operation in flight")
            self._inflight.add(listing_id)
        try:
            yield
        finally:
            with self._inflight_lock:
                self._inflight.discard(listing_id)

    def is_busy(self, listing_id: str) -> bool:
        return listing_id in self._inflight

    def _load(self, listing_id: str) -> Listing:
        listing = self.store.get(listing_id)
        if listing is None:
            raise ListingNotFound(f"Listing {listing_id} not found")
        return listing

    def _require(self, listing: Listing, kind: OperationKind):
        target = OPERATION_TARGET[kind]
        if target not in STATUS_TRANSITIONS[listing.status]:
            raise InvalidStateTransition(
                f"Cannot {kind.value} listing {listing.id}: status is {listing.status.value}"
            )
        if kind != OperationKind.DEPLOY and not listing.contract_address:
            raise InvalidStateTransition(f"Listing {listing.id} has no contract address")
        if listing.pending_tx_id:
            raise InvalidStateTransition(
                f"Listing {listing.id} has an unresolved transaction {listing.pending_tx_id}; "
                "reconcile before retrying"
            )

    # --- deploy ---

    def create_draft(self, owner: str, renter: str, content_hash: str, rent_amount: int,
                     deposit_amount: int, duration_days: int, title: str = "",
                     description: str = "", image_url: str = "") -> Listing:
        """Persist a draft listing (no chain interaction)."""
        _validate_terms(owner, renter, content_hash, rent_amount, deposit_amount, duration_days)
        listing = Listing(
            owner=to_checksum_address(owner), renter=to_checksum_address(renter),
            content_hash=content_hash, rent_amount=rent_amount, deposit_amount=deposit_amount,
            duration_days=duration_days, title=title, description=description, image_url=image_url,
        )
        listing = self.store.create(listing)
        log.info("draft_created", listing_id=listing.id, owner=listing.owner)
        return listing

    async def deploy(self, owner: str, renter: str, content_hash: str, rent_amount: int,
                     deposit_amount: int, duration_days: int, listing_id: str | None = None,
                     title: str = "", description: str = "", image_url: str = "") -> Listing:
        """Deploy an agreement and return the now-available listing.

        With listing_id, the existing draft is deployed with its stored terms.
        Otherwise a fresh listing is built and persisted only once the deploy
        confirms.
        """
        if listing_id:
            return await self.deploy_listing(listing_id)
        _validate_terms(owner, renter, content_hash, rent_amount, deposit_amount, duration_days)
        listing = Listing(
            owner=to_checksum_address(owner), renter=to_checksum_address(renter),
            content_hash=content_hash, rent_amount=rent_amount, deposit_amount=deposit_amount,
            duration_days=duration_days, title=title, description=description, image_url=image_url,
        )
        return await self._deploy(listing)

    async def deploy_listing(self, listing_id: str) -> Listing:
        """Deploy the agreement for an existing draft, using its stored terms."""
        async with self._exclusive(listing_id):
            listing = self._load(listing_id)
            self._require(listing, OperationKind.DEPLOY)
            return await self._deploy(listing)

    async def _deploy(self, listing: Listing) -> Listing:
        payload = {
            "owner": listing.owner,
            "renter": listing.renter,
            "content_hash": listing.content_hash,
            "rent_amount": listing.rent_amount,
            "deposit_amount": listing.deposit_amount,
            "duration_days": listing.duration_days,
        }
        handle = await self.queue.enqueue(OperationKind.DEPLOY, payload, listing_id=listing.id or None)
        outcome = await self.queue.await_outcome(handle, self.confirm_timeout)

        if outcome.state == TxState.REVERTED:
            raise ChainRejected(outcome.reason)
        if outcome.state == TxState.FAILED:
            raise SignerFailure(outcome.reason)
        if outcome.state != TxState.CONFIRMED:
            log.warning("deploy_unconfirmed", tx_id=handle.id, listing_id=listing.id or None)
            raise ConfirmationTimeout(
                "Deploy not confirmed in time; it may still land and will be picked up "
                "by the orphaned-deploy sweep",
                tx_id=handle.id, tx_hash=outcome.tx_hash or "",
            )

        if listing.id:
            if not self.store.attach_contract(listing.id, outcome.result_address):
                self.queue.mark_orphaned(handle.id)
                log.error("orphaned_deploy", tx_id=handle.id, listing_id=listing.id,
                          contract=outcome.result_address, reason="draft no longer accepts a contract")
                raise InvalidStateTransition(f"Listing {listing.id} already has a contract")
        else:
            listing.status = ListingStatus.AVAILABLE
            listing.contract_address = outcome.result_address
            self.store.create(listing)
        log.info("listing_deployed", listing_id=listing.id, contract=outcome.result_address,
                 tx_hash=outcome.tx_hash)
        return self.store.get(listing.id)

    # --- activate / terminate ---

    async def activate(self, listing_id: str) -> Listing:
        async with self._exclusive(listing_id):
            listing = self._load(listing_id)
            self._require(listing, OperationKind.ACTIVATE)
            return await self._transact(listing, OperationKind.ACTIVATE, listing.payment_due)

    async def terminate(self, listing_id: str) -> Listing:
        async with self._exclusive(listing_id):
            listing = self._load(listing_id)
            self._require(listing, OperationKind.TERMINATE)
            return await self._transact(listing, OperationKind.TERMINATE, 0)

    async def _transact(self, listing: Listing, kind: OperationKind, value: int) -> Listing:
        handle = await self.queue.enqueue(kind, target=listing.contract_address, value=value,
                                          listing_id=listing.id)
        # Survives a crash mid-wait: reconcile settles it on restart
        self.store.set_pending_tx(listing.id, handle.id)
        outcome = await self.queue.await_outcome(handle, self.confirm_timeout)
        return self._apply_outcome(listing, handle, outcome)

    def _apply_outcome(self, listing: Listing, handle: PendingTransaction,
                       outcome: TxOutcome) -> Listing:
        if outcome.state == TxState.CONFIRMED:
            target = OPERATION_TARGET[handle.kind]
            current = self._load(listing.id)
            if current.status != target:
                self.store.update_status(listing.id, target)
            self.store.clear_pending(listing.id)
            log.info("listing_transitioned", listing_id=listing.id, kind=handle.kind.value,
                     status=target.value, tx_hash=outcome.tx_hash)
            return self._load(listing.id)

        if outcome.state == TxState.TIMED_OUT:
            self.store.mark_pending(listing.id, handle.id)
            raise ConfirmationTimeout(
                f"{handle.kind.value} for listing {listing.id} not confirmed in time; "
                "listing flagged for reconciliation",
                tx_id=handle.id, tx_hash=outcome.tx_hash or "",
            )

        if self._load(listing.id).pending_tx_id == handle.id:
            self.store.clear_pending(listing.id)
        if outcome.state == TxState.REVERTED:
            raise ChainRejected(outcome.reason)
        raise SignerFailure(outcome.reason)

    async def resubmit(self, listing_id: str) -> Listing:
        """Fee-bump the listing's outstanding transaction and wait for it again."""
        async with self._exclusive(listing_id):
            listing = self._load(listing_id)
            if not listing.pending_tx_id:
                raise InvalidStateTransition(f"Listing {listing_id} has no outstanding transaction")
            handle = self.queue.get(listing.pending_tx_id)
            if handle is None:
                self.store.clear_pending(listing_id)
                raise InvalidStateTransition(f"Transaction {listing.pending_tx_id} is unknown")
            if handle.state == TxState.TIMED_OUT:
                handle = await self.queue.replace(handle)
            outcome = await self.queue.await_outcome(handle, self.confirm_timeout)
            return self._apply_outcome(listing, handle, outcome)

    # --- reads ---

    async def agreement_view(self, listing_id: str) -> AgreementView:
        listing = self._load(listing_id)
        if not listing.contract_address:
            raise InvalidStateTransition(f"Listing {listing_id} has no deployed agreement")
        return await self.aggregator.fetch_agreement_view(listing.contract_address)

    # --- reconciliation ---

    async def reconcile(self, listing_id: str) -> ReconcileReport:
        """Bring the stored projection in line with the chain."""
        async with self._exclusive(listing_id):
            return await self._reconcile(self._load(listing_id))

    async def _reconcile(self, listing: Listing) -> ReconcileReport:
        if not listing.contract_address:
            raise InvalidStateTransition(f"Listing {listing.id} has no contract to reconcile")

        view = await self.aggregator.fetch_agreement_view(listing.contract_address)
        observed = chain_status(view.is_active, view.is_terminated)
        self.store.record_chain_view(listing.id, view.is_active, view.is_terminated, time.time())

        report = ReconcileReport(
            listing_id=listing.id,
            previous_status=listing.status.value,
            status=listing.status.value,
            chain_status=observed.value,
            is_active=view.is_active,
            is_terminated=view.is_terminated,
        )
        regressed = False
        if observed != listing.status:
            report.drift = True
            drift = DriftDetected(
                f"Listing {listing.id} stored as {listing.status.value}, chain shows {observed.value}"
            )
            report.detail = drift.detail
            if STATUS_RANK[observed] > STATUS_RANK[listing.status]:
                self.store.update_status(listing.id, observed)
                report.corrected = True
                report.status = observed.value
                log.warning("drift_detected", listing_id=listing.id, corrected=True, **drift.to_dict())
            else:
                # Never walk a listing backwards; leave it flagged for an operator
                regressed = True
                self.store.flag_for_reconcile(listing.id)
                log.error("drift_regression", listing_id=listing.id, corrected=False, **drift.to_dict())

        if (view.rent_amount, view.deposit_amount) != (listing.rent_amount, listing.deposit_amount):
            log.error("terms_mismatch", listing_id=listing.id, contract=listing.contract_address,
                      chain_rent=view.rent_amount, chain_deposit=view.deposit_amount,
                      stored_rent=listing.rent_amount, stored_deposit=listing.deposit_amount)

        still_pending = False
        if listing.pending_tx_id:
            report.pending_cleared = await self._settle_pending(listing, observed)
            still_pending = not report.pending_cleared
        if not still_pending and not regressed:
            self.store.clear_pending(listing.id)
        return report

    async def _settle_pending(self, listing: Listing, observed: ListingStatus) -> bool:
        """True once the listing's timed-out transaction can no longer change anything."""
        record = self.queue.get(listing.pending_tx_id)
        if record is None:
            return True
        outcome = await self.queue.await_outcome(record, 0)
        target = OPERATION_TARGET[record.kind]
        if outcome.state == TxState.CONFIRMED and STATUS_RANK[target] > STATUS_RANK[observed]:
            # Landed between the chain read and now
            current = self._load(listing.id)
            if target in STATUS_TRANSITIONS[current.status]:
                self.store.update_status(listing.id, target)
        if outcome.state in (TxState.CONFIRMED, TxState.REVERTED, TxState.FAILED):
            log.info("pending_tx_settled", listing_id=listing.id, tx_id=record.id,
                     state=outcome.state.value)
            return True
        if STATUS_RANK[observed] >= STATUS_RANK[target]:
            # Chain already reflects the intended state; a late inclusion would revert
            log.info("pending_tx_superseded", listing_id=listing.id, tx_id=record.id)
            return True
        return False

    async def reconcile_all(self) -> dict:
        """Periodic sweep: every non-terminated deployed listing, then orphaned deploys."""
        reconciled, errors, skipped = [], [], []
        for listing in self.store.list_reconcilable():
            if self.is_busy(listing.id):
                skipped.append(listing.id)
                continue
            try:
                report = await self.reconcile(listing.id)
            except LifecycleError as e:
                errors.append({"listing_id": listing.id, **e.to_dict()})
                continue
            reconciled.append(report.to_dict())
        orphans = await self.recover_orphaned_deploys()
        log.info("reconcile_sweep", checked=len(reconciled),
                 drift=sum(1 for r in reconciled if r["drift"]),
                 errors=len(errors), skipped=len(skipped), orphans=len(orphans))
        return {"reconciled": reconciled, "errors": errors, "skipped": skipped, "orphans": orphans}

    async def recover_orphaned_deploys(self, limit: int = 100) -> list[dict]:
        """Find deploys that landed without a listing: attach to their draft or flag them."""
        results = []
        for record in self.queue.recent_deploys(limit):
            if record.state == TxState.TIMED_OUT:
                outcome = await self.queue.await_outcome(record, 0)
                if outcome.state != TxState.CONFIRMED:
                    continue
                address = outcome.result_address
            elif record.state == TxState.CONFIRMED:
                address = record.result_address
            else:
                continue
            if not address or self.store.get_by_contract(address):
                continue

            draft = self.store.get(record.listing_id) if record.listing_id else None
            if (draft is not None and draft.status == ListingStatus.DRAFT
                    and not self.is_busy(draft.id)
                    and self.store.attach_contract(draft.id, address)):
                log.warning("orphaned_deploy_attached", tx_id=record.id, listing_id=draft.id,
                            contract=address)
                results.append({"tx_id": record.id, "contract_address": address,
                                "listing_id": draft.id, "action": "attached"})
                continue

            self.queue.mark_orphaned(record.id)
            log.error("orphaned_deploy", tx_id=record.id, contract=address,
                      listing_id=record.listing_id, payload=record.payload)
            results.append({"tx_id": record.id, "contract_address": address,
                            "listing_id": record.listing_id, "action": "flagged"})
        return results

    async def run_periodic_reconcile(self, interval: float):
        """Background self-healing loop. Runs until cancelled."""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reconcile_all()
            except Exception:
                log.exception("reconcile_sweep_failed")
