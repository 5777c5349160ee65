"""HTTP API for the rentchain platform (FastAPI).

Listing reads come from the local store and never touch the chain.
Agreement reads go through the read aggregator. Writes (deploy, activate,
terminate) go through the lifecycle coordinator, which owns the broadcast
queue and therefore the only signing key.

Every failure is rendered as ``{"error": {"kind": ..., "detail": ...}}``
with the HTTP status of the error kind.
"""

import asyncio
import contextlib

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from rentchain.aggregator import ReadAggregator
from rentchain.broadcast import BroadcastQueue
from rentchain.errors import InvalidRequest, LifecycleError, ListingNotFound
from rentchain.ledger import LedgerError
from rentchain.lifecycle import AgreementCoordinator
from rentchain.protocol import (
    DEFAULT_CONFIRM_TIMEOUT, ListingStatus, OperationKind, RECONCILE_INTERVAL, TxState,
    wei_to_eth,
)
from rentchain.store import ListingStore

log = structlog.get_logger(__name__)


# --- Request models ---

class ListingTerms(BaseModel):
    owner: str
    renter: str
    content_hash: str
    rent_amount: int | str  # wei; decimal strings accepted
    deposit_amount: int | str
    duration_days: int
    title: str = ""
    description: str = ""
    image_url: str = ""

class DeployRequest(BaseModel):
    # Terms may be omitted when deploying an existing draft by listing_id
    owner: str = ""
    renter: str = ""
    content_hash: str = ""
    rent_amount: int | str = 0
    deposit_amount: int | str = 0
    duration_days: int = 0
    listing_id: str | None = None
    title: str = ""
    description: str = ""
    image_url: str = ""

class ListingAction(BaseModel):
    listing_id: str


def _wei(value, name: str) -> int:
    """Amounts arrive as JSON integers or decimal strings; never floats."""
    if isinstance(value, bool):
        raise InvalidRequest(f"{name} must be an integer amount in wei")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text.isdigit():
        raise InvalidRequest(f"{name} must be an integer amount in wei, got {value!r}")
    return int(text)


def _listing_response(listing, **extra) -> dict:
    return {"status": listing.status.value, "listing": listing.to_dict(), **extra}


# --- App factory ---

def create_app(
    store: ListingStore,
    queue: BroadcastQueue,
    aggregator: ReadAggregator | None = None,
    coordinator: AgreementCoordinator | None = None,
    confirm_timeout: float = DEFAULT_CONFIRM_TIMEOUT,
    reconcile_interval: float = RECONCILE_INTERVAL,
) -> FastAPI:
    """Create FastAPI app with injected dependencies.

    With reconcile_interval > 0 a background sweep runs for the lifetime
    of the app.
    """
    aggregator = aggregator or ReadAggregator(queue.ledger)
    coordinator = coordinator or AgreementCoordinator(store, queue, aggregator, confirm_timeout)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        if reconcile_interval > 0:
            task = asyncio.create_task(coordinator.run_periodic_reconcile(reconcile_interval))
            log.info("reconciler_started", interval=reconcile_interval)
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    app = FastAPI(title="Rentchain Platform", version="1.0", lifespan=lifespan)
    app.state.store = store
    app.state.queue = queue
    app.state.aggregator = aggregator
    app.state.coordinator = coordinator

    @app.exception_handler(LifecycleError)
    async def lifecycle_error(request: Request, exc: LifecycleError):
        if exc.http_status >= 500:
            log.warning("request_failed", path=request.url.path, **exc.to_dict())
        return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        detail = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'][1:])}: {err['msg']}" for err in exc.errors()
        )
        err = InvalidRequest(detail)
        return JSONResponse(status_code=err.http_status, content={"error": err.to_dict()})

    def _get_listing(listing_id: str):
        listing = store.get(listing_id)
        if listing is None:
            raise ListingNotFound(f"Listing {listing_id} not found")
        return listing

    # --- Listing reads (store only) ---

    @app.get("/properties")
    async def list_properties(status: str | None = None, limit: int = 100):
        if status is not None:
            try:
                ListingStatus(status)
            except ValueError:
                raise InvalidRequest(f"Unknown status: {status}")
        listings = store.list_all(status=status, limit=min(limit, 500))
        return {"listings": [item.to_dict() for item in listings]}

    @app.get("/property/{listing_id}")
    async def get_property(listing_id: str):
        return {"listing": _get_listing(listing_id).to_dict()}

    @app.get("/properties/by-owner/{owner}")
    async def properties_by_owner(owner: str):
        return {"listings": [item.to_dict() for item in store.list_by_owner(owner)]}

    # --- Chain reads ---

    @app.get("/agreement/{address}")
    async def get_agreement(address: str):
        view = await aggregator.fetch_agreement_view(address)
        return {"contract_address": address, "agreement": view.to_dict()}

    @app.get("/status/{address}")
    async def get_status(address: str):
        flags = await aggregator.fetch_status(address)
        return {"contract_address": address, **flags}

    @app.get("/property/{listing_id}/agreement")
    async def get_property_agreement(listing_id: str):
        listing = _get_listing(listing_id)
        view = await coordinator.agreement_view(listing_id)
        return {
            "listing_id": listing_id,
            "contract_address": listing.contract_address,
            "agreement": view.to_dict(),
        }

    # --- Writes ---

    @app.post("/property")
    async def create_property(req: ListingTerms):
        listing = coordinator.create_draft(
            req.owner, req.renter, req.content_hash,
            _wei(req.rent_amount, "rent_amount"), _wei(req.deposit_amount, "deposit_amount"),
            req.duration_days, title=req.title, description=req.description,
            image_url=req.image_url,
        )
        return _listing_response(listing)

    @app.post("/deploy")
    async def deploy(req: DeployRequest):
        listing = await coordinator.deploy(
            req.owner, req.renter, req.content_hash,
            _wei(req.rent_amount, "rent_amount"), _wei(req.deposit_amount, "deposit_amount"),
            req.duration_days, listing_id=req.listing_id, title=req.title,
            description=req.description, image_url=req.image_url,
        )
        return _listing_response(listing, contract_address=listing.contract_address)

    @app.post("/activate")
    async def activate(req: ListingAction):
        listing = await coordinator.activate(req.listing_id)
        return _listing_response(listing, payment=listing.payment_due)

    @app.post("/terminate")
    async def terminate(req: ListingAction):
        listing = await coordinator.terminate(req.listing_id)
        return _listing_response(listing)

    # --- Operator ---

    @app.post("/property/{listing_id}/reconcile")
    async def reconcile_property(listing_id: str):
        report = await coordinator.reconcile(listing_id)
        return {"report": report.to_dict(), "listing": _get_listing(listing_id).to_dict()}

    @app.post("/property/{listing_id}/resubmit")
    async def resubmit_property(listing_id: str):
        listing = await coordinator.resubmit(listing_id)
        return _listing_response(listing)

    @app.post("/reconcile")
    async def reconcile_all():
        return await coordinator.reconcile_all()

    @app.get("/transactions")
    async def list_transactions(state: str | None = None, kind: str | None = None,
                                limit: int = 100):
        try:
            tx_state = TxState(state) if state else None
            tx_kind = OperationKind(kind) if kind else None
        except ValueError as e:
            raise InvalidRequest(str(e))
        records = queue.list_transactions(state=tx_state, kind=tx_kind, limit=min(limit, 500))
        return {"transactions": [r.to_dict() for r in records]}

    @app.post("/admin/resync")
    async def admin_resync():
        nonce = await queue.resync()
        return {"status": "resynced", "next_nonce": nonce}

    @app.get("/platform_info")
    async def platform_info():
        """Signer identity and queue health."""
        info = queue.info()
        try:
            balance = await asyncio.to_thread(queue.ledger.get_balance, queue.address)
            info["balance_wei"] = balance
            info["balance_eth"] = str(wei_to_eth(balance))
        except LedgerError as e:
            info["balance_error"] = str(e)
        info["confirm_timeout"] = coordinator.confirm_timeout
        info["reconcile_interval"] = reconcile_interval
        info["listings"] = {s.value: len(store.list_all(status=s.value, limit=10_000))
                            for s in ListingStatus}
        return info

    return app
