"""Platform API client for rentchain.

Thin HTTP client with a pluggable transport interface. The server holds the
only signing key, so requests carry no signatures.
"""

from abc import ABC, abstractmethod

import httpx


class RentchainAPIError(Exception):
    """Structured failure returned by the platform."""

    def __init__(self, status_code: int, kind: str, detail: str, payload: dict | None = None):
        super().__init__(f"{kind}: {detail}")
        self.status_code = status_code
        self.kind = kind
        self.detail = detail
        self.payload = payload or {}


class Transport(ABC):
    """Override this to talk to the platform some other way."""

    @abstractmethod
    async def post(self, path: str, data: dict | None = None) -> dict:
        ...

    @abstractmethod
    async def get(self, path: str, params: dict | None = None) -> dict:
        ...


def _unwrap(resp: httpx.Response) -> dict:
    if resp.is_success:
        return resp.json()
    try:
        body = resp.json()
    except ValueError:
        body = {}
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        raise RentchainAPIError(resp.status_code, error.get("kind", "unknown"),
                                error.get("detail", ""), error)
    resp.raise_for_status()
    return body


class HTTPTransport(Transport):
    """Default. Talks to the platform over HTTP."""

    def __init__(self, base_url: str = "http://localhost:8000", timeout: float = 180.0,
                 client: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        # Writes block until confirmation, so the default outlasts the server's confirm timeout
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def post(self, path: str, data: dict | None = None) -> dict:
        resp = await self.client.post(path, json=data or {})
        return _unwrap(resp)

    async def get(self, path: str, params: dict | None = None) -> dict:
        resp = await self.client.get(path, params=params)
        return _unwrap(resp)

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class RentchainClient:
    """High-level client for the rentchain platform."""

    def __init__(self, transport: Transport | None = None, base_url: str = "http://localhost:8000"):
        self.transport = transport or HTTPTransport(base_url)

    # --- listings ---

    async def list_listings(self, status: str | None = None, limit: int = 100) -> list[dict]:
        params = {"limit": limit}
        if status:
            params["status"] = status
        resp = await self.transport.get("/properties", params)
        return resp["listings"]

    async def get_listing(self, listing_id: str) -> dict:
        resp = await self.transport.get(f"/property/{listing_id}")
        return resp["listing"]

    async def listings_by_owner(self, owner: str) -> list[dict]:
        resp = await self.transport.get(f"/properties/by-owner/{owner}")
        return resp["listings"]

    async def create_draft(self, owner: str, renter: str, content_hash: str, rent_amount: int,
                           deposit_amount: int, duration_days: int, **metadata) -> dict:
        """Create a draft listing. Returns the listing."""
        resp = await self.transport.post("/property", {
            "owner": owner, "renter": renter, "content_hash": content_hash,
            # amounts as strings so no JSON layer rounds them
            "rent_amount": str(rent_amount), "deposit_amount": str(deposit_amount),
            "duration_days": duration_days, **metadata,
        })
        return resp["listing"]

    # --- agreement lifecycle ---

    async def deploy(self, owner: str = "", renter: str = "", content_hash: str = "",
                     rent_amount: int = 0, deposit_amount: int = 0, duration_days: int = 0,
                     listing_id: str | None = None, **metadata) -> dict:
        """Deploy an agreement (fresh, or for a draft by listing_id)."""
        payload = {
            "owner": owner, "renter": renter, "content_hash": content_hash,
            "rent_amount": str(rent_amount), "deposit_amount": str(deposit_amount),
            "duration_days": duration_days, **metadata,
        }
        if listing_id:
            payload["listing_id"] = listing_id
        return await self.transport.post("/deploy", payload)

    async def activate(self, listing_id: str) -> dict:
        return await self.transport.post("/activate", {"listing_id": listing_id})

    async def terminate(self, listing_id: str) -> dict:
        return await self.transport.post("/terminate", {"listing_id": listing_id})

    # --- chain reads ---

    async def get_agreement(self, contract_address: str) -> dict:
        resp = await self.transport.get(f"/agreement/{contract_address}")
        return resp["agreement"]

    async def get_status(self, contract_address: str) -> dict:
        return await self.transport.get(f"/status/{contract_address}")

    # --- operator ---

    async def reconcile(self, listing_id: str | None = None) -> dict:
        """Reconcile one listing, or run the full sweep when listing_id is None."""
        if listing_id:
            return await self.transport.post(f"/property/{listing_id}/reconcile")
        return await self.transport.post("/reconcile")

    async def resubmit(self, listing_id: str) -> dict:
        return await self.transport.post(f"/property/{listing_id}/resubmit")

    async def transactions(self, state: str | None = None, kind: str | None = None) -> list[dict]:
        params = {k: v for k, v in (("state", state), ("kind", kind)) if v}
        resp = await self.transport.get("/transactions", params)
        return resp["transactions"]

    async def resync(self) -> dict:
        return await self.transport.post("/admin/resync")

    async def platform_info(self) -> dict:
        return await self.transport.get("/platform_info")
