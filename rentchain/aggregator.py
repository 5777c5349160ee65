"""Read aggregator: the authoritative on-chain view of one agreement.

All accessors are independent, side-effect-free calls, so they are issued
concurrently and joined. Any single failure fails the whole view; a partial
view would feed stale fields into reconciliation.
"""

import asyncio
from dataclasses import asdict, dataclass

import structlog
from eth_utils import is_address

from rentchain import agreement
from rentchain.errors import AggregationFailure, InvalidRequest
from rentchain.ledger import LedgerClient

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AgreementView:
    landlord: str
    renter: str
    content_hash: str
    rent_amount: int
    deposit_amount: int
    duration_days: int
    is_active: bool
    is_terminated: bool

    def to_dict(self) -> dict:
        return asdict(self)


class ReadAggregator:
    def __init__(self, ledger: LedgerClient):
        self.ledger = ledger

    async def _read(self, contract_address: str, field_name: str):
        signature, abi_type = agreement.READ_ACCESSORS[field_name]
        result = await asyncio.to_thread(
            self.ledger.call, contract_address, agreement.encode_call(signature)
        )
        return agreement.decode_result(abi_type, result)

    async def _read_all(self, contract_address: str, fields: list[str]) -> dict:
        if not is_address(contract_address):
            raise InvalidRequest(f"Not a contract address: {contract_address!r}")
        results = await asyncio.gather(
            *(self._read(contract_address, name) for name in fields),
            return_exceptions=True,
        )
        failed = {name: r for name, r in zip(fields, results) if isinstance(r, BaseException)}
        if failed:
            detail = "; ".join(f"{name}: {err}" for name, err in failed.items())
            log.warning("aggregation_failed", contract=contract_address, failed=sorted(failed))
            raise AggregationFailure(f"Could not read agreement {contract_address}: {detail}")
        return dict(zip(fields, results))

    async def fetch_agreement_view(self, contract_address: str) -> AgreementView:
        values = await self._read_all(contract_address, list(agreement.READ_ACCESSORS))
        return AgreementView(**values)

    async def fetch_status(self, contract_address: str) -> dict:
        """Only the two lifecycle flags, same all-or-nothing rule."""
        return await self._read_all(contract_address, ["is_active", "is_terminated"])
