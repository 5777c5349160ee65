"""Error taxonomy for the lifecycle core.

Every error carries a machine-readable ``kind`` and a human-readable
``detail``; the HTTP layer renders both as the structured failure payload.
"""


class LifecycleError(Exception):
    kind = "lifecycle_error"
    http_status = 500

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> dict:
        return {"kind": self.kind, "detail": self.detail}


class InvalidStateTransition(LifecycleError):
    """Requested move is not legal from the current status. No chain call was made."""
    kind = "invalid_state_transition"
    http_status = 409


class InvalidRequest(LifecycleError):
    kind = "invalid_request"
    http_status = 400


class ListingNotFound(LifecycleError):
    kind = "not_found"
    http_status = 404


class SignerFailure(LifecycleError):
    """Insufficient balance, key problem or nonce conflict. Needs an operator."""
    kind = "signer_failure"
    http_status = 503


class QueueHalted(SignerFailure):
    """Admission stopped after persistent nonce desynchronization."""
    kind = "queue_halted"


class LedgerUnavailable(LifecycleError):
    kind = "ledger_unavailable"
    http_status = 503


class ChainRejected(LifecycleError):
    """The contract refused the call. ``detail`` is the verbatim revert reason."""
    kind = "chain_rejected"
    http_status = 422


class ConfirmationTimeout(LifecycleError):
    """Inclusion not observed in time. The transaction may still land."""
    kind = "confirmation_timeout"
    http_status = 504

    def __init__(self, detail: str = "", tx_id: str = "", tx_hash: str = ""):
        super().__init__(detail)
        self.tx_id = tx_id
        self.tx_hash = tx_hash

    def to_dict(self) -> dict:
        return {**super().to_dict(), "tx_id": self.tx_id, "tx_hash": self.tx_hash}


class AggregationFailure(LifecycleError):
    kind = "aggregation_failure"
    http_status = 502


class DriftDetected(LifecycleError):
    """Stored projection disagreed with the chain. Reported, auto-corrected."""
    kind = "drift_detected"
    http_status = 200
