from dataclasses import dataclass


@dataclass(frozen=True)
class InferenceRequest:
    """
    A confirmed request as observed on the ledger, either from an
    InferenceRequested event or from a getRequest() read during a
    reconciliation scan. Owned by the ledger; never mutated here.
    """

    request_id: int
    requester: str
    prompt_hash: str  # bytes32, 0x-hex
    model_id: str
    timestamp: int


@dataclass(frozen=True)
class OnChainRequest:
    """Result of the contract's getRequest(requestId) view."""

    requester: str
    prompt_hash: str
    model_id: str
    timestamp: int
    fulfilled: bool

    def to_request(self, request_id: int) -> InferenceRequest:
        return InferenceRequest(
            request_id=request_id,
            requester=self.requester,
            prompt_hash=self.prompt_hash,
            model_id=self.model_id,
            timestamp=self.timestamp,
        )
