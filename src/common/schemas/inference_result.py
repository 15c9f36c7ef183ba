from dataclasses import dataclass


@dataclass(frozen=True)
class InferenceResult:
    """Result of the contract's getResult(requestId) view. Written once by submitResult."""

    result_hash: str  # bytes32, 0x-hex
    storage_pointer: str
    node: str
    timestamp: int


@dataclass(frozen=True)
class SubmissionReceipt:
    """What the worker keeps from a confirmed submitResult transaction."""

    tx_hash: str
    block_number: int
