import json
from dataclasses import dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class AuditPackage:
    """
    The full record published to content-addressed storage for one request.

    Anyone holding these bytes can recompute keccak256(output) and compare it
    with the result hash on the ledger. Key names are the wire names the
    verification UI reads.
    """

    request_id: int
    prompt_hash: str
    prompt: str
    model: str
    output: str
    result_hash: str
    timestamp_ms: int
    node: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": str(self.request_id),
            "promptHash": self.prompt_hash,
            "prompt": self.prompt,
            "model": self.model,
            "output": self.output,
            "resultHash": self.result_hash,
            "timestamp": self.timestamp_ms,
            "node": self.node,
        }

    def to_bytes(self) -> bytes:
        """
        Canonical serialization: sorted keys, no whitespace, UTF-8.
        Equal packages always produce equal bytes (and so equal content addresses).
        """
        return json.dumps(
            self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False
        ).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "AuditPackage":
        raw = json.loads(data.decode("utf-8"))
        if not isinstance(raw, dict):
            raise ValueError("audit package must be a JSON object")
        return cls(
            request_id=int(raw["requestId"]),
            prompt_hash=str(raw["promptHash"]),
            prompt=str(raw["prompt"]),
            model=str(raw["model"]),
            output=str(raw["output"]),
            result_hash=str(raw["resultHash"]),
            timestamp_ms=int(raw["timestamp"]),
            node=str(raw["node"]),
        )
