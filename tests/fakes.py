# tests/fakes.py

"""In-process stand-ins for the provider, the storage indexer and the ledger."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from clients.inference_client import CompletionResult
from clients.storage_client import merkle_root
from common.errors import ProviderError, StorageError, SubmissionError
from common.hashing import prompt_hash
from common.schemas.inference_request import InferenceRequest, OnChainRequest
from common.schemas.inference_result import InferenceResult, SubmissionReceipt

NODE = "0x00000000000000000000000000000000000000a1"


def make_request(request_id: int, prompt: str = "", model_id: str = "") -> InferenceRequest:
    return InferenceRequest(
        request_id=request_id,
        requester="0x00000000000000000000000000000000000000b2",
        prompt_hash=prompt_hash(prompt),
        model_id=model_id,
        timestamp=1_700_000_000,
    )


class FakeProvider:
    def __init__(self, output: str = "ok", *, fail_times: int = 0, exc: Optional[Exception] = None, delay_s: float = 0):
        self.output = output
        self.fail_times = fail_times
        self.exc = exc
        self.delay_s = delay_s
        self.prompts: List[str] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    def resolve_model(self, model_id: Optional[str]) -> str:
        return model_id or "default-model"

    async def complete(self, model_id: Optional[str], prompt: str) -> CompletionResult:
        self.prompts.append(prompt)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.exc is not None:
            raise self.exc
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ProviderError("provider_http_503")
        return CompletionResult(
            output_text=self.output,
            input_tokens=7,
            output_tokens=5,
        )


class FakeStorage:
    def __init__(self, *, broken: bool = False):
        self.broken = broken
        self.files: Dict[str, bytes] = {}
        self.uploads = 0

    def content_address(self, data: bytes) -> str:
        return merkle_root(data)

    async def exists(self, root: str) -> bool:
        if self.broken:
            raise StorageError("indexer unreachable")
        return root in self.files

    async def upload(self, data: bytes, root: str) -> Optional[str]:
        if self.broken:
            raise StorageError("indexer unreachable")
        self.uploads += 1
        self.files[root] = data
        return "0x" + "f" * 64


class FakeLedger:
    def __init__(self, *, fail_submits: int = 0):
        self.fail_submits = fail_submits
        self.submissions: List[tuple] = []
        self.requests: Dict[int, OnChainRequest] = {}
        self.broken_ids: set = set()
        self.pending_events: List[InferenceRequest] = []
        self.poll_errors = 0
        self.filter_resets = 0

    # writes
    async def submit_result(self, request_id: int, result_hash: str, storage_pointer: str) -> SubmissionReceipt:
        if self.fail_submits > 0:
            self.fail_submits -= 1
            raise SubmissionError("submit_result_failed: nonce too low")
        self.submissions.append((request_id, result_hash, storage_pointer))
        return SubmissionReceipt(tx_hash="0x" + f"{len(self.submissions):064x}", block_number=100 + len(self.submissions))

    # reads
    def add_request(self, request_id: int, *, fulfilled: bool = False, prompt: str = "") -> None:
        req = make_request(request_id, prompt)
        self.requests[request_id] = OnChainRequest(
            requester=req.requester,
            prompt_hash=req.prompt_hash,
            model_id=req.model_id,
            timestamp=req.timestamp,
            fulfilled=fulfilled,
        )

    async def total_requests(self) -> int:
        return len(self.requests)

    async def get_request(self, request_id: int) -> OnChainRequest:
        if request_id in self.broken_ids:
            raise ConnectionError("rpc timeout")
        return self.requests[request_id]

    async def get_result(self, request_id: int) -> InferenceResult:
        for rid, result_hash, pointer in self.submissions:
            if rid == request_id:
                return InferenceResult(result_hash=result_hash, storage_pointer=pointer, node=NODE, timestamp=0)
        raise KeyError(request_id)

    # events
    async def poll_requested_events(self) -> List[InferenceRequest]:
        if self.poll_errors > 0:
            self.poll_errors -= 1
            raise ValueError("filter not found")
        events, self.pending_events = self.pending_events, []
        return events

    def reset_request_filter(self) -> None:
        self.filter_resets += 1
