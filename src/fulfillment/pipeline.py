# src/fulfillment/pipeline.py

from __future__ import annotations

import asyncio
import time
from enum import Enum
from time import perf_counter
from typing import Optional, Protocol

from clients.inference_client import CompletionResult
from common.encryption import decrypt_at_worker
from common.errors import DecryptionError, PromptMismatchError, RetryableError
from common.hashing import commitment_hash, hashes_equal, prompt_hash
from common.logging_utils import log_event
from common.schemas.audit_package import AuditPackage
from common.schemas.inference_request import InferenceRequest
from common.schemas.inference_result import SubmissionReceipt
from common.schemas.registry_entry import RegistryEntry
from common.schemas.request_stage import RequestStage
from fulfillment.publisher import ContentPublisher
from fulfillment.stage_tracker import RequestStageTracker
from fulfillment.store import FulfillmentStore


class Provider(Protocol):
    def resolve_model(self, model_id: Optional[str]) -> str: ...

    async def complete(self, model_id: Optional[str], prompt: str) -> CompletionResult: ...


class ResultWriter(Protocol):
    async def submit_result(
        self, request_id: int, result_hash: str, storage_pointer: str
    ) -> SubmissionReceipt: ...


class ProcessOutcome(Enum):
    SKIPPED = "SKIPPED"  # another attempt owns the request, or it is already fulfilled
    RELEASED = "RELEASED"  # retryable failure; a later trigger will try again
    FULFILLED = "FULFILLED"


def placeholder_prompt(request_id: int) -> str:
    return f"[Prompt for requestId {request_id} not registered; register via POST /register-prompt]"


class FulfillmentPipeline:
    """
    Turns one observed request into one submitted, auditable result.

    Stages run strictly in order for a given request id:
      guard → decrypt → infer → hash → publish → submit → fulfilled

    - The guard (store.try_acquire) is the only way in. Whoever loses the
      race gets SKIPPED and does nothing.
    - Decryption, provider and submission failures release the guard with a
      backoff and return RELEASED; the next live event or reconciliation
      scan starts the request again from the top.
    - Publication never fails: storage trouble yields a degraded pointer and
      the request is still submitted.
    - Provider output and the package timestamp are memoized per request
      (and per prompt), so a retry after a publish or submit failure reuses
      them instead of re-running inference, and republishes the same bytes
      under the same root.
    """

    def __init__(
        self,
        *,
        store: FulfillmentStore,
        provider: Provider,
        publisher: ContentPublisher,
        ledger: ResultWriter,
        node_id: str,
        private_key: Optional[str] = None,
        verify_prompt_hash: bool = False,
        prompt_wait_attempts: int = 3,
        prompt_wait_interval_s: float = 1.0,
    ):
        self.store = store
        self.provider = provider
        self.publisher = publisher
        self.ledger = ledger
        self.node_id = node_id
        self.private_key = private_key
        self.verify_prompt_hash = verify_prompt_hash
        self.prompt_wait_attempts = max(0, int(prompt_wait_attempts))
        self.prompt_wait_interval_s = max(0.0, float(prompt_wait_interval_s))
        self.tracker = RequestStageTracker(store, node_id)

    async def process(self, request: InferenceRequest) -> ProcessOutcome:
        request_id = request.request_id

        if not self.store.try_acquire(request_id):
            log_event(
                "request_already_guarded",
                request_id=request_id,
                extra={"stage": self.tracker.get_stage(request_id).value},
                level="debug",
            )
            return ProcessOutcome.SKIPPED

        log_event(
            "request_processing_started",
            request_id=request_id,
            node_id=self.node_id,
            extra={"model_id": request.model_id or "default", "prompt_hash": request.prompt_hash},
        )
        t_start = perf_counter()

        try:
            prompt = await self._recover_prompt(request)
            model, output, timestamp_ms = await self._run_inference(request, prompt)

            self.tracker.set_stage(request_id, RequestStage.HASHING)
            result_hash = commitment_hash(output)

            self.tracker.set_stage(request_id, RequestStage.PUBLISHING)
            package = AuditPackage(
                request_id=request_id,
                prompt_hash=request.prompt_hash,
                prompt=prompt,
                model=model,
                output=output,
                result_hash=result_hash,
                timestamp_ms=timestamp_ms,
                node=self.node_id,
            )
            pointer = await self.publisher.publish(package)

            self.tracker.set_stage(request_id, RequestStage.SUBMITTING)
            receipt = await self.ledger.submit_result(request_id, result_hash, pointer.to_wire())

        except RetryableError as e:
            delay = self.store.release(request_id, repr(e))
            log_event(
                "request_attempt_failed",
                request_id=request_id,
                node_id=self.node_id,
                error=repr(e),
                extra={"stage": e.stage, "retry_in_s": f"{delay:.1f}"},
                level="error",
            )
            return ProcessOutcome.RELEASED

        except Exception as e:
            self.store.release(request_id, repr(e))
            log_event(
                "request_attempt_crashed",
                request_id=request_id,
                node_id=self.node_id,
                error=repr(e),
                level="error",
                exc_info=True,
            )
            raise

        self.store.mark_fulfilled(
            request_id,
            result_hash=result_hash,
            storage_pointer=pointer.to_wire(),
            tx_hash=receipt.tx_hash,
        )
        log_event(
            "request_fulfilled",
            request_id=request_id,
            node_id=self.node_id,
            extra={
                "result_hash": result_hash,
                "storage_pointer": pointer.to_wire(),
                "verifiable": pointer.verifiable,
                "tx_hash": receipt.tx_hash,
                "block": receipt.block_number,
                "total_ms": int((perf_counter() - t_start) * 1000),
            },
        )
        return ProcessOutcome.FULFILLED

    # --------------------------------------------------
    # Stages
    # --------------------------------------------------
    async def _await_registry_entry(self, request_id: int) -> Optional[RegistryEntry]:
        """
        The client registers the prompt and sends the ledger transaction
        independently, so the event can win the race. Poll the registry a
        bounded number of times before giving up.
        """
        entry = self.store.get_prompt(request_id)
        attempts = 0
        while entry is None and attempts < self.prompt_wait_attempts:
            attempts += 1
            await asyncio.sleep(self.prompt_wait_interval_s)
            entry = self.store.get_prompt(request_id)
        return entry

    async def _recover_prompt(self, request: InferenceRequest) -> str:
        request_id = request.request_id
        self.tracker.set_stage(request_id, RequestStage.DECRYPTING)

        entry = await self._await_registry_entry(request_id)
        if entry is None:
            log_event(
                "prompt_not_registered",
                request_id=request_id,
                extra={"fallback": "placeholder"},
                level="warning",
            )
            return placeholder_prompt(request_id)

        if entry.encrypted:
            if not self.private_key:
                raise DecryptionError("encrypted prompt received but encryption is disabled")
            try:
                prompt = decrypt_at_worker(entry.prompt, self.private_key)
            except ValueError as e:
                raise DecryptionError(str(e)) from e
            log_event("prompt_decrypted", request_id=request_id, level="debug")
        else:
            prompt = entry.prompt

        if self.verify_prompt_hash and not hashes_equal(prompt_hash(prompt), request.prompt_hash):
            raise PromptMismatchError("registered prompt does not match on-chain promptHash")

        return prompt

    async def _run_inference(self, request: InferenceRequest, prompt: str) -> tuple[str, str, int]:
        request_id = request.request_id
        digest = prompt_hash(prompt)

        memo = self.store.get_output(request_id)
        if memo is not None and memo.prompt_digest == digest:
            timestamp_ms = memo.timestamp_ms
            if not timestamp_ms:
                # memo written before the timestamp was stored
                timestamp_ms = int(time.time() * 1000)
                self.store.save_output(
                    request_id, model=memo.model, output=memo.output, prompt_digest=digest, timestamp_ms=timestamp_ms
                )
            log_event(
                "inference_memoized",
                request_id=request_id,
                extra={"model": memo.model, "timestamp_ms": timestamp_ms},
            )
            return memo.model, memo.output, timestamp_ms

        self.tracker.set_stage(request_id, RequestStage.INFERRING)
        model = self.provider.resolve_model(request.model_id)

        t_start = perf_counter()
        completion = await self.provider.complete(request.model_id, prompt)
        total_ms = int((perf_counter() - t_start) * 1000)

        output = completion.output_text
        timestamp_ms = int(time.time() * 1000)
        self.store.save_output(
            request_id, model=model, output=output, prompt_digest=digest, timestamp_ms=timestamp_ms
        )

        log_event(
            "inference_metrics",
            request_id=request_id,
            node_id=self.node_id,
            extra={
                "model": model,
                "total_ms": total_ms,
                "input_tokens": completion.input_tokens,
                "output_tokens": completion.output_tokens,
                "output_chars": len(output),
            },
        )
        return model, output, timestamp_ms
