# src/fulfillment/dispatcher.py

from __future__ import annotations

import asyncio
from typing import List, Optional

from common.logging_utils import log_event
from common.schemas.inference_request import InferenceRequest
from fulfillment.pipeline import FulfillmentPipeline


class RequestDispatcher:
    """
    Fans requests from every ingestion path into a fixed pool of workers.

    - One bounded asyncio.Queue; producers block when it is full.
    - `concurrency` long-lived worker tasks each pull one request and run it
      through the pipeline. Duplicates in the queue are harmless: the guard
      inside the pipeline turns all but one into SKIPPED.
    - A worker never dies on a pipeline exception; it logs and moves on.
    """

    def __init__(
        self,
        pipeline: FulfillmentPipeline,
        *,
        concurrency: int = 4,
        max_queue_size: int = 1000,
    ):
        self.pipeline = pipeline
        self.concurrency = max(1, int(concurrency))
        self.queue: asyncio.Queue[InferenceRequest] = asyncio.Queue(maxsize=max(0, int(max_queue_size)))
        self._workers: List[asyncio.Task] = []

    async def submit(self, request: InferenceRequest) -> int:
        """Enqueue a request; returns the queue depth after the put."""
        await self.queue.put(request)
        return self.queue.qsize()

    def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"fulfillment-worker-{i}")
            for i in range(self.concurrency)
        ]
        log_event("dispatcher_started", extra={"concurrency": self.concurrency})

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._workers)

    async def _worker(self, index: int) -> None:
        while True:
            request = await self.queue.get()
            try:
                await self.pipeline.process(request)
            except Exception as e:
                log_event(
                    "dispatcher_worker_error",
                    request_id=request.request_id,
                    error=repr(e),
                    extra={"worker": index},
                    level="error",
                )
            finally:
                self.queue.task_done()

    async def drain(self, timeout_s: Optional[float] = None) -> None:
        """Wait until every queued request has been processed."""
        if timeout_s is None:
            await self.queue.join()
        else:
            await asyncio.wait_for(self.queue.join(), timeout=timeout_s)

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        log_event("dispatcher_stopped", extra={"pending": self.queue.qsize()})
