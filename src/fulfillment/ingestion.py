# src/fulfillment/ingestion.py

"""
The two producers feeding the dispatcher.

EventSubscriber follows InferenceRequested events as they happen; Reconciler
periodically walks every request id the ledger knows about and re-submits the
ones still unfulfilled, which covers missed events, worker restarts and
attempts that failed earlier. Both only enqueue; the guard decides who runs.
A cycle that raises is logged and the loop carries on with the next one.
"""

from __future__ import annotations

import asyncio
from typing import List, Optional, Protocol

from common.logging_utils import log_event
from common.schemas.inference_request import InferenceRequest, OnChainRequest
from fulfillment.dispatcher import RequestDispatcher
from fulfillment.store import FulfillmentStore


class RequestSource(Protocol):
    async def poll_requested_events(self) -> List[InferenceRequest]: ...

    def reset_request_filter(self) -> None: ...

    async def total_requests(self) -> int: ...

    async def get_request(self, request_id: int) -> OnChainRequest: ...


class EventSubscriber:
    def __init__(
        self,
        ledger: RequestSource,
        dispatcher: RequestDispatcher,
        *,
        poll_interval_s: float = 4.0,
    ):
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.poll_interval_s = poll_interval_s

    async def poll_once(self) -> int:
        """Submit every new event; returns how many were submitted."""
        try:
            requests = await self.ledger.poll_requested_events()
        except Exception as e:
            # Filters expire on most RPC nodes; install a fresh one next cycle
            log_event("event_poll_failed", error=repr(e), level="warning")
            self.ledger.reset_request_filter()
            return 0

        for request in requests:
            log_event(
                "request_event_received",
                request_id=request.request_id,
                extra={"requester": request.requester, "model_id": request.model_id or "default"},
            )
            await self.dispatcher.submit(request)
        return len(requests)

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        log_event("event_subscriber_started", extra={"poll_interval_s": self.poll_interval_s})
        while stop is None or not stop.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                log_event("event_poll_cycle_failed", error=repr(e), level="error", exc_info=True)
            await asyncio.sleep(self.poll_interval_s)


class Reconciler:
    def __init__(
        self,
        ledger: RequestSource,
        dispatcher: RequestDispatcher,
        store: FulfillmentStore,
        *,
        poll_interval_s: float = 4.0,
    ):
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.store = store
        self.poll_interval_s = poll_interval_s

    async def reconcile_once(self) -> int:
        """
        One full scan over ids 0..total-1. Returns the number of requests
        submitted. A failed fetch of one id never aborts the scan.
        """
        try:
            total = await self.ledger.total_requests()
        except Exception as e:
            log_event("reconcile_total_failed", error=repr(e), level="warning")
            return 0

        submitted = 0
        for request_id in range(total):
            if self.store.is_guarded(request_id) or not self.store.is_eligible(request_id):
                continue

            try:
                on_chain = await self.ledger.get_request(request_id)
            except Exception as e:
                log_event("reconcile_fetch_failed", request_id=request_id, error=repr(e), level="debug")
                continue

            if on_chain.fulfilled:
                continue

            log_event("reconcile_found_unfulfilled", request_id=request_id, level="debug")
            await self.dispatcher.submit(on_chain.to_request(request_id))
            submitted += 1

        if submitted:
            log_event("reconcile_completed", extra={"total": total, "submitted": submitted})
        return submitted

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        log_event("reconciler_started", extra={"poll_interval_s": self.poll_interval_s})
        while stop is None or not stop.is_set():
            try:
                await self.reconcile_once()
            except Exception as e:
                log_event("reconcile_cycle_failed", error=repr(e), level="error", exc_info=True)
            await asyncio.sleep(self.poll_interval_s)
