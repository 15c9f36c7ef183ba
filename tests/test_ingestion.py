# tests/test_ingestion.py

import asyncio
import sqlite3

from common.schemas.request_stage import RequestStage
from fakes import FakeLedger, FakeProvider, FakeStorage, NODE, make_request
from fulfillment.dispatcher import RequestDispatcher
from fulfillment.ingestion import EventSubscriber, Reconciler
from fulfillment.pipeline import FulfillmentPipeline, ProcessOutcome
from fulfillment.publisher import ContentPublisher


class RecordingPipeline:
    def __init__(self, fail_ids=()):
        self.fail_ids = set(fail_ids)
        self.seen = []

    async def process(self, request):
        self.seen.append(request.request_id)
        if request.request_id in self.fail_ids:
            raise RuntimeError("pipeline blew up")
        return ProcessOutcome.FULFILLED


def drain_queue(dispatcher):
    ids = []
    while not dispatcher.queue.empty():
        ids.append(dispatcher.queue.get_nowait().request_id)
    return ids


def test_reconcile_submits_only_unfulfilled_and_tolerates_fetch_errors(store):
    ledger = FakeLedger()
    for rid in range(5):
        ledger.add_request(rid, fulfilled=(rid == 1))
    ledger.broken_ids.add(2)
    store.try_acquire(3)  # another attempt in flight

    async def _run():
        dispatcher = RequestDispatcher(RecordingPipeline())
        submitted = await Reconciler(ledger, dispatcher, store).reconcile_once()
        return submitted, drain_queue(dispatcher)

    submitted, queued = asyncio.run(_run())
    assert submitted == 2
    assert queued == [0, 4]


def test_reconcile_skips_locally_fulfilled_and_backed_off(store):
    ledger = FakeLedger()
    ledger.add_request(0)
    ledger.add_request(1)
    store.try_acquire(0)
    store.mark_fulfilled(0, result_hash="0x00", storage_pointer="0x00", tx_hash="0x00")
    store.backoff_base_s = 60
    store.try_acquire(1)
    store.release(1, "ProviderError")

    async def _run():
        dispatcher = RequestDispatcher(RecordingPipeline())
        return await Reconciler(ledger, dispatcher, store).reconcile_once()

    assert asyncio.run(_run()) == 0


def test_reconcile_survives_total_requests_failure(store):
    class DownLedger(FakeLedger):
        async def total_requests(self):
            raise ConnectionError("rpc down")

    async def _run():
        dispatcher = RequestDispatcher(RecordingPipeline())
        return await Reconciler(DownLedger(), dispatcher, store).reconcile_once()

    assert asyncio.run(_run()) == 0


def test_event_poll_error_resets_filter_then_recovers():
    ledger = FakeLedger()
    ledger.poll_errors = 1
    ledger.pending_events = [make_request(0), make_request(1)]

    async def _run():
        dispatcher = RequestDispatcher(RecordingPipeline())
        subscriber = EventSubscriber(ledger, dispatcher, poll_interval_s=0)
        first = await subscriber.poll_once()
        second = await subscriber.poll_once()
        return first, second, drain_queue(dispatcher)

    first, second, queued = asyncio.run(_run())
    assert first == 0
    assert ledger.filter_resets == 1
    assert second == 2
    assert queued == [0, 1]


def test_dispatcher_worker_survives_pipeline_exception():
    pipeline = RecordingPipeline(fail_ids={1})

    async def _run():
        dispatcher = RequestDispatcher(pipeline, concurrency=1)
        dispatcher.start()
        for rid in (1, 2, 3):
            await dispatcher.submit(make_request(rid))
        await dispatcher.drain(timeout_s=5)
        alive = dispatcher.running
        await dispatcher.stop()
        return alive

    assert asyncio.run(_run()) is True
    assert pipeline.seen == [1, 2, 3]


def test_live_and_reconcile_triggers_race_to_single_fulfillment(store):
    ledger = FakeLedger()
    ledger.add_request(0)
    ledger.pending_events = [make_request(0)]
    provider = FakeProvider("The answer is 42.", delay_s=0.01)
    pipeline = FulfillmentPipeline(
        store=store,
        provider=provider,
        publisher=ContentPublisher(FakeStorage()),
        ledger=ledger,
        node_id=NODE,
        prompt_wait_attempts=0,
    )

    async def _run():
        dispatcher = RequestDispatcher(pipeline, concurrency=4)
        dispatcher.start()
        await asyncio.gather(
            EventSubscriber(ledger, dispatcher).poll_once(),
            Reconciler(ledger, dispatcher, store).reconcile_once(),
            dispatcher.submit(make_request(0)),
        )
        await dispatcher.drain(timeout_s=5)
        await dispatcher.stop()

    asyncio.run(_run())

    assert provider.calls == 1
    assert len(ledger.submissions) == 1
    assert store.stage_of(0) is RequestStage.FULFILLED


async def _run_until_queued(loop_obj, dispatcher, timeout_s=5):
    stop = asyncio.Event()
    task = asyncio.create_task(loop_obj.run(stop))

    async def _wait():
        while dispatcher.queue.empty():
            await asyncio.sleep(0.01)

    try:
        await asyncio.wait_for(_wait(), timeout=timeout_s)
    finally:
        stop.set()
        await asyncio.wait_for(task, timeout=timeout_s)
    return drain_queue(dispatcher)


def test_reconciler_loop_survives_locked_store(store, monkeypatch):
    ledger = FakeLedger()
    ledger.add_request(0)
    calls = {"n": 0}
    is_guarded = store.is_guarded

    def locked_once(request_id):
        calls["n"] += 1
        if calls["n"] == 1:
            raise sqlite3.OperationalError("database is locked")
        return is_guarded(request_id)

    monkeypatch.setattr(store, "is_guarded", locked_once)

    async def _run():
        dispatcher = RequestDispatcher(RecordingPipeline())
        reconciler = Reconciler(ledger, dispatcher, store, poll_interval_s=0.01)
        return await _run_until_queued(reconciler, dispatcher)

    queued = asyncio.run(_run())
    assert calls["n"] >= 2
    assert queued and set(queued) == {0}


def test_event_subscriber_loop_survives_failed_filter_reset():
    class FlakyLedger(FakeLedger):
        def reset_request_filter(self):
            super().reset_request_filter()
            if self.filter_resets == 1:
                raise ConnectionError("rpc down while installing filter")

    ledger = FlakyLedger()
    ledger.poll_errors = 1
    ledger.pending_events = [make_request(3)]

    async def _run():
        dispatcher = RequestDispatcher(RecordingPipeline())
        subscriber = EventSubscriber(ledger, dispatcher, poll_interval_s=0.01)
        return await _run_until_queued(subscriber, dispatcher)

    assert asyncio.run(_run()) == [3]
    assert ledger.filter_resets == 1
