# tests/test_fulfillment_store.py

import sqlite3
import threading

import pytest

from common.encryption import encrypt_for_worker, generate_private_key, public_key_hex
from common.schemas.registry_entry import RegistryEntry
from common.schemas.request_stage import RequestStage
from fulfillment.store import FulfillmentStore


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_acquire_is_exclusive(store):
    assert store.try_acquire(1) is True
    assert store.try_acquire(1) is False
    assert store.stage_of(1) is RequestStage.GUARDED
    assert store.is_guarded(1)
    # other ids are unaffected
    assert store.try_acquire(2) is True


def test_release_makes_request_acquirable_again(store):
    store.try_acquire(1)
    store.set_stage(1, RequestStage.INFERRING)
    store.release(1, "ProviderError('503')")

    entry = store.get_entry(1)
    assert entry.stage is RequestStage.NEW
    assert entry.attempts == 1
    assert entry.last_error == "ProviderError('503')"
    assert not store.is_guarded(1)
    assert store.try_acquire(1) is True


def test_fulfilled_is_terminal(store):
    store.try_acquire(1)
    store.mark_fulfilled(1, result_hash="0x" + "11" * 32, storage_pointer="FALLBACK:abc", tx_hash="0x" + "22" * 32)

    # a stray release must not reopen a fulfilled request
    store.release(1, "late failure")
    assert store.is_fulfilled(1)
    assert store.try_acquire(1) is False
    assert store.get_entry(1).storage_pointer == "FALLBACK:abc"


def test_backoff_is_exponential_and_bounded():
    clock = FakeClock()
    s = FulfillmentStore(backoff_base_s=5, backoff_max_s=12, clock=clock)
    s.try_acquire(1)

    assert s.release(1) == 5
    assert s.is_eligible(1) is False
    assert s.try_acquire(1) is False

    clock.now += 5
    assert s.try_acquire(1) is True
    assert s.release(1) == 10

    clock.now += 10
    assert s.try_acquire(1) is True
    assert s.release(1) == 12
    s.close()


def test_recover_resets_in_flight_only(store):
    store.try_acquire(1)
    store.set_stage(1, RequestStage.SUBMITTING)
    store.try_acquire(2)
    store.mark_fulfilled(2, result_hash="0x00", storage_pointer="0x00", tx_hash="0x00")

    assert store.recover() == 1
    assert store.stage_of(1) is RequestStage.NEW
    assert store.stage_of(2) is RequestStage.FULFILLED
    assert store.try_acquire(1) is True


def test_state_survives_reopen(tmp_path):
    path = tmp_path / "state" / "worker.sqlite3"
    s = FulfillmentStore(path, backoff_base_s=0)
    s.try_acquire(3)
    s.set_stage(3, RequestStage.PUBLISHING)
    s.save_output(3, model="m", output="The answer is 42.", prompt_digest="0xabc", timestamp_ms=1_700_000_000_123)
    s.close()

    reopened = FulfillmentStore(path, backoff_base_s=0)
    assert reopened.recover() == 1
    memo = reopened.get_output(3)
    assert memo.output == "The answer is 42."
    assert memo.prompt_digest == "0xabc"
    assert memo.timestamp_ms == 1_700_000_000_123
    reopened.close()


def test_memoized_output_absent_until_saved(store):
    store.try_acquire(4)
    assert store.get_output(4) is None
    store.save_output(4, model="llama3-8b-8192", output="", prompt_digest="0x01", timestamp_ms=5)
    memo = store.get_output(4)
    assert memo.model == "llama3-8b-8192"
    assert memo.output == ""


def test_registry_plaintext_and_envelope(store):
    store.register_prompt(RegistryEntry(request_id=0, prompt="hello", prompt_hash="0x12"))
    entry = store.get_prompt(0)
    assert entry.prompt == "hello"
    assert entry.prompt_hash == "0x12"
    assert entry.encrypted is False

    envelope = encrypt_for_worker(b"hidden", public_key_hex(generate_private_key()))
    store.register_prompt(RegistryEntry(request_id=1, prompt=envelope))
    entry = store.get_prompt(1)
    assert entry.encrypted is True
    assert entry.prompt == envelope

    assert store.get_prompt(99) is None


def test_register_prompt_overwrites(store):
    store.register_prompt(RegistryEntry(request_id=5, prompt="first"))
    store.register_prompt(RegistryEntry(request_id=5, prompt="second"))
    assert store.get_prompt(5).prompt == "second"


def _hold_writer_lock(path):
    other = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
    other.execute("BEGIN IMMEDIATE")
    return other


def test_write_waits_for_another_writer(tmp_path):
    path = tmp_path / "worker.sqlite3"
    s = FulfillmentStore(path, busy_timeout_s=0, write_deadline_s=10.0)
    other = _hold_writer_lock(path)
    timer = threading.Timer(0.2, other.execute, args=("ROLLBACK",))
    timer.start()
    try:
        assert s.try_acquire(1) is True
    finally:
        timer.join()
        other.close()
    assert s.stage_of(1) is RequestStage.GUARDED
    s.close()


def test_write_gives_up_after_deadline(tmp_path):
    path = tmp_path / "worker.sqlite3"
    s = FulfillmentStore(path, busy_timeout_s=0, write_deadline_s=0.1)
    other = _hold_writer_lock(path)
    try:
        with pytest.raises(sqlite3.OperationalError, match="locked"):
            s.try_acquire(1)
    finally:
        other.execute("ROLLBACK")
        other.close()

    # the failed attempt left no transaction open
    assert s.try_acquire(1) is True
    s.close()


def test_store_opened_on_old_schema_gains_timestamp_column(tmp_path):
    path = tmp_path / "worker.sqlite3"
    old = sqlite3.connect(path)
    old.execute(
        "CREATE TABLE guard (request_id INTEGER PRIMARY KEY, stage TEXT NOT NULL, "
        "attempts INTEGER NOT NULL DEFAULT 0, retry_after REAL NOT NULL DEFAULT 0, last_error TEXT, "
        "output TEXT, model TEXT, prompt_digest TEXT, result_hash TEXT, storage_pointer TEXT, "
        "tx_hash TEXT, updated_at REAL NOT NULL)"
    )
    old.execute(
        "INSERT INTO guard (request_id, stage, output, model, prompt_digest, updated_at) "
        "VALUES (7, 'NEW', 'out', 'm', '0x01', 0)"
    )
    old.commit()
    old.close()

    s = FulfillmentStore(path)
    assert s.get_output(7).timestamp_ms == 0
    s.save_output(7, model="m", output="out", prompt_digest="0x01", timestamp_ms=42)
    assert s.get_output(7).timestamp_ms == 42
    s.close()
