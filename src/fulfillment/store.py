# src/fulfillment/store.py

"""
Durable state shared by the bridge and the pipeline.

Two tables, both keyed by the on-chain request id:

    guard     one row per request the worker has ever picked up. `stage`
              is a RequestStage; the row doubles as the mutual-exclusion
              token (a request is owned by an attempt while its stage is
              in IN_FLIGHT_STAGES). Failed attempts go back to NEW with a
              bounded exponential `retry_after`; FULFILLED is terminal.
              The last provider output is memoized here so a retry after a
              publish/submit failure does not pay for inference twice.

    registry  prompts posted to /register-prompt, plaintext or an ECIES
              envelope serialized as JSON.

A single SQLite connection is shared and every method runs under one
threading.Lock. Other processes (a second worker, the CLI) may hold the
writer lock; BEGIN IMMEDIATE and COMMIT are retried with jittered backoff
until `write_deadline_s` runs out. The store can be used from the event
loop, from the FastAPI handlers and from tests alike. Use path ":memory:"
for a volatile store.
"""

from __future__ import annotations

import json
import random
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from common.logging_utils import log_event
from common.schemas.encrypted_payload import EncryptedEnvelope
from common.schemas.registry_entry import RegistryEntry
from common.schemas.request_stage import IN_FLIGHT_STAGES, RequestStage


_SCHEMA = """
CREATE TABLE IF NOT EXISTS guard (
    request_id      INTEGER PRIMARY KEY,
    stage           TEXT    NOT NULL,
    attempts        INTEGER NOT NULL DEFAULT 0,
    retry_after     REAL    NOT NULL DEFAULT 0,
    last_error      TEXT,
    output          TEXT,
    model           TEXT,
    prompt_digest   TEXT,
    package_ts      INTEGER,
    result_hash     TEXT,
    storage_pointer TEXT,
    tx_hash         TEXT,
    updated_at      REAL    NOT NULL
);

CREATE TABLE IF NOT EXISTS registry (
    request_id    INTEGER PRIMARY KEY,
    prompt        TEXT    NOT NULL,
    encrypted     INTEGER NOT NULL,
    prompt_hash   TEXT,
    registered_at REAL    NOT NULL
);
"""


@dataclass(frozen=True)
class GuardEntry:
    request_id: int
    stage: RequestStage
    attempts: int
    retry_after: float
    last_error: Optional[str]
    result_hash: Optional[str]
    storage_pointer: Optional[str]
    tx_hash: Optional[str]


@dataclass(frozen=True)
class MemoizedOutput:
    model: str
    output: str
    prompt_digest: str
    timestamp_ms: int


class FulfillmentStore:
    def __init__(
        self,
        path: str = ":memory:",
        *,
        backoff_base_s: float = 5.0,
        backoff_max_s: float = 300.0,
        clock=time.time,
        busy_timeout_s: float = 5.0,
        write_deadline_s: float = 30.0,
        write_backoff_base_s: float = 0.005,
        write_backoff_max_s: float = 0.25,
    ) -> None:
        self.path = str(path)
        self.backoff_base_s = max(0.0, float(backoff_base_s))
        self.backoff_max_s = max(self.backoff_base_s, float(backoff_max_s))
        self.write_deadline_s = max(0.0, float(write_deadline_s))
        self.write_backoff_base_s = max(0.001, float(write_backoff_base_s))
        self.write_backoff_max_s = max(self.write_backoff_base_s, float(write_backoff_max_s))
        self._clock = clock
        self._lock = threading.Lock()

        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(
            self.path,
            timeout=max(0.0, float(busy_timeout_s)),
            check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            self._conn.executescript(_SCHEMA)
            self._migrate()

    def _migrate(self) -> None:
        # Stores created before the package timestamp was memoized.
        columns = {row["name"] for row in self._conn.execute("PRAGMA table_info(guard)")}
        if "package_ts" not in columns:
            self._conn.execute("ALTER TABLE guard ADD COLUMN package_ts INTEGER")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @staticmethod
    def _is_locked_error(e: Exception) -> bool:
        msg = str(e).lower()
        return "database is locked" in msg or "database is busy" in msg

    def _execute_with_retry(self, sql: str, deadline: float) -> None:
        """Run BEGIN/COMMIT, backing off while another connection holds the writer lock."""
        attempt = 0
        while True:
            try:
                self._conn.execute(sql)
                return
            except sqlite3.OperationalError as e:
                if not self._is_locked_error(e) or time.monotonic() >= deadline:
                    raise
                sleep_s = min(self.write_backoff_max_s, self.write_backoff_base_s * (2.0 ** min(attempt, 8)))
                sleep_s = sleep_s * (0.5 + random.random())
                if attempt == 0:
                    log_event("store_write_contended", error=repr(e), extra={"sql": sql}, level="warning")
                time.sleep(sleep_s)
                attempt += 1

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            deadline = time.monotonic() + self.write_deadline_s
            self._execute_with_retry("BEGIN IMMEDIATE", deadline)
            try:
                yield self._conn
                self._execute_with_retry("COMMIT", deadline)
            except BaseException:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise

    # ------------------------------------------------------------------
    # Guard
    # ------------------------------------------------------------------

    def try_acquire(self, request_id: int) -> bool:
        """
        Atomically claim a request for one pipeline attempt.

        Succeeds if the request has never been seen, or was released by a
        failed attempt and its backoff has elapsed. A single conditional
        upsert, so two triggers racing for the same id cannot both win.
        """
        now = self._clock()
        with self._tx() as conn:
            cur = conn.execute(
                """
                INSERT INTO guard (request_id, stage, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(request_id) DO UPDATE
                    SET stage = excluded.stage, updated_at = excluded.updated_at
                    WHERE guard.stage = ? AND guard.retry_after <= excluded.updated_at
                """,
                (int(request_id), RequestStage.GUARDED.value, now, RequestStage.NEW.value),
            )
            return cur.rowcount == 1

    def set_stage(self, request_id: int, stage: RequestStage) -> None:
        with self._tx() as conn:
            conn.execute(
                "UPDATE guard SET stage = ?, updated_at = ? WHERE request_id = ?",
                (stage.value, self._clock(), int(request_id)),
            )

    def release(self, request_id: int, error: str = "") -> float:
        """
        Give the request back after a retryable failure.

        Returns the number of seconds before the next attempt is allowed.
        """
        now = self._clock()
        with self._tx() as conn:
            row = conn.execute(
                "SELECT attempts FROM guard WHERE request_id = ?", (int(request_id),)
            ).fetchone()
            attempts = (row["attempts"] if row else 0) + 1
            delay = self._backoff(attempts)
            conn.execute(
                """
                UPDATE guard
                   SET stage = ?, attempts = ?, retry_after = ?, last_error = ?, updated_at = ?
                 WHERE request_id = ? AND stage != ?
                """,
                (
                    RequestStage.NEW.value,
                    attempts,
                    now + delay,
                    error[:512],
                    now,
                    int(request_id),
                    RequestStage.FULFILLED.value,
                ),
            )
        return delay

    def _backoff(self, attempts: int) -> float:
        if self.backoff_base_s <= 0:
            return 0.0
        exponent = min(attempts - 1, 32)
        return min(self.backoff_base_s * (2 ** exponent), self.backoff_max_s)

    def mark_fulfilled(
        self,
        request_id: int,
        *,
        result_hash: str,
        storage_pointer: str,
        tx_hash: str,
    ) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                UPDATE guard
                   SET stage = ?, result_hash = ?, storage_pointer = ?, tx_hash = ?,
                       last_error = NULL, updated_at = ?
                 WHERE request_id = ?
                """,
                (
                    RequestStage.FULFILLED.value,
                    result_hash,
                    storage_pointer,
                    tx_hash,
                    self._clock(),
                    int(request_id),
                ),
            )

    def get_entry(self, request_id: int) -> Optional[GuardEntry]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM guard WHERE request_id = ?", (int(request_id),)
            ).fetchone()
        if row is None:
            return None
        return GuardEntry(
            request_id=row["request_id"],
            stage=RequestStage(row["stage"]),
            attempts=row["attempts"],
            retry_after=row["retry_after"],
            last_error=row["last_error"],
            result_hash=row["result_hash"],
            storage_pointer=row["storage_pointer"],
            tx_hash=row["tx_hash"],
        )

    def stage_of(self, request_id: int) -> RequestStage:
        entry = self.get_entry(request_id)
        return entry.stage if entry else RequestStage.NEW

    def is_guarded(self, request_id: int) -> bool:
        """True while an attempt owns the request, or once it is fulfilled."""
        stage = self.stage_of(request_id)
        return stage in IN_FLIGHT_STAGES or stage is RequestStage.FULFILLED

    def is_fulfilled(self, request_id: int) -> bool:
        return self.stage_of(request_id) is RequestStage.FULFILLED

    def is_eligible(self, request_id: int) -> bool:
        """Whether a new attempt could acquire the request right now."""
        entry = self.get_entry(request_id)
        if entry is None:
            return True
        return entry.stage is RequestStage.NEW and entry.retry_after <= self._clock()

    def recover(self) -> int:
        """
        Reset attempts interrupted by a crash or restart back to NEW.

        Called once at startup, before ingestion begins; nothing can be in
        flight yet. Memoized outputs survive, so resumed requests skip the
        provider call. Returns the number of requests reset.
        """
        in_flight = [s.value for s in IN_FLIGHT_STAGES]
        placeholders = ",".join("?" for _ in in_flight)
        with self._tx() as conn:
            cur = conn.execute(
                f"UPDATE guard SET stage = ?, retry_after = 0, updated_at = ? "
                f"WHERE stage IN ({placeholders})",
                (RequestStage.NEW.value, self._clock(), *in_flight),
            )
            recovered = cur.rowcount
        if recovered:
            log_event("store_recovered_in_flight", extra={"count": recovered}, level="warning")
        return recovered

    # ------------------------------------------------------------------
    # Memoized provider output
    # ------------------------------------------------------------------

    def save_output(
        self, request_id: int, *, model: str, output: str, prompt_digest: str, timestamp_ms: int
    ) -> None:
        """
        Memoize everything that goes into the audit package besides the
        prompt, so a retried attempt rebuilds byte-identical content and
        lands on the same storage root.
        """
        with self._tx() as conn:
            conn.execute(
                """
                UPDATE guard SET model = ?, output = ?, prompt_digest = ?, package_ts = ?, updated_at = ?
                 WHERE request_id = ?
                """,
                (model, output, prompt_digest, int(timestamp_ms), self._clock(), int(request_id)),
            )

    def get_output(self, request_id: int) -> Optional[MemoizedOutput]:
        with self._lock:
            row = self._conn.execute(
                "SELECT model, output, prompt_digest, package_ts FROM guard WHERE request_id = ?",
                (int(request_id),),
            ).fetchone()
        if row is None or row["output"] is None:
            return None
        return MemoizedOutput(
            model=row["model"] or "",
            output=row["output"],
            prompt_digest=row["prompt_digest"] or "",
            timestamp_ms=row["package_ts"] or 0,
        )

    # ------------------------------------------------------------------
    # Prompt registry
    # ------------------------------------------------------------------

    def register_prompt(self, entry: RegistryEntry) -> None:
        if entry.encrypted:
            stored = json.dumps(entry.prompt.to_dict(), sort_keys=True)
        else:
            stored = entry.prompt
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO registry (request_id, prompt, encrypted, prompt_hash, registered_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(request_id) DO UPDATE SET
                    prompt = excluded.prompt,
                    encrypted = excluded.encrypted,
                    prompt_hash = excluded.prompt_hash,
                    registered_at = excluded.registered_at
                """,
                (
                    int(entry.request_id),
                    stored,
                    1 if entry.encrypted else 0,
                    entry.prompt_hash,
                    self._clock(),
                ),
            )

    def get_prompt(self, request_id: int) -> Optional[RegistryEntry]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM registry WHERE request_id = ?", (int(request_id),)
            ).fetchone()
        if row is None:
            return None
        if row["encrypted"]:
            prompt = EncryptedEnvelope.from_mapping(json.loads(row["prompt"]))
        else:
            prompt = row["prompt"]
        return RegistryEntry(
            request_id=row["request_id"],
            prompt=prompt,
            prompt_hash=row["prompt_hash"],
        )
