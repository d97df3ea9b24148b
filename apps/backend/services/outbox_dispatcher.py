"""Outbox dispatcher: claim a batch, throttle, send, then record success or schedule a retry.

Mutual exclusion between dispatchers (polling workers and the insert-hook fast
path) comes only from the atomic claim in outbox_store. Each dispatcher handles
its batch sequentially; job and message rows are written only after the
provider call has returned.
"""
from __future__ import annotations

import logging
import random
import threading
import time
from datetime import datetime, timedelta
from typing import Callable

from apps.backend.config import get_settings
from apps.backend.models.outbox import OutboxMessage
from apps.backend.services.backoff import next_backoff_ms
from apps.backend.services.outbox_store import (
    claim_outbox,
    claim_outbox_message,
    fail_outbox,
    mark_outbox_sent,
    reclaim_stale_outbox,
    requeue_outbox,
)
from apps.backend.services.rate_limit import prune_rate_limit_windows, take_rate_limit_slot
from apps.backend.services.wa_routing import RoutingError, resolve_routing
from apps.backend.services.wa_sender import WaSender, build_graph_payload
from apps.backend.services.wa_status import mark_message_failed, mark_message_sent

logger = logging.getLogger(__name__)

RESULT_SENT = "sent"
RESULT_REQUEUED = "requeued"
RESULT_RATE_LIMITED = "rate_limited"
RESULT_FAILED = "failed"
RESULT_SKIPPED = "skipped"

ERR_PAYLOAD_MISSING = "payload_missing_message_id_or_phone"
ERR_RATE_LIMITED = "rate_limited"
ERR_SHUTDOWN = "released_on_shutdown"


class OutboxDispatcher:
    def __init__(
        self,
        session_factory,
        worker_id: str,
        sender: WaSender,
        settings=None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        if not worker_id:
            raise ValueError("worker_id is required")
        self.session_factory = session_factory
        self.worker_id = worker_id
        self.sender = sender
        self.settings = settings or get_settings()
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.clock = clock

    def _jitter_ms(self) -> int:
        lo = max(0, int(self.settings.rate_delay_min_ms))
        hi = max(lo, int(self.settings.rate_delay_max_ms))
        return self.rng.randint(lo, hi)

    def _max_attempts(self) -> int:
        return max(1, int(self.settings.worker_max_attempts or 5))

    def process_claimed(self, db, job: OutboxMessage) -> str:
        """Run one claimed job to its next state. The job must be locked by this dispatcher."""
        payload = dict(job.payload_json or {})
        message_id = payload.get("message_id")
        if not message_id or not job.to_phone:
            fail_outbox(db, job, ERR_PAYLOAD_MISSING, now=self.clock())
            logger.error("outbox_failed outbox_id=%s reason=%s", job.id, ERR_PAYLOAD_MISSING)
            return RESULT_FAILED

        try:
            route = resolve_routing(db, job, payload, self.settings.token_encryption_key)
        except RoutingError as e:
            now = self.clock()
            mark_message_failed(db, int(message_id), e.code, now=now)
            fail_outbox(db, job, e.code, now=now)
            logger.error("outbox_failed outbox_id=%s reason=%s", job.id, e.code)
            return RESULT_FAILED

        try:
            allowed = take_rate_limit_slot(db, job.workspace_id, self.settings.rate_cap_per_min, now=self.clock())
            if not allowed:
                now = self.clock()
                next_run_at = now + timedelta(seconds=max(1, int(self.settings.rate_limit_defer_seconds)))
                requeue_outbox(db, job, next_run_at, ERR_RATE_LIMITED, count_attempt=False, now=now)
                logger.info(
                    "outbox_rate_limited outbox_id=%s workspace_id=%s next_run_at=%s",
                    job.id, job.workspace_id, next_run_at.isoformat(),
                )
                return RESULT_RATE_LIMITED

            delay_ms = self._jitter_ms()
            if delay_ms > 0:
                self.sleep(delay_ms / 1000.0)

            body = build_graph_payload(job.message_type, job.to_phone, payload)
            result = self.sender.send(route.phone_number_id, route.access_token, body)
            error = None if result.ok else (result.error or "send_failed")
        except Exception as e:
            logger.exception("outbox_send_exception outbox_id=%s", job.id)
            db.rollback()
            error = (str(e) or "send_exception")[:200]
            result = None

        now = self.clock()
        if error is None:
            mark_message_sent(db, int(message_id), result.wa_message_id, now=now)
            mark_outbox_sent(db, job, now=now)
            logger.info(
                "outbox_sent outbox_id=%s message_id=%s wa_message_id=%s",
                job.id, message_id, result.wa_message_id,
            )
            return RESULT_SENT
        return self._handle_send_error(db, job, int(message_id), error, now)

    def _handle_send_error(self, db, job: OutboxMessage, message_id: int, error: str, now: datetime) -> str:
        attempts = (job.attempts or 0) + 1
        if attempts >= self._max_attempts():
            mark_message_failed(db, message_id, error, now=now)
            fail_outbox(db, job, error, attempts=attempts, now=now)
            logger.error("outbox_failed outbox_id=%s attempts=%s error=%s", job.id, attempts, error)
            return RESULT_FAILED
        delay_ms = next_backoff_ms(attempts, self.settings.backoff_base_ms, self.settings.backoff_cap_ms)
        next_run_at = now + timedelta(milliseconds=delay_ms)
        requeue_outbox(db, job, next_run_at, error, count_attempt=True, now=now)
        logger.warning(
            "outbox_requeued outbox_id=%s attempts=%s backoff_ms=%s error=%s",
            job.id, attempts, delay_ms, error,
        )
        return RESULT_REQUEUED

    def _process_guarded(self, db, job: OutboxMessage) -> str:
        try:
            return self.process_claimed(db, job)
        except Exception as e:
            # Bookkeeping itself failed; hand the job back so it is not left locked.
            logger.exception("outbox_process_failed outbox_id=%s", job.id)
            db.rollback()
            fresh = db.get(OutboxMessage, job.id)
            if fresh is None:
                return RESULT_FAILED
            return self._handle_send_error(
                db, fresh, int((fresh.payload_json or {}).get("message_id") or 0), f"worker_exception:{e}"[:200], self.clock()
            )

    def run_once(self, stop_event: threading.Event | None = None) -> dict:
        counters = {
            "claimed": 0,
            RESULT_SENT: 0,
            RESULT_REQUEUED: 0,
            RESULT_RATE_LIMITED: 0,
            RESULT_FAILED: 0,
            "released": 0,
        }
        with self.session_factory() as db:
            reclaim_stale_outbox(db, self.settings.outbox_lock_stale_seconds, now=self.clock())
            retention = max(2, int(self.settings.rate_limit_retention_minutes))
            prune_rate_limit_windows(db, self.clock() - timedelta(minutes=retention))
            jobs = claim_outbox(db, self.settings.worker_batch_size, self.worker_id, now=self.clock())
            counters["claimed"] = len(jobs)
            if jobs:
                logger.info("outbox_claimed count=%s worker=%s", len(jobs), self.worker_id)
            for job in jobs:
                if stop_event is not None and stop_event.is_set():
                    now = self.clock()
                    requeue_outbox(db, job, now, ERR_SHUTDOWN, count_attempt=False, now=now)
                    counters["released"] += 1
                    continue
                outcome = self._process_guarded(db, job)
                counters[outcome] = counters.get(outcome, 0) + 1
        return counters

    def process_one(self, outbox_id: int) -> str:
        """Fast path for a single job (insert hook / RQ). Skipped when another dispatcher owns it."""
        with self.session_factory() as db:
            job = claim_outbox_message(db, outbox_id, self.worker_id, now=self.clock())
            if job is None:
                return RESULT_SKIPPED
            return self._process_guarded(db, job)

    def run_forever(
        self,
        stop_event: threading.Event,
        after_cycle: Callable[[], None] | None = None,
    ) -> None:
        poll_seconds = max(500, int(self.settings.worker_poll_interval_ms or 2000)) / 1000.0
        logger.info("outbox_worker_started worker=%s poll_seconds=%s", self.worker_id, poll_seconds)
        while not stop_event.is_set():
            try:
                self.run_once(stop_event)
                if after_cycle is not None:
                    after_cycle()
            except Exception:
                logger.exception("outbox_worker_cycle_failed worker=%s", self.worker_id)
            if stop_event.wait(poll_seconds):
                break
        logger.info("outbox_worker_stopped worker=%s", self.worker_id)
