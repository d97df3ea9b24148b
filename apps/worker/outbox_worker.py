"""Polling outbox worker.

    python -m apps.worker.outbox_worker [--once] [--worker-id ID]

SIGINT/SIGTERM stop pulling new batches; the item in flight finishes first.
"""
from __future__ import annotations

import argparse
import logging
import os
import signal
import socket
import threading
import uuid

from apps.backend.config import get_settings
from apps.backend.database import get_session_factory
from apps.backend.services.outbox_dispatcher import OutboxDispatcher
from apps.backend.services.wa_sender import get_sender
from apps.backend.services.wa_webhook import RetryPolicy, process_pending_events

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


def sweep_webhook_events(session_factory, settings) -> dict:
    with session_factory() as db:
        return process_pending_events(
            db,
            limit=settings.webhook_sweep_limit,
            policy=RetryPolicy.from_settings(settings),
        )


def build_dispatcher(worker_id: str | None = None, settings=None) -> tuple[OutboxDispatcher, object]:
    s = settings or get_settings()
    factory = get_session_factory()
    dispatcher = OutboxDispatcher(
        factory,
        worker_id=worker_id or s.worker_id or default_worker_id(),
        sender=get_sender(s),
        settings=s,
    )
    return dispatcher, factory


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="WhatsApp outbox worker")
    parser.add_argument("--once", action="store_true", help="process one batch and exit")
    parser.add_argument("--worker-id", default=None)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    s = get_settings()
    dispatcher, factory = build_dispatcher(args.worker_id, s)
    if not s.enable_wa_send:
        logger.warning("outbox_worker_dry_run worker=%s", dispatcher.worker_id)

    if args.once:
        counters = dispatcher.run_once()
        sweep = sweep_webhook_events(factory, s)
        logger.info("outbox_worker_once counters=%s webhook_sweep=%s", counters, sweep)
        return 0

    stop_event = threading.Event()

    def _handle_stop(signum, _frame):
        logger.info("outbox_worker_stop_requested signal=%s", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_stop)
    signal.signal(signal.SIGTERM, _handle_stop)
    dispatcher.run_forever(stop_event, after_cycle=lambda: sweep_webhook_events(factory, s))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
