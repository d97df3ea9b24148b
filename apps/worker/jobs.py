"""RQ jobs."""
import logging

logger = logging.getLogger(__name__)


def process_outbox(outbox_id: int) -> str:
    """Fast-path send of one outbox job, enqueued by the insert hook trigger."""
    from apps.backend.config import get_settings
    from apps.backend.database import get_session_factory
    from apps.backend.services.outbox_dispatcher import OutboxDispatcher
    from apps.backend.services.wa_sender import get_sender
    from apps.worker.outbox_worker import default_worker_id

    s = get_settings()
    dispatcher = OutboxDispatcher(
        get_session_factory(),
        worker_id=f"rq-{default_worker_id()}",
        sender=get_sender(s),
        settings=s,
    )
    outcome = dispatcher.process_one(int(outbox_id))
    logger.info("rq_process_outbox outbox_id=%s outcome=%s", outbox_id, outcome)
    return outcome
