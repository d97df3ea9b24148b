"""Health, ready и worker-health endpoints."""
import redis
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from apps.backend.deps import get_db
from apps.backend.config import get_settings
from apps.backend.services.outbox_store import outbox_stats

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok", "service": "warelay"}


@router.get("/ready")
def ready(db: Session = Depends(get_db)):
    s = get_settings()
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        return JSONResponse({"status": "error", "detail": str(e)}, status_code=503)

    try:
        r = redis.Redis(host=s.redis_host, port=s.redis_port)
        r.ping()
    except Exception as e:
        return JSONResponse({"status": "error", "detail": f"redis: {e}"}, status_code=503)

    return {"status": "ok"}


def _outbox_health(stats: dict) -> str:
    queued = stats["queued"]
    age = stats["oldest_queued_minutes"]
    if queued > 100 or age > 60:
        return "critical"
    if queued > 50 or age > 30 or stats["stale_processing"] > 0:
        return "warning"
    return "healthy"


@router.get("/health/workers")
def workers_health(db: Session = Depends(get_db)):
    s = get_settings()
    stats = outbox_stats(db, stale_seconds=s.outbox_lock_stale_seconds)
    return {
        "workers": [
            {
                "name": "outbox_worker",
                "status": _outbox_health(stats),
                "queue_depth": stats["queued"],
                "details": stats,
            }
        ]
    }
