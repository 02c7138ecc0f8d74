from datetime import timedelta
from typing import Dict, Optional

import structlog
from redis import Redis
from rq import Queue, Worker
from rq.registry import FailedJobRegistry, FinishedJobRegistry, StartedJobRegistry

from config import EXPIRY_SWEEP_INTERVAL_SECONDS, QUEUE_NAME, REDIS_URL
from confirmation import PaymentConfirmationBridge
from database import SessionLocal
from errors import PaymentLinkError
from gateway import MercadoPagoGateway
from links import LinkLifecycleManager

logger = structlog.get_logger(__name__)


def get_redis_conn() -> Redis:
    return Redis.from_url(REDIS_URL)


def get_queue() -> Queue:
    return Queue(QUEUE_NAME, connection=get_redis_conn(), default_timeout=120)


def enqueue_notification(envelope: Optional[dict], query: Optional[dict] = None):
    return get_queue().enqueue("queue_jobs.process_notification_job", envelope, query)


def schedule_expiry_sweep(delay_seconds: int = EXPIRY_SWEEP_INTERVAL_SECONDS):
    if delay_seconds <= 0:
        return None
    return get_queue().enqueue_in(timedelta(seconds=delay_seconds), "queue_jobs.expire_stale_links_job")


def expire_stale_links_job() -> int:
    db = SessionLocal()
    try:
        changed = LinkLifecycleManager(db).expire_stale_links()
        logger.info("expiry_sweep_finished", expired=changed)
    finally:
        db.close()

    schedule_expiry_sweep()
    return changed


def process_notification_job(envelope: Optional[dict], query: Optional[dict] = None) -> bool:
    db = SessionLocal()
    try:
        return PaymentConfirmationBridge(db, MercadoPagoGateway()).handle_notification(envelope, query)
    except PaymentLinkError as ex:
        logger.error("webhook_processing_failed", code=ex.code, error=ex.description)
        return False
    finally:
        db.close()


def get_job_queue_status() -> Dict:
    queue = get_queue()
    started = StartedJobRegistry(queue=queue)
    failed = FailedJobRegistry(queue=queue)
    finished = FinishedJobRegistry(queue=queue)
    workers = Worker.all(connection=queue.connection)

    return {
        "pending": queue.count,
        "processing": len(started.get_job_ids()),
        "completed": len(finished.get_job_ids()),
        "failed": len(failed.get_job_ids()),
        "worker_status": "running" if len(workers) > 0 else "stopped",
    }
