from rq import Worker

from config import QUEUE_NAME, configure_logging
from queue_jobs import get_redis_conn, schedule_expiry_sweep


def run_worker():
    configure_logging()
    redis_conn = get_redis_conn()
    schedule_expiry_sweep(delay_seconds=1)
    worker = Worker([QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    run_worker()
