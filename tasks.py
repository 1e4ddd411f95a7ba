"""Background task processing via RQ with synchronous fallback.

When Redis is reachable, tasks are enqueued for an RQ worker process.
Otherwise, tasks execute synchronously in the request thread. Only
context-free callables (SMTP delivery) are queued; anything that needs
the database runs in-process.

Usage:
    from tasks import enqueue
    enqueue(some_function, arg1, arg2)
"""

from __future__ import annotations

import logging

import redis
from rq import Queue

logger = logging.getLogger(__name__)

_queue: Queue | None = None


def init_tasks(app) -> None:
    """Initialize RQ queue if Redis is available. Call once from create_app()."""
    global _queue
    _queue = None

    redis_url = app.config.get("REDIS_URL", "")
    if not redis_url:
        app.logger.info("Task backend: synchronous (no REDIS_URL)")
        return

    try:
        conn = redis.Redis.from_url(redis_url)
        conn.ping()
        _queue = Queue("streak-arena", connection=conn)
        app.logger.info("Task backend: RQ (%s)", redis_url)
    except redis.RedisError as e:
        app.logger.warning("Task backend: synchronous (Redis error: %s)", e)


def enqueue(func, *args, **kwargs):
    """Push a task to RQ if available, else call synchronously.

    Returns the RQ Job object or the function's return value.
    """
    if _queue is not None:
        try:
            job = _queue.enqueue(func, *args, **kwargs)
            logger.debug("Enqueued %s (job=%s)", func.__name__, job.id)
            return job
        except redis.RedisError as e:
            logger.warning("RQ enqueue failed (%s), falling back to sync: %s", func.__name__, e)

    logger.debug("Running %s synchronously", func.__name__)
    return func(*args, **kwargs)


def is_async_available() -> bool:
    """Check if RQ background processing is available."""
    return _queue is not None
