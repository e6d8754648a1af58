import logging
import time

from celery.signals import worker_process_init

from leadflow.celery_config import celery_app
from leadflow.runtime import runtime
import leadflow.scheduler  # noqa: F401  registers the periodic tasks

# Entry point for the Celery worker and beat:
#   celery -A leadflow.celery_worker.celery worker --beat --loglevel=info --concurrency=1
# One process owns the sequence catalog the invalidation task flushes.

logger = logging.getLogger(__name__)


@worker_process_init.connect
def on_worker_init(**kwargs):
    """
    Build the per-process runtime (event loop, database connection, sequence
    catalog) when a worker process starts.
    """
    logger.info("Celery worker process initializing...")
    try:
        runtime.start()
        logger.info("Runtime initialized for Celery worker.")
    except Exception as e:
        logger.error(f"Failed to initialize Celery worker runtime: {e}", exc_info=True)
        time.sleep(5)
        try:
            runtime.start()
            logger.info("Runtime initialized for Celery worker (retry successful).")
        except Exception as retry_error:
            logger.error(f"Failed to initialize Celery worker runtime (retry failed): {retry_error}", exc_info=True)
            raise SystemExit(1)


celery = celery_app
