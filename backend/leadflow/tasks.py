import logging
from typing import Awaitable, Callable, Optional

from leadflow.celery_config import celery_app
from leadflow.runtime import Services, runtime
from leadflow.services.tick_guard import RedisTickGuard

logger = logging.getLogger(__name__)

tick_guard = RedisTickGuard()


def run_tick(name: str, work: Callable[[Services], Awaitable]):
    """
    Run one periodic tick under its per-kind lock. Errors stop here: the next
    tick runs on schedule regardless.
    """
    with tick_guard.hold(name) as acquired:
        if not acquired:
            return None
        try:
            logger.info(f"=== {name.upper()} TICK STARTED ===")
            result = runtime.run(work)
            logger.info(f"=== {name.upper()} TICK COMPLETED ({result}) ===")
            return result
        except Exception as e:
            logger.error(f"=== {name.upper()} TICK FAILED ===")
            logger.error(f"Error: {e}", exc_info=True)
            return None


@celery_app.task(name="leadflow.tasks.advance_sequences_task", acks_late=True)
def advance_sequences_task():
    return run_tick("sequences", lambda services: services.drip.advance_all())


@celery_app.task(name="leadflow.tasks.generate_lyrics_task", acks_late=True)
def generate_lyrics_task():
    return run_tick("lyrics", lambda services: services.jobs.generate_lyrics())


@celery_app.task(name="leadflow.tasks.generate_style_prompt_task", acks_late=True)
def generate_style_prompt_task():
    return run_tick("style_prompt", lambda services: services.jobs.generate_style_prompt())


@celery_app.task(name="leadflow.tasks.submit_audio_task", acks_late=True)
def submit_audio_task():
    return run_tick("audio_task", lambda services: services.jobs.submit_audio_task())


@celery_app.task(name="leadflow.tasks.process_clip_task", acks_late=True)
def process_clip_task():
    return run_tick("clip", lambda services: services.jobs.process_clip())


@celery_app.task(name="leadflow.tasks.deliver_clip_task", acks_late=True)
def deliver_clip_task():
    return run_tick("delivery", lambda services: services.jobs.deliver())


@celery_app.task(name="leadflow.tasks.reclaim_stuck_jobs_task", acks_late=True)
def reclaim_stuck_jobs_task():
    return run_tick("reclaim", lambda services: services.jobs.reclaim_stuck_jobs())


@celery_app.task(name="leadflow.tasks.generate_scripts_task", acks_late=True)
def generate_scripts_task():
    return run_tick("script_generation", lambda services: services.scripts.generate_scripts())


@celery_app.task(name="leadflow.tasks.deliver_scripts_task", acks_late=True)
def deliver_scripts_task():
    return run_tick("script_delivery", lambda services: services.scripts.deliver_scripts())


@celery_app.task(name="leadflow.tasks.invalidate_sequence_cache_task")
def invalidate_sequence_cache_task(trigger: Optional[str] = None):
    """Drop cached sequence definitions in the worker process that picks this up."""
    runtime.start()
    runtime.services.catalog.invalidate(trigger)
