import logging

from leadflow.celery_config import celery_app
from leadflow.core.config import settings
from leadflow.tasks import (
    advance_sequences_task,
    deliver_clip_task,
    deliver_scripts_task,
    generate_lyrics_task,
    generate_scripts_task,
    generate_style_prompt_task,
    process_clip_task,
    reclaim_stuck_jobs_task,
    submit_audio_task,
)

logger = logging.getLogger(__name__)

PERIODIC_TASKS = [
    ("advance-sequences", settings.SEQUENCE_TICK_SECONDS, advance_sequences_task),
    ("generate-lyrics", settings.LYRICS_TICK_SECONDS, generate_lyrics_task),
    ("generate-style-prompt", settings.STYLE_PROMPT_TICK_SECONDS, generate_style_prompt_task),
    ("submit-audio-task", settings.AUDIO_TASK_TICK_SECONDS, submit_audio_task),
    ("process-clip", settings.CLIP_TICK_SECONDS, process_clip_task),
    ("deliver-clip", settings.DELIVERY_TICK_SECONDS, deliver_clip_task),
    ("reclaim-stuck-jobs", settings.RECLAIM_TICK_SECONDS, reclaim_stuck_jobs_task),
    ("generate-scripts", settings.SCRIPT_TICK_SECONDS, generate_scripts_task),
    ("deliver-scripts", settings.SCRIPT_TICK_SECONDS, deliver_scripts_task),
]


# Configure periodic tasks
@celery_app.on_after_configure.connect
def setup_periodic_tasks(sender, **kwargs):
    logger.info("Setting up periodic tasks...")
    for name, interval, task in PERIODIC_TASKS:
        # A tick that expires in the queue is dropped, the next one is already scheduled
        sender.add_periodic_task(interval, task.s(), name=name, expires=interval)
    logger.info(f"{len(PERIODIC_TASKS)} periodic tasks configured")
