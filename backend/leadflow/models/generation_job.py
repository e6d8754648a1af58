"""
Generation job lifecycle.

A job moves through exactly one of these statuses at a time. Each stage
worker owns the transition out of its entry status; any write that is not in
TRANSITIONS is rejected before it reaches the store.
"""

from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Optional


class JobStatus(str, Enum):
    # Text generation
    NO_LYRICS = "no_lyrics"
    NO_PROMPT = "no_prompt"

    # External audio task
    NO_AUDIO_TASK = "no_audio_task"
    PROCESSING = "processing"            # submitted, awaiting the callback
    AUDIO_READY = "audio_ready"

    # Post-processing and delivery
    CLIP_GENERATING = "clip_generating"
    DELIVERY_PENDING = "delivery_pending"
    DELIVERED = "delivered"

    # Parked for manual intervention
    ERROR_LYRICS = "error_lyrics"
    ERROR_PROMPT = "error_prompt"
    ERROR_GENERATION = "error_generation"
    ERROR_CLIP = "error_clip"
    ERROR_WATERMARK = "error_watermark"
    ERROR_UPLOAD = "error_upload"
    ERROR_DELIVERY = "error_delivery"


ERROR_STATUSES = {
    JobStatus.ERROR_LYRICS,
    JobStatus.ERROR_PROMPT,
    JobStatus.ERROR_GENERATION,
    JobStatus.ERROR_CLIP,
    JobStatus.ERROR_WATERMARK,
    JobStatus.ERROR_UPLOAD,
    JobStatus.ERROR_DELIVERY,
}

# Where an operator retry sends a parked job
RETRY_TARGETS = {
    JobStatus.ERROR_LYRICS: JobStatus.NO_LYRICS,
    JobStatus.ERROR_PROMPT: JobStatus.NO_PROMPT,
    JobStatus.ERROR_GENERATION: JobStatus.NO_AUDIO_TASK,
    JobStatus.ERROR_CLIP: JobStatus.AUDIO_READY,
    JobStatus.ERROR_WATERMARK: JobStatus.AUDIO_READY,
    JobStatus.ERROR_UPLOAD: JobStatus.AUDIO_READY,
    JobStatus.ERROR_DELIVERY: JobStatus.DELIVERY_PENDING,
}

TRANSITIONS = {
    # (current_status, next_status)
    (JobStatus.NO_LYRICS, JobStatus.NO_PROMPT),
    (JobStatus.NO_LYRICS, JobStatus.ERROR_LYRICS),

    (JobStatus.NO_PROMPT, JobStatus.NO_AUDIO_TASK),
    (JobStatus.NO_PROMPT, JobStatus.ERROR_PROMPT),

    (JobStatus.NO_AUDIO_TASK, JobStatus.PROCESSING),
    (JobStatus.PROCESSING, JobStatus.AUDIO_READY),
    (JobStatus.PROCESSING, JobStatus.ERROR_GENERATION),
    (JobStatus.PROCESSING, JobStatus.NO_AUDIO_TASK),   # stuck-job reclaim

    (JobStatus.AUDIO_READY, JobStatus.CLIP_GENERATING),
    (JobStatus.CLIP_GENERATING, JobStatus.DELIVERY_PENDING),
    (JobStatus.CLIP_GENERATING, JobStatus.ERROR_CLIP),
    (JobStatus.CLIP_GENERATING, JobStatus.ERROR_WATERMARK),
    (JobStatus.CLIP_GENERATING, JobStatus.ERROR_UPLOAD),

    (JobStatus.DELIVERY_PENDING, JobStatus.DELIVERED),
    (JobStatus.DELIVERY_PENDING, JobStatus.ERROR_DELIVERY),
} | set(RETRY_TARGETS.items())


class InvalidTransitionError(ValueError):
    """Raised when a status write is not in the transition table."""


def check_transition(current: JobStatus, target: JobStatus) -> None:
    if (JobStatus(current), JobStatus(target)) not in TRANSITIONS:
        raise InvalidTransitionError(f"Illegal transition: {current} -> {target}")


class GenerationJob(BaseModel):
    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)

    COLLECTION: ClassVar[str] = "generation_jobs"

    job_id: str = Field(..., alias="_id")
    lead_id: Optional[str] = None
    lead_phone: Optional[str] = None
    status: JobStatus = JobStatus.NO_LYRICS

    # Inputs
    purpose: str = ""
    include_name: str = ""
    anecdotes: str = ""
    artist: str = ""
    genre: str = ""
    voice_type: str = ""

    # Artifacts
    lyrics: Optional[str] = None
    style_prompt: Optional[str] = None
    task_id: Optional[str] = None
    full_url: Optional[str] = None
    clip_url: Optional[str] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None       # last stage entered
    lyrics_generated_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    generated_at: Optional[datetime] = None     # full audio available
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None

    def to_document(self) -> dict:
        document = self.model_dump(by_alias=True, mode="python")
        document["status"] = self.status.value
        return document

    @classmethod
    def from_document(cls, document: dict) -> "GenerationJob":
        return cls.model_validate(document)
