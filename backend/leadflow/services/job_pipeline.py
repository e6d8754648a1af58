"""
Content-generation pipeline.

One method per stage. Each stage picks at most one job in its entry status,
claims it with a compare-and-set on the status field and writes the artifact
plus the next status in a single update. Failures park the job in the error
status owned by the stage; only jobs stuck in PROCESSING are reset
automatically, by reclaim_stuck_jobs().
"""

import logging
from datetime import timedelta
from typing import Iterable, Optional

from leadflow.core.clock import Clock, as_utc, utcnow
from leadflow.core.config import settings
from leadflow.db.store import DocumentStore
from leadflow.models.generation_job import (
    RETRY_TARGETS,
    GenerationJob,
    InvalidTransitionError,
    JobStatus,
    check_transition,
)
from leadflow.models.lead import LeadModel
from leadflow.models.sequence import TextMessage
from leadflow.services.enrollment import enroll_lead
from leadflow.services.media import MediaProcessingError
from leadflow.services.outbound import Messenger, first_token
from leadflow.services.sequence_catalog import SequenceCatalog
from leadflow.services.transport import send_clip

logger = logging.getLogger(__name__)

LYRICS_SYSTEM_PROMPT = "Eres un compositor creativo."
LYRICS_TEMPLATE = (
    "Escribe una letra de canción con lenguaje simple siguiendo esta estructura:\n"
    "verso 1, verso 2, coro, verso 3, verso 4 y coro.\n"
    "Agrega título en negritas.\n"
    "Propósito: {purpose}.\n"
    "Nombre: {include_name}.\n"
    "Anecdotas: {anecdotes}."
)

STYLE_SYSTEM_PROMPT = "Eres un redactor creativo de prompts musicales."
STYLE_DRAFT_TEMPLATE = (
    "Crea un prompt para una canción estilo {artist}, género {genre}, tipo de voz {voice_type}, "
    "lista solo elementos separados por comas (máx {limit} caracteres)."
)
STYLE_COMPRESS_TEMPLATE = 'Refina para menos de {limit} caracteres, responde solo con el prompt: "{draft}"'

GREETING_TEMPLATE = "Hola {first_name}, aquí la letra:\n\n{lyrics}"
FOLLOW_UP_TEXT = "¿Cómo la ves? Ahora escucha el clip."

# Clip sub-step -> status the job is parked in when that sub-step fails
CLIP_FAILURES = {
    "trim": JobStatus.ERROR_CLIP,
    "transcode": JobStatus.ERROR_CLIP,
    "watermark": JobStatus.ERROR_WATERMARK,
    "upload": JobStatus.ERROR_UPLOAD,
}


class JobNotFoundError(LookupError):
    pass


class JobPipeline:
    def __init__(self, store: DocumentStore, catalog: SequenceCatalog, llm, audio_client, media, storage,
                 messenger: Messenger, clock: Optional[Clock] = None, watermark_url: Optional[str] = None):
        self.store = store
        self.catalog = catalog
        self.llm = llm
        self.audio_client = audio_client
        self.media = media
        self.storage = storage
        self.messenger = messenger
        self.clock = clock or utcnow
        self.watermark_url = watermark_url if watermark_url is not None else settings.WATERMARK_URL

    # ---------------------------------------------------------------- helpers

    async def _next_job(self, status: JobStatus, extra: Optional[dict] = None,
                        sort_field: str = "created_at") -> Optional[GenerationJob]:
        query = {"status": status.value, **(extra or {})}
        document = await self.store.find_one(
            GenerationJob.COLLECTION, query, sort=[(sort_field, DocumentStore.ASCENDING)]
        )
        return GenerationJob.from_document(document) if document else None

    async def _transition(self, job: GenerationJob, target: JobStatus, set_fields: Optional[dict] = None,
                          unset_fields: Optional[Iterable[str]] = None) -> bool:
        """
        Move `job` to `target` in one update, guarded on the status it was read
        with. Returns False when another writer got there first.
        """
        check_transition(job.status, target)
        fields = {"status": target.value, "updated_at": self.clock(), **(set_fields or {})}
        applied = await self.store.update(
            GenerationJob.COLLECTION,
            job.job_id,
            set_fields=fields,
            unset_fields=unset_fields,
            where={"status": job.status.value},
        )
        if applied:
            logger.info(f"[PIPELINE] Job {job.job_id}: {job.status.value} -> {target.value}")
            job.status = target
        else:
            logger.warning(f"[PIPELINE] Job {job.job_id}: lost claim {job.status.value} -> {target.value}")
        return applied

    async def _park(self, job: GenerationJob, target: JobStatus, error: str) -> bool:
        logger.error(f"[PIPELINE] Job {job.job_id} parked in {target.value}: {error}")
        return await self._transition(job, target, set_fields={"error_message": error})

    # ----------------------------------------------------------------- stages

    async def generate_lyrics(self) -> bool:
        job = await self._next_job(JobStatus.NO_LYRICS)
        if job is None:
            return False

        prompt = LYRICS_TEMPLATE.format(purpose=job.purpose, include_name=job.include_name, anecdotes=job.anecdotes)
        try:
            lyrics = await self.llm.complete(LYRICS_SYSTEM_PROMPT, prompt, max_tokens=settings.LYRICS_MAX_TOKENS)
        except Exception as e:
            await self._park(job, JobStatus.ERROR_LYRICS, f"Lyrics generation failed: {e}")
            return True
        if not lyrics:
            await self._park(job, JobStatus.ERROR_LYRICS, "Lyrics generation returned no text")
            return True

        if await self._transition(job, JobStatus.NO_PROMPT,
                                  set_fields={"lyrics": lyrics, "lyrics_generated_at": self.clock()}):
            if job.lead_id:
                await self.store.update(LeadModel.COLLECTION, job.lead_id, set_fields={"lyrics": lyrics})
        return True

    async def generate_style_prompt(self) -> bool:
        job = await self._next_job(JobStatus.NO_PROMPT)
        if job is None:
            return False

        limit = settings.STYLE_PROMPT_MAX_LENGTH
        try:
            draft = await self.llm.complete(
                STYLE_SYSTEM_PROMPT,
                STYLE_DRAFT_TEMPLATE.format(artist=job.artist, genre=job.genre, voice_type=job.voice_type, limit=limit),
            )
            compressed = await self.llm.complete(
                STYLE_SYSTEM_PROMPT,
                STYLE_COMPRESS_TEMPLATE.format(limit=limit, draft=draft),
            )
        except Exception as e:
            await self._park(job, JobStatus.ERROR_PROMPT, f"Style prompt generation failed: {e}")
            return True

        style_prompt = (compressed or "").strip().strip('"')[:limit].strip()
        if not style_prompt:
            await self._park(job, JobStatus.ERROR_PROMPT, "Style prompt generation returned no text")
            return True

        await self._transition(job, JobStatus.NO_AUDIO_TASK, set_fields={"style_prompt": style_prompt})
        return True

    async def submit_audio_task(self) -> bool:
        job = await self._next_job(JobStatus.NO_AUDIO_TASK)
        if job is None:
            return False

        # Claim before the external call: a crash from here on leaves the job visibly in PROCESSING
        if not await self._transition(job, JobStatus.PROCESSING, set_fields={"submitted_at": self.clock()}):
            return False

        try:
            if not job.lyrics or not job.style_prompt:
                raise ValueError("lyrics and style prompt are required")
            task_id = await self.audio_client.submit_task(
                title=job.purpose[:settings.TITLE_MAX_LENGTH],
                style_prompt=job.style_prompt,
                lyrics=job.lyrics,
            )
        except Exception as e:
            await self._park(job, JobStatus.ERROR_GENERATION, f"Task submission failed: {e}")
            return True

        await self.store.update(
            GenerationJob.COLLECTION,
            job.job_id,
            set_fields={"task_id": task_id},
            where={"status": JobStatus.PROCESSING.value},
        )
        logger.info(f"[PIPELINE] Job {job.job_id} awaiting callback for task {task_id}")
        return True

    async def handle_callback(self, task_id: str, audio_url: Optional[str]) -> bool:
        """
        Correlate a completion callback with the job awaiting it. Returns False
        when nothing matched (duplicate, late or foreign task); raises after
        parking the job when processing a matched callback fails.
        """
        if not task_id or not audio_url:
            return False
        job = await self._next_job(JobStatus.PROCESSING, extra={"task_id": task_id})
        if job is None:
            unassigned = await self.store.find_one(
                GenerationJob.COLLECTION,
                {"status": JobStatus.PROCESSING.value, "task_id": {"$exists": False}},
            )
            if unassigned:
                # Submission not yet recorded; the reclaimer will resubmit this job
                logger.warning(f"[CALLBACK] Task {task_id} matched nothing while job {unassigned['_id']} "
                               f"is still waiting for its task id")
            else:
                logger.info(f"[CALLBACK] No job awaiting task {task_id}, ignoring")
            return False

        try:
            data = await self.storage.download(audio_url)
            full_url = await self.storage.upload(f"generation/full/{task_id}.mp3", data, "audio/mpeg")
        except Exception as e:
            await self._park(job, JobStatus.ERROR_GENERATION, f"Storing generated audio failed: {e}")
            raise

        return await self._transition(job, JobStatus.AUDIO_READY,
                                      set_fields={"full_url": full_url, "generated_at": self.clock()})

    async def process_clip(self) -> bool:
        job = await self._next_job(JobStatus.AUDIO_READY)
        if job is None:
            return False
        if not await self._transition(job, JobStatus.CLIP_GENERATING):
            return False

        step = "trim"
        try:
            if not job.full_url:
                raise ValueError("job has no full audio")
            full = await self.storage.download(job.full_url)
            clip = await self.media.trim(full, 0, settings.CLIP_DURATION_SECONDS)

            step = "watermark"
            if not self.watermark_url:
                raise ValueError("no watermark configured")
            watermark = await self.storage.download(self.watermark_url)
            clip = await self.media.mix_overlay(clip, watermark, settings.WATERMARK_DELAY_MS, settings.WATERMARK_VOLUME)

            step = "transcode"
            clip = await self.media.transcode(clip, "aac", "mp4")

            step = "upload"
            clip_url = await self.storage.upload(f"generation/clip/{job.job_id}-clip.m4a", clip, "audio/mp4")
        except Exception as e:
            failed = e.step if isinstance(e, MediaProcessingError) else step
            await self._park(job, CLIP_FAILURES.get(failed, JobStatus.ERROR_CLIP), f"{failed} failed: {e}")
            return True

        await self._transition(job, JobStatus.DELIVERY_PENDING, set_fields={"clip_url": clip_url})
        return True

    async def deliver(self) -> bool:
        now = self.clock()
        cutoff = now - timedelta(minutes=settings.DELIVERY_COOLDOWN_MINUTES)
        job = await self._next_job(JobStatus.DELIVERY_PENDING, extra={"generated_at": {"$lte": cutoff}},
                                   sort_field="generated_at")
        if job is None:
            return False

        if not job.lead_phone or not job.lyrics or not job.clip_url:
            await self._park(job, JobStatus.ERROR_DELIVERY, "phone, lyrics and clip are required for delivery")
            return True

        if not await self.messenger.transport.is_connected():
            logger.info(f"[PIPELINE] Messaging session not connected, job {job.job_id} stays pending")
            return False

        lead = await self.store.get(LeadModel.COLLECTION, job.lead_id) if job.lead_id else None
        target = lead or job.lead_phone
        jid = self.messenger.resolver.resolve_target(target)
        first_name = first_token((lead or {}).get("name"))

        greeting = GREETING_TEMPLATE.format(first_name=first_name, lyrics=job.lyrics)
        try:
            if not jid:
                raise ValueError(f"no routable id for {job.lead_phone}")
            for text in (greeting, FOLLOW_UP_TEXT):
                if not await self.messenger.send(target, TextMessage(text=text)):
                    raise ValueError("text message was not sent")
                await self.messenger.record(job.lead_id, content=text)
            await send_clip(self.messenger.transport, jid, job.clip_url)
            await self.messenger.record(job.lead_id, sender="business", media_type="audio", media_url=job.clip_url)
        except Exception as e:
            await self._park(job, JobStatus.ERROR_DELIVERY, f"Delivery failed: {e}")
            return True

        if await self._transition(job, JobStatus.DELIVERED, set_fields={"sent_at": now}):
            await enroll_lead(self.store, self.catalog, job.lead_id, settings.CLIP_DELIVERED_TRIGGER, now)
        return True

    # ------------------------------------------------------------ maintenance

    async def reclaim_stuck_jobs(self, threshold_minutes: Optional[int] = None) -> int:
        threshold = threshold_minutes if threshold_minutes is not None else settings.STUCK_JOB_THRESHOLD_MINUTES
        cutoff = self.clock() - timedelta(minutes=threshold)
        documents = await self.store.find(
            GenerationJob.COLLECTION,
            {"status": JobStatus.PROCESSING.value, "submitted_at": {"$lte": cutoff}},
        )
        reclaimed = 0
        for document in documents:
            job = GenerationJob.from_document(document)
            if job.submitted_at is None or as_utc(job.submitted_at) > cutoff:
                continue
            if await self._transition(job, JobStatus.NO_AUDIO_TASK, unset_fields=["task_id", "error_message"]):
                reclaimed += 1
        if reclaimed:
            logger.info(f"[PIPELINE] Reclaimed {reclaimed} stuck job(s)")
        return reclaimed

    async def retry_job(self, job_id: str) -> JobStatus:
        """Operator retry: send a parked job back to the entry status of the stage that failed."""
        document = await self.store.get(GenerationJob.COLLECTION, job_id)
        if document is None:
            raise JobNotFoundError(job_id)
        job = GenerationJob.from_document(document)
        target = RETRY_TARGETS.get(job.status)
        if target is None:
            raise InvalidTransitionError(f"Job {job_id} is {job.status.value}, nothing to retry")
        unset_fields = ["error_message"]
        if target == JobStatus.NO_AUDIO_TASK:
            unset_fields.append("task_id")
        if not await self._transition(job, target, unset_fields=unset_fields):
            raise InvalidTransitionError(f"Job {job_id} changed status while retrying")
        return target
