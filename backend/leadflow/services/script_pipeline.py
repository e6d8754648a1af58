import logging
from datetime import timedelta
from typing import Optional

from leadflow.core.clock import Clock, utcnow
from leadflow.core.config import settings
from leadflow.db.store import DocumentStore
from leadflow.models.generation_job import InvalidTransitionError
from leadflow.models.sequence import AudioMessage, TextMessage
from leadflow.models.video_script import SCRIPT_TRANSITIONS, ScriptStatus, VideoScript
from leadflow.services.enrollment import enroll_lead
from leadflow.services.outbound import Messenger, first_token
from leadflow.services.sequence_catalog import SequenceCatalog

logger = logging.getLogger(__name__)

SCRIPT_SYSTEM_PROMPT = "Eres un experto creador de guiones de video persuasivos."
SCRIPT_TEMPLATE = """Eres un creador de guiones de 1 minuto usando el método de viralidad en ventas.
Tu lenguaje debe ser muy sencillo y cercano al dueño de negocio.
Divide el guion en bloques con tiempos aproximados y utiliza estos datos:

- Descripción del negocio/producto: {description}
- Nombre del negocio: {business_name}
- Objetivo del anuncio: {purpose}
- Promoción (si la hay): {promo}

Estructura sugerida:
1. 0:00-0:10 Gancho: breve frase que capte atención y muestre el beneficio principal.
2. 0:10-0:20 Testimonio: cita corta de un cliente satisfecho.
3. 0:20-0:30 Dolor: describe el problema que enfrenta tu cliente.
4. 0:30-0:40 Solución: muestra cómo resuelves ese problema.
5. 0:40-0:55 Llamado a la acción: invita a aprovechar la promoción con urgencia.
6. 0:55-1:00 Cierre: logo, contacto y CTA final.

Texto para voz con tono cercano y entusiasta. Notas de edición: ritmo dinámico, texto en pantalla, música que sube en la parte 3.

Escribe el guion en español, máximo 250-300 palabras, listo para grabar."""

READY_NOTICE_TEMPLATE = "¡Listo {first_name}! El guion de tu anuncio está listo. Revísalo y dime si tienes dudas."


def check_script_transition(current: ScriptStatus, target: ScriptStatus) -> None:
    if (ScriptStatus(current), ScriptStatus(target)) not in SCRIPT_TRANSITIONS:
        raise InvalidTransitionError(f"Illegal script transition: {current} -> {target}")


class ScriptPipeline:
    """Video ad scripts: generated in small batches, delivered once after a cooldown."""

    def __init__(self, store: DocumentStore, catalog: SequenceCatalog, llm, messenger: Messenger,
                 clock: Optional[Clock] = None, voice_note_url: Optional[str] = None):
        self.store = store
        self.catalog = catalog
        self.llm = llm
        self.messenger = messenger
        self.clock = clock or utcnow
        self.voice_note_url = voice_note_url if voice_note_url is not None else settings.SCRIPT_AUDIO_URL

    async def _transition(self, script: VideoScript, target: ScriptStatus, set_fields: Optional[dict] = None) -> bool:
        check_script_transition(script.status, target)
        applied = await self.store.update(
            VideoScript.COLLECTION,
            script.script_id,
            set_fields={"status": target.value, **(set_fields or {})},
            where={"status": script.status.value},
        )
        if applied:
            logger.info(f"[SCRIPTS] Script {script.script_id}: {script.status.value} -> {target.value}")
            script.status = target
        return applied

    async def generate_scripts(self, batch_size: Optional[int] = None) -> int:
        documents = await self.store.find(
            VideoScript.COLLECTION,
            {"status": ScriptStatus.NO_SCRIPT.value},
            limit=batch_size or settings.SCRIPT_BATCH_SIZE,
            sort=[("created_at", DocumentStore.ASCENDING)],
        )
        generated = 0
        for document in documents:
            script = VideoScript.from_document(document)
            prompt = SCRIPT_TEMPLATE.format(
                description=script.description,
                business_name=script.business_name,
                purpose=script.purpose,
                promo=script.promo or "ninguna",
            )
            try:
                text = await self.llm.complete(SCRIPT_SYSTEM_PROMPT, prompt)
            except Exception as e:
                logger.error(f"[SCRIPTS] Generation failed for {script.script_id}: {e}", exc_info=True)
                await self._transition(script, ScriptStatus.ERROR_SCRIPT, {"error_message": str(e)})
                continue
            if not text:
                await self._transition(script, ScriptStatus.ERROR_SCRIPT, {"error_message": "Empty script"})
                continue
            if await self._transition(script, ScriptStatus.SEND_SCRIPT,
                                      {"script": text, "script_generated_at": self.clock()}):
                generated += 1
        return generated

    async def deliver_scripts(self) -> int:
        now = self.clock()
        cutoff = now - timedelta(minutes=settings.DELIVERY_COOLDOWN_MINUTES)
        documents = await self.store.find(
            VideoScript.COLLECTION,
            {"status": ScriptStatus.SEND_SCRIPT.value, "script_generated_at": {"$lte": cutoff}},
            sort=[("script_generated_at", DocumentStore.ASCENDING)],
        )
        delivered = 0
        for document in documents:
            script = VideoScript.from_document(document)
            if not script.lead_phone or not script.script:
                continue
            if not await self.messenger.transport.is_connected():
                logger.info("[SCRIPTS] Messaging session not connected, delivery postponed")
                break

            # Claimed as sent before any message goes out: a failure below never causes a resend
            if not await self._transition(script, ScriptStatus.SENT, {"sent_at": now}):
                continue
            try:
                await self._send(script)
            except Exception as e:
                logger.error(f"[SCRIPTS] Delivery of {script.script_id} failed after claim: {e}", exc_info=True)
                await self.store.update(VideoScript.COLLECTION, script.script_id, set_fields={"error_message": str(e)})
                continue

            await enroll_lead(self.store, self.catalog, script.lead_id, settings.SCRIPT_SENT_TRIGGER, now)
            delivered += 1
            logger.info(f"[SCRIPTS] Script {script.script_id} delivered")
        return delivered

    async def _send(self, script: VideoScript):
        target = {"_id": script.lead_id, "phone": script.lead_phone, "name": script.sender_name}
        notice = READY_NOTICE_TEMPLATE.format(first_name=first_token(script.sender_name))

        for text in (notice, script.script):
            if await self.messenger.send(target, TextMessage(text=text)):
                await self.messenger.record(script.lead_id, content=text)

        if self.voice_note_url:
            if await self.messenger.send(target, AudioMessage(url=self.voice_note_url)):
                await self.messenger.record(script.lead_id, media_type="audio", media_url=self.voice_note_url)
