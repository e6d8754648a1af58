import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from leadflow.api.deps import get_services
from leadflow.runtime import Services
from leadflow.services.audio_generation import parse_callback_payload

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/generation/callback")
async def generation_callback(request: Request, services: Services = Depends(get_services)):
    """
    Completion callback from the audio-generation service. Unmatched,
    duplicate and partial callbacks are acknowledged with 200 so the service
    does not keep retrying; 500 only when a matched job failed to process.
    """
    try:
        raw = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    task_id, audio_url = parse_callback_payload(raw if isinstance(raw, dict) else {})
    logger.info(f"[CALLBACK] Received callback for task {task_id} (audio: {bool(audio_url)})")
    if not task_id:
        raise HTTPException(status_code=400, detail="Missing task id")
    if not audio_url:
        return {"status": "ignored", "reason": "no audio yet"}

    try:
        matched = await services.jobs.handle_callback(task_id, audio_url)
    except Exception as e:
        logger.error(f"[CALLBACK] Processing task {task_id} failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Callback processing failed")

    return {"status": "ok" if matched else "ignored"}
