import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel

from leadflow.api.deps import get_services
from leadflow.models.generation_job import InvalidTransitionError
from leadflow.runtime import Services
from leadflow.services.job_pipeline import JobNotFoundError
from leadflow.tasks import invalidate_sequence_cache_task

logger = logging.getLogger(__name__)
router = APIRouter()


class CacheInvalidateRequest(BaseModel):
    trigger: Optional[str] = None


@router.post("/jobs/{job_id}/retry")
async def retry_job(job_id: str, services: Services = Depends(get_services)):
    try:
        status = await services.jobs.retry_job(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    logger.info(f"[PIPELINE] Operator retry: job {job_id} -> {status.value}")
    return {"job_id": job_id, "status": status.value}


@router.post("/sequences/cache/invalidate")
async def invalidate_sequence_cache(body: Optional[CacheInvalidateRequest] = None,
                                    services: Services = Depends(get_services)):
    trigger = body.trigger if body else None
    services.catalog.invalidate(trigger)
    try:
        invalidate_sequence_cache_task.delay(trigger)
    except Exception as e:
        logger.warning(f"[CATALOG] Could not notify workers: {e}")
    return {"invalidated": trigger or "all"}


@router.get("/media/{filename:path}")
async def get_media(filename: str, services: Services = Depends(get_services)):
    stored = await services.storage.open(filename)
    if stored is None:
        raise HTTPException(status_code=404, detail="Media not found")
    data, content_type = stored
    return Response(content=data, media_type=content_type)
