import logging
from typing import Optional, Tuple

import httpx

from leadflow.core.config import settings

logger = logging.getLogger(__name__)


class AudioGenerationError(Exception):
    pass


class AudioGenerationClient:
    """Submits song-generation tasks; results arrive later on the callback endpoint."""

    def __init__(self, api_url: Optional[str] = None, api_key: Optional[str] = None,
                 callback_url: Optional[str] = None, model: Optional[str] = None,
                 timeout: float = 60.0, client: Optional[httpx.AsyncClient] = None):
        self.api_url = api_url or settings.AUDIO_API_URL
        self.api_key = api_key if api_key is not None else settings.AUDIO_API_KEY
        self.callback_url = callback_url or settings.CALLBACK_URL
        self.model = model or settings.AUDIO_MODEL
        self.timeout = timeout
        self._client = client

    async def submit_task(self, title: str, style_prompt: str, lyrics: str) -> str:
        payload = {
            "model": self.model,
            "customMode": True,
            "instrumental": False,
            "title": title,
            "style": style_prompt,
            "prompt": lyrics,
            "callbackUrl": self.callback_url,
        }
        headers = {
            "content-type": "application/json",
            "authorization": f"Bearer {self.api_key}",
        }
        client = self._client or httpx.AsyncClient()
        try:
            response = await client.post(self.api_url, json=payload, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise AudioGenerationError(f"Audio task submission failed: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

        try:
            body = response.json()
        except ValueError:
            raise AudioGenerationError(f"Non-JSON response ({response.status_code}) from audio service")

        task_id = (body.get("data") or {}).get("taskId")
        if body.get("code") != 200 or not task_id:
            raise AudioGenerationError(f"No task id from audio service (code={body.get('code')}, msg={body.get('msg')})")

        logger.info(f"[AUDIO] Task {task_id} submitted for '{title}'")
        return task_id


def parse_callback_payload(raw: dict) -> Tuple[Optional[str], Optional[str]]:
    """
    Pull (task_id, source_audio_url) out of a completion callback. Either may
    be None: intermediate callbacks carry a task id but no audio yet.
    """
    raw = raw or {}
    data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
    task_id = raw.get("taskId") or data.get("taskId") or data.get("task_id")

    audio_url = None
    items = data.get("data")
    if isinstance(items, list):
        for item in items:
            if not isinstance(item, dict):
                continue
            audio_url = item.get("audio_url") or item.get("source_audio_url")
            if audio_url:
                break
    return task_id, audio_url or None
