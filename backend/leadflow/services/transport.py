import base64
import logging
from typing import Any, Dict, Optional, Union

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_incrementing

from leadflow.core.config import settings

logger = logging.getLogger(__name__)

MEDIA_KINDS = {"audio", "image", "video", "document"}


class TransportError(Exception):
    """A send was attempted and failed."""


class TransportTimeoutError(TransportError):
    """The gateway did not confirm the send in time."""


class TransportUnavailableError(TransportError):
    """No active session on the messaging network."""


class WhatsAppGatewayTransport:
    """
    Send-message capability backed by an HTTP messaging gateway that holds the
    chat-network session. Targets are routing ids (`<digits>@s.whatsapp.net`);
    callers resolve numbers and leads through the IdentityResolver first.
    """

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None,
                 timeout: float = 60.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = (base_url or settings.WHATSAPP_GATEWAY_URL).rstrip("/")
        self.token = token if token is not None else settings.WHATSAPP_GATEWAY_TOKEN
        self.timeout = timeout
        self._client = client

    def _headers(self) -> Dict[str, str]:
        headers = {"content-type": "application/json"}
        if self.token:
            headers["authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(self, method: str, path: str, payload: Optional[dict] = None,
                       timeout: Optional[float] = None) -> dict:
        url = f"{self.base_url}{path}"
        client = self._client or httpx.AsyncClient()
        try:
            response = await client.request(method, url, json=payload, headers=self._headers(),
                                            timeout=timeout or self.timeout)
        except httpx.TimeoutException as e:
            raise TransportTimeoutError(f"Timed Out calling {path}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Gateway request to {path} failed: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

        if response.status_code in (408, 504):
            raise TransportTimeoutError(f"Timed Out ({response.status_code}) calling {path}")
        if response.status_code == 503:
            raise TransportUnavailableError("No active messaging session")
        if response.status_code >= 400:
            raise TransportError(f"Gateway returned {response.status_code} for {path}: {response.text[:200]}")
        try:
            return response.json()
        except ValueError:
            return {}

    async def status(self) -> dict:
        try:
            return await self._request("GET", "/session/status")
        except TransportError as e:
            logger.warning(f"[TRANSPORT] Status check failed: {e}")
            return {"connected": False, "status": "unreachable"}

    async def is_connected(self) -> bool:
        return bool((await self.status()).get("connected"))

    async def send_text(self, target: str, text: str, options: Optional[Dict[str, Any]] = None) -> dict:
        payload = {"jid": target, "text": text, "linkPreview": False}
        payload.update(options or {})
        return await self._request("POST", "/messages/text", payload)

    async def send_media(self, target: str, kind: str, url_or_bytes: Union[str, bytes],
                         options: Optional[Dict[str, Any]] = None) -> dict:
        if kind not in MEDIA_KINDS:
            raise ValueError(f"Unsupported media kind: {kind}")
        options = dict(options or {})
        timeout = options.pop("timeout", None)
        payload = {"jid": target, "kind": kind, **options}
        if isinstance(url_or_bytes, (bytes, bytearray)):
            payload["data"] = base64.b64encode(bytes(url_or_bytes)).decode("ascii")
        else:
            payload["url"] = url_or_bytes
        return await self._request("POST", "/messages/media", payload, timeout=timeout)


async def send_clip(transport, target: str, clip_url: str, attempts: int = 3, backoff_seconds: float = 2.0):
    """
    Send an audio clip inline. Only a timeout is retried, with a growing
    pause between attempts; any other failure propagates at once.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_incrementing(start=backoff_seconds, increment=backoff_seconds),
        retry=retry_if_exception_type(TransportTimeoutError),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            number = attempt.retry_state.attempt_number
            if number > 1:
                logger.warning(f"[TRANSPORT] Clip send to {target} timed out, attempt {number}/{attempts}")
            await transport.send_media(
                target, "audio", clip_url,
                {"mimetype": "audio/mp4", "ptt": False, "sendSeen": False, "timeout": 120.0},
            )
            logger.info(f"[TRANSPORT] Clip sent (attempt {number}) to {target}")
