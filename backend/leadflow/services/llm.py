import logging
from typing import Optional

import openai
from tenacity import retry, stop_after_attempt, wait_exponential

from leadflow.core.config import settings

logger = logging.getLogger(__name__)


class LLMService:
    def __init__(self, client: Optional[openai.AsyncOpenAI] = None, model: Optional[str] = None):
        self.model = model or settings.OPENAI_MODEL
        self.client = client or openai.AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            base_url=settings.OPENAI_BASE_URL,
        )

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=4, max=10), reraise=True)
    async def complete(self, system_prompt: str, user_prompt: str, max_tokens: Optional[int] = None) -> str:
        """
        One chat completion. Returns the stripped text, "" when the model
        answered with nothing.
        """
        kwargs = {}
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                **kwargs,
            )
        except Exception as e:
            logger.error(f"[LLM] Completion failed: {e}")
            raise
        if not response.choices:
            return ""
        return (response.choices[0].message.content or "").strip()
