"""
Vision model helper shared by metadata inference, page extraction and answer keys.

Given a page image and a prompt, returns the model's text plus token counts.
Model: gpt-4o (override with VISION_MODEL env var)
"""

import base64
import os
from dataclasses import dataclass

from openai import AsyncOpenAI

from .config import VISION_MODEL, VISION_PROVIDER, VISION_MAX_TOKENS


@dataclass
class VisionResponse:
    """Raw model answer and usage for one invocation."""
    text: str
    input_tokens: int
    output_tokens: int
    model: str
    provider: str = VISION_PROVIDER

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class OpenAIVisionClient:
    """
    Chat-completions client sending one PNG as an image_url part.

    The AsyncOpenAI client is created on first use so importing this module
    never requires OPENAI_API_KEY.
    """

    provider = "openai"

    def __init__(self, api_key: str | None = None, model: str = VISION_MODEL):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.model = model
        self._client: AsyncOpenAI | None = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.api_key:
                raise RuntimeError(
                    "OPENAI_API_KEY is not set. Add it to your .env file."
                )
            # extraction.retry owns retries and writes a ledger row per attempt
            self._client = AsyncOpenAI(api_key=self.api_key, max_retries=0)
        return self._client

    async def analyze(
        self,
        image_png: bytes,
        prompt: str,
        system: str = "You extract structured data from exam paper scans. Output only JSON.",
        model: str | None = None,
        max_tokens: int = VISION_MAX_TOKENS,
    ) -> VisionResponse:
        """
        Send one page image with an instruction and return the model answer.

        Args:
            image_png: PNG bytes of the page
            prompt:    User-turn instruction
            system:    System prompt
            model:     Override the configured model
            max_tokens: Max response tokens

        Returns:
            VisionResponse with text and token usage
        """
        client = self._get_client()
        b64 = base64.b64encode(image_png).decode("utf-8")
        model_name = model or self.model
        response = await client.chat.completions.create(
            model=model_name,
            messages=[
                {"role": "system", "content": system},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{b64}", "detail": "high"}},
                    ],
                },
            ],
            temperature=0.1,
            max_tokens=max_tokens,
        )
        usage = response.usage
        return VisionResponse(
            text=response.choices[0].message.content or "",
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            model=model_name,
            provider=self.provider,
        )


# Lazy singleton
_vision_client: OpenAIVisionClient | None = None


def get_vision_client() -> OpenAIVisionClient:
    global _vision_client
    if _vision_client is None:
        _vision_client = OpenAIVisionClient()
    return _vision_client
