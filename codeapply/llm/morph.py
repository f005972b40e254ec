"""Morph fast-apply client.

Morph exposes an OpenAI-compatible endpoint at https://api.morphllm.com/v1.
The apply model takes the original file plus an elided update snippet and
returns the merged file.
"""

from __future__ import annotations

import logging
import re

import httpx

from codeapply.config import Settings, get_settings
from codeapply.sandbox.exceptions import MorphApplyError


logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```[\w-]*\n([\s\S]*?)\n```\s*$")


class MorphClient:
    """Morph API client using the OpenAI-compatible chat endpoint."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        settings = settings or get_settings()
        self.api_key = settings.morph_api_key
        self.base_url = settings.morph_base_url
        self.model = settings.morph_model

        if client is None and not self.api_key:
            raise ValueError("Morph API key not configured")

        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            timeout=settings.morph_timeout_seconds,
        )

    @staticmethod
    def build_prompt(instructions: str, code: str, update: str) -> str:
        return (
            f"<instruction>{instructions}</instruction>\n"
            f"<code>{code}</code>\n"
            f"<update>{update}</update>"
        )

    async def merge(self, instructions: str, code: str, update: str) -> str:
        """Merge an update snippet into the original code.

        Raises:
            MorphApplyError: on transport/status errors or an empty completion
        """
        payload = {
            "model": self.model,
            "messages": [
                {"role": "user", "content": self.build_prompt(instructions, code, update)},
            ],
        }

        try:
            response = await self._client.post("/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise MorphApplyError(f"Morph API error {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise MorphApplyError(f"Morph request failed: {e}") from e

        choices = data.get("choices") or [{}]
        content = (choices[0].get("message") or {}).get("content")
        if not isinstance(content, str) or not content.strip():
            raise MorphApplyError("Morph returned no merged code")

        fenced = _FENCE_RE.match(content.strip())
        return fenced.group(1) if fenced else content

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
