"""Missing-import auto-completion collaborator.

When the root component imports files that were never generated, an external
service can be asked to generate them. This is a compensation step: its
outcome is reported, never raised.
"""

from __future__ import annotations

import logging

import httpx

from codeapply.config import Settings, get_settings
from codeapply.schemas import CompensationOutcome, CompensationStatus


logger = logging.getLogger(__name__)


class MissingImportCompleter:
    """Client for the component auto-completion service."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        settings = settings or get_settings()
        self.url = settings.autocomplete_url
        self.model = settings.autocomplete_model
        self._client = client or httpx.AsyncClient(timeout=settings.autocomplete_timeout_seconds)

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def complete(self, missing: list[str], sandbox_id: str) -> CompensationOutcome:
        if not missing:
            return CompensationOutcome(status=CompensationStatus.SKIPPED)
        if not self.enabled:
            return CompensationOutcome(status=CompensationStatus.SKIPPED, missing_imports=missing)

        try:
            response = await self._client.post(
                self.url,
                json={"missingImports": missing, "sandboxId": sandbox_id, "model": self.model},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Auto-complete service returned {e.response.status_code}")
            return CompensationOutcome(
                status=CompensationStatus.FAILED,
                missing_imports=missing,
                error=f"Auto-complete service returned {e.response.status_code}",
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Auto-complete request failed: {e}")
            return CompensationOutcome(status=CompensationStatus.FAILED, missing_imports=missing, error=str(e))

        if not data.get("success"):
            return CompensationOutcome(
                status=CompensationStatus.FAILED,
                missing_imports=missing,
                error=str(data.get("error") or "Auto-complete was not successful"),
            )

        components = [c for c in data.get("components") or [] if isinstance(c, str)]
        logger.info(f"Auto-generated {len(components)} missing components")
        return CompensationOutcome(
            status=CompensationStatus.SUCCEEDED,
            missing_imports=missing,
            components=components,
        )

    async def close(self) -> None:
        await self._client.aclose()
