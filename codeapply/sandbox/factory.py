"""Sandbox provider factory.

Providers are selected by name (``Settings.sandbox_provider``) so callers
never import a concrete backend.
"""

from __future__ import annotations

import logging
from typing import Callable

from codeapply.config import Settings, get_settings
from codeapply.sandbox.base import SandboxProvider
from codeapply.sandbox.exceptions import SandboxConfigurationError
from codeapply.sandbox.providers.local import LocalProvider
from codeapply.sandbox.providers.sandy import SandyProvider


logger = logging.getLogger(__name__)

PROVIDERS: dict[str, Callable[[Settings], SandboxProvider]] = {
    "sandy": lambda settings: SandyProvider(settings),
    "local": lambda settings: LocalProvider(settings),
}


def create_provider(name: str | None = None, settings: Settings | None = None) -> SandboxProvider:
    """Build a fresh, unconnected provider.

    Raises:
        SandboxConfigurationError: unknown name or missing provider settings
    """
    settings = settings or get_settings()
    name = (name or settings.sandbox_provider).lower()

    builder = PROVIDERS.get(name)
    if builder is None:
        raise SandboxConfigurationError(
            f"Unknown sandbox provider: {name}",
            details={"available": ", ".join(sorted(PROVIDERS))},
        )
    return builder(settings)


def available_providers() -> list[str]:
    return sorted(PROVIDERS)


def is_provider_available(name: str, settings: Settings | None = None) -> bool:
    """Whether a provider is known and has the settings it needs."""
    settings = settings or get_settings()
    name = name.lower()
    if name == "sandy":
        return bool(settings.sandy_base_url)
    return name in PROVIDERS
