"""Sandbox Registry: maps sandbox ids to live provider handles.

The registry is the single owner of sandbox identity:
    - At most one live provider per sandbox id
    - Reconnects to existing sandboxes when the provider supports it
    - Never substitutes a different sandbox for a requested id
    - Tracks the per-sandbox known-files set used to classify writes
    - Expires idle sandboxes through a periodic sweep

Usage:
    >>> registry = SandboxRegistry(settings)
    >>> provider = await registry.create_sandbox(origin="127.0.0.1")
    >>> same = await registry.resolve(provider.sandbox_id)
    >>> await registry.terminate(provider.sandbox_id)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from codeapply.config import Settings, get_settings
from codeapply.sandbox.base import SandboxProvider
from codeapply.sandbox.exceptions import SandboxNotFoundError
from codeapply.sandbox.factory import create_provider
from codeapply.sandbox.retry import create_sandbox_with_retry


logger = logging.getLogger(__name__)

ProviderFactory = Callable[[], SandboxProvider]
SandboxCreator = Callable[[], Awaitable[SandboxProvider]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SandboxRecord:
    """A registered sandbox and its per-session state."""

    sandbox_id: str
    provider: SandboxProvider
    created_at: datetime = field(default_factory=_utcnow)
    last_accessed: datetime = field(default_factory=_utcnow)
    known_files: set[str] = field(default_factory=set)
    restarting: bool = False
    last_restart: float = 0.0

    def touch(self) -> None:
        self.last_accessed = _utcnow()


class SandboxRegistry:
    """
    In-memory registry of live sandboxes.

    Owned by the application (one per process, created at startup) rather
    than living in module globals, so tests and multiple apps never share
    state.

    Thread Safety:
        Designed to be used from a single event loop.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        provider_factory: ProviderFactory | None = None,
    ):
        self.settings = settings or get_settings()
        self._provider_factory = provider_factory or (lambda: create_provider(settings=self.settings))
        self._records: dict[str, SandboxRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._creations: dict[str, asyncio.Task] = {}
        self._sweeper: asyncio.Task | None = None

    # =========================================================================
    # Lookup
    # =========================================================================

    def new_provider(self) -> SandboxProvider:
        """Build a fresh, unconnected provider."""
        return self._provider_factory()

    def get_record(self, sandbox_id: str) -> SandboxRecord | None:
        record = self._records.get(sandbox_id)
        if record is not None:
            record.touch()
        return record

    def get(self, sandbox_id: str) -> SandboxProvider | None:
        record = self.get_record(sandbox_id)
        return record.provider if record else None

    async def get_or_create(self, sandbox_id: str) -> SandboxProvider:
        """Return the registered provider, or try to reconnect to the id.

        When reconnection is unsupported or fails, the returned provider is
        fresh and unregistered; the caller decides whether to create a
        sandbox with it.
        """
        existing = self.get(sandbox_id)
        if existing is not None:
            return existing

        provider = self.new_provider()
        if provider.supports_reconnect:
            try:
                if await provider.reconnect(sandbox_id):
                    logger.info(f"Reconnected to sandbox {sandbox_id}")
                    self.register(sandbox_id, provider)
                    return provider
            except Exception as e:
                logger.error(f"Reconnect to sandbox {sandbox_id} failed: {e}")

        return provider

    async def resolve(self, sandbox_id: str) -> SandboxRecord:
        """Return the record for an id, reconnecting if needed.

        Raises:
            SandboxNotFoundError: the id is neither registered nor reconnectable
        """
        record = self.get_record(sandbox_id)
        if record is not None:
            return record

        provider = await self.get_or_create(sandbox_id)
        record = self._records.get(sandbox_id)
        if record is None or record.provider is not provider:
            try:
                await provider.close()
            except Exception as e:
                logger.warning(f"Failed to close unused provider: {e}")
            raise SandboxNotFoundError(
                "Sandbox not found and could not be reconnected",
                sandbox_id=sandbox_id,
            )
        return record

    def list_records(self) -> list[SandboxRecord]:
        return list(self._records.values())

    @property
    def count(self) -> int:
        return len(self._records)

    def __contains__(self, sandbox_id: str) -> bool:
        return sandbox_id in self._records

    # =========================================================================
    # Registration
    # =========================================================================

    def register(self, sandbox_id: str, provider: SandboxProvider) -> SandboxRecord:
        """Register (or replace) the provider for an id.

        Re-registering an id keeps its known-files set.
        """
        previous = self._records.get(sandbox_id)
        record = SandboxRecord(sandbox_id=sandbox_id, provider=provider)
        if previous is not None:
            record.created_at = previous.created_at
            record.known_files = previous.known_files
        self._records[sandbox_id] = record
        logger.info(f"Registered sandbox {sandbox_id} ({provider.provider_name})")
        return record

    def lock(self, sandbox_id: str) -> asyncio.Lock:
        """Per-sandbox lock used to serialize apply requests."""
        if sandbox_id not in self._locks:
            self._locks[sandbox_id] = asyncio.Lock()
        return self._locks[sandbox_id]

    async def create_sandbox(
        self,
        origin: str = "default",
        creator: SandboxCreator | None = None,
    ) -> SandboxProvider:
        """Create and register a new sandbox.

        Concurrent calls with the same origin share one in-flight creation.
        """
        task = self._creations.get(origin)
        if task is None:
            creator = creator or (
                lambda: create_sandbox_with_retry(self._provider_factory, self.settings)
            )
            task = asyncio.ensure_future(self._create_and_register(creator))
            self._creations[origin] = task
            task.add_done_callback(lambda _t: self._creations.pop(origin, None))
        else:
            logger.info(f"Joining in-flight sandbox creation for {origin}")

        return await asyncio.shield(task)

    async def _create_and_register(self, creator: SandboxCreator) -> SandboxProvider:
        provider = await creator()
        sandbox_id = provider.sandbox_id
        if not sandbox_id:
            raise SandboxNotFoundError("Created sandbox has no id")
        self.register(sandbox_id, provider)
        return provider

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def terminate(self, sandbox_id: str) -> bool:
        """Terminate a sandbox and forget it. Failures are logged.

        Returns:
            True if the id was registered
        """
        record = self._records.pop(sandbox_id, None)
        self._locks.pop(sandbox_id, None)
        if record is None:
            return False

        try:
            await record.provider.terminate()
        except Exception as e:
            logger.error(f"Failed to terminate sandbox {sandbox_id}: {e}")
        try:
            await record.provider.close()
        except Exception as e:
            logger.warning(f"Failed to close provider for {sandbox_id}: {e}")

        logger.info(f"Terminated sandbox {sandbox_id}")
        return True

    async def terminate_all(self) -> int:
        ids = list(self._records)
        for sandbox_id in ids:
            await self.terminate(sandbox_id)
        return len(ids)

    async def cleanup(self, max_age: timedelta | None = None) -> list[str]:
        """Terminate sandboxes idle for longer than the retention window.

        Returns:
            Ids that were removed
        """
        if max_age is None:
            max_age = timedelta(seconds=self.settings.sandbox_retention_seconds)
        cutoff = _utcnow() - max_age

        expired = [
            sandbox_id
            for sandbox_id, record in self._records.items()
            if record.last_accessed < cutoff
        ]
        for sandbox_id in expired:
            await self.terminate(sandbox_id)

        if expired:
            logger.info(f"Cleaned up {len(expired)} expired sandboxes")
        return expired

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.cleanup()
            except Exception as e:
                logger.error(f"Sandbox sweep failed: {e}", exc_info=True)

    def start_sweeper(self, interval: float | None = None) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        interval = interval or self.settings.sandbox_cleanup_interval_seconds
        self._sweeper = asyncio.create_task(self._sweep_loop(interval))

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
