"""Tests for the sandbox registry."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from codeapply.sandbox.exceptions import SandboxNotFoundError

from conftest import FakeProvider


class TestLookup:
    def test_get_unknown_returns_none(self, registry):
        assert registry.get("missing") is None
        assert "missing" not in registry

    def test_get_touches_record(self, registry, provider):
        record = registry.register("fake-sandbox-1", provider)
        record.last_accessed = datetime.now(timezone.utc) - timedelta(hours=1)

        assert registry.get("fake-sandbox-1") is provider
        assert record.last_accessed > datetime.now(timezone.utc) - timedelta(minutes=1)

    def test_timestamps_are_timezone_aware(self, registry, provider):
        record = registry.register("fake-sandbox-1", provider)

        assert record.created_at.tzinfo is timezone.utc
        assert record.last_accessed.tzinfo is timezone.utc
        assert provider.sandbox_info.created_at.tzinfo is timezone.utc

    async def test_get_or_create_reconnects(self, registry, providers):
        provider = await registry.get_or_create("remote-sandbox-42")

        assert provider is providers[0]
        assert provider.sandbox_id == "remote-sandbox-42"
        assert "remote-sandbox-42" in registry

    async def test_get_or_create_returns_fresh_unregistered_provider(self, registry):
        provider = await registry.get_or_create("gone-sandbox")

        assert provider.sandbox_id is None
        assert "gone-sandbox" not in registry

    async def test_resolve_registered(self, registry, provider):
        registry.register("fake-sandbox-1", provider)
        record = await registry.resolve("fake-sandbox-1")
        assert record.provider is provider

    async def test_resolve_never_substitutes_another_sandbox(self, registry, provider, providers):
        registry.register("fake-sandbox-1", provider)

        with pytest.raises(SandboxNotFoundError) as exc_info:
            await registry.resolve("gone-sandbox")

        assert exc_info.value.sandbox_id == "gone-sandbox"
        assert providers[0].closed
        assert registry.count == 1


class TestRegistration:
    def test_reregister_keeps_known_files(self, registry, settings):
        first = registry.register("sb-1", FakeProvider(settings, sandbox_id="sb-1"))
        first.known_files.add("src/App.jsx")

        replacement = FakeProvider(settings, sandbox_id="sb-1")
        second = registry.register("sb-1", replacement)

        assert second.provider is replacement
        assert second.known_files == {"src/App.jsx"}
        assert second.created_at == first.created_at
        assert registry.count == 1

    def test_lock_is_per_sandbox(self, registry):
        assert registry.lock("a") is registry.lock("a")
        assert registry.lock("a") is not registry.lock("b")

    async def test_create_sandbox_registers(self, registry, settings):
        async def creator():
            fake = FakeProvider(settings)
            await fake.create_sandbox()
            return fake

        provider = await registry.create_sandbox(origin="10.0.0.1", creator=creator)

        assert provider.sandbox_id in registry

    async def test_concurrent_creations_from_same_origin_are_shared(self, registry, settings):
        calls = []
        gate = asyncio.Event()

        async def creator():
            calls.append(1)
            await gate.wait()
            fake = FakeProvider(settings)
            await fake.create_sandbox()
            return fake

        first = asyncio.create_task(registry.create_sandbox(origin="10.0.0.1", creator=creator))
        second = asyncio.create_task(registry.create_sandbox(origin="10.0.0.1", creator=creator))
        await asyncio.sleep(0)
        gate.set()

        a, b = await asyncio.gather(first, second)

        assert a is b
        assert len(calls) == 1
        assert registry.count == 1

    async def test_uses_retrying_creator_by_default(self, registry, providers):
        provider = await registry.create_sandbox()

        assert provider is providers[0]
        assert provider.setup_called
        assert provider.sandbox_id in registry


class TestLifecycle:
    async def test_terminate(self, registry, provider):
        registry.register("fake-sandbox-1", provider)
        registry.lock("fake-sandbox-1")

        assert await registry.terminate("fake-sandbox-1")
        assert provider.terminated and provider.closed
        assert "fake-sandbox-1" not in registry
        assert not await registry.terminate("fake-sandbox-1")

    async def test_terminate_all(self, registry, settings):
        for sid in ("sb-1", "sb-2"):
            registry.register(sid, FakeProvider(settings, sandbox_id=sid))

        assert await registry.terminate_all() == 2
        assert registry.count == 0

    async def test_cleanup_removes_only_idle(self, registry, settings):
        stale = registry.register("stale", FakeProvider(settings, sandbox_id="stale"))
        registry.register("fresh", FakeProvider(settings, sandbox_id="fresh"))
        stale.last_accessed = datetime.now(timezone.utc) - timedelta(hours=2)

        removed = await registry.cleanup(max_age=timedelta(hours=1))

        assert removed == ["stale"]
        assert "fresh" in registry

    async def test_sweeper_start_stop(self, registry):
        registry.start_sweeper(interval=3600)
        await registry.stop_sweeper()
        await registry.stop_sweeper()
