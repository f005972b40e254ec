"""Shared fixtures: settings, an in-memory sandbox provider and a registry."""

from __future__ import annotations

import itertools
import json
from pathlib import Path

import pytest

from codeapply.config import Settings
from codeapply.sandbox.base import SandboxProvider
from codeapply.sandbox.exceptions import SandboxExecutionError
from codeapply.sandbox.registry import SandboxRegistry
from codeapply.schemas import CommandResult, SandboxInfo


_ids = itertools.count(1)


class FakeProvider(SandboxProvider):
    """In-memory provider that records every call."""

    supports_reconnect = True

    def __init__(
        self,
        settings: Settings | None = None,
        sandbox_id: str | None = None,
        reconnectable: set[str] | None = None,
    ):
        super().__init__(settings)
        self.files: dict[str, str] = {}
        self.dirs: list[str] = []
        self.commands: list[str] = []
        self.command_results: dict[str, CommandResult | Exception] = {}
        self.write_failures: set[str] = set()
        self.install_failures: set[str] = set()
        self.installed: list[list[str]] = []
        self.restarts = 0
        self.reconnectable = reconnectable or set()
        self.setup_called = False
        self.terminated = False
        self.closed = False
        if sandbox_id:
            self.sandbox_info = SandboxInfo(sandbox_id=sandbox_id, provider="fake")

    @property
    def provider_name(self) -> str:
        return "fake"

    async def create_sandbox(self) -> SandboxInfo:
        self.sandbox_info = SandboxInfo(
            sandbox_id=f"fake-{next(_ids):08d}",
            url="https://fake.sandbox",
            provider="fake",
        )
        return self.sandbox_info

    async def reconnect(self, sandbox_id: str) -> bool:
        if sandbox_id not in self.reconnectable:
            return False
        self.sandbox_info = SandboxInfo(sandbox_id=sandbox_id, provider="fake")
        return True

    async def setup_runtime(self) -> None:
        self.setup_called = True
        self.files["package.json"] = json.dumps(
            {"dependencies": {"react": "^18.2.0", "react-dom": "^18.2.0"}}
        )

    async def write_file(self, path: str, content: str) -> None:
        if path in self.write_failures:
            raise SandboxExecutionError(f"disk full: {path}")
        self.files[path] = content

    async def read_file(self, path: str) -> str:
        if path not in self.files:
            raise SandboxExecutionError(f"File not found: {path}")
        return self.files[path]

    async def list_files(self, directory: str | None = None) -> list[str]:
        prefix = f"{directory.rstrip('/')}/" if directory else ""
        return sorted(p for p in self.files if p.startswith(prefix))

    async def make_dir(self, path: str) -> None:
        self.dirs.append(path)

    async def run_command(self, command: str) -> CommandResult:
        self.commands.append(command)
        outcome = self.command_results.get(command)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            return outcome
        if command.startswith("echo "):
            return CommandResult(stdout=command[5:].strip('"') + "\n")
        return CommandResult()

    async def install_packages(self, packages: list[str]) -> CommandResult:
        self.installed.append(list(packages))
        data = json.loads(self.files.get("package.json", "{}"))
        deps = data.setdefault("dependencies", {})
        for pkg in packages:
            if pkg not in self.install_failures:
                deps[pkg] = "latest"
        self.files["package.json"] = json.dumps(data)
        return CommandResult(stdout=f"added {len(packages)} packages")

    async def restart_dev_server(self) -> None:
        self.restarts += 1

    async def terminate(self) -> None:
        self.terminated = True
        self.sandbox_info = None

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings isolated from the environment, with instant retries."""
    return Settings(
        _env_file=None,
        sandbox_provider="local",
        local_sandbox_root=str(tmp_path / "sandboxes"),
        retry_base_delay_seconds=0,
        retry_max_delay_seconds=0,
        sandy_vite_startup_delay_seconds=0,
        morph_enabled=False,
        package_installer_url="",
        autocomplete_url="",
    )


@pytest.fixture
def provider(settings: Settings) -> FakeProvider:
    """A provider already attached to a sandbox."""
    fake = FakeProvider(settings, sandbox_id="fake-sandbox-1")
    fake.files["package.json"] = json.dumps({"dependencies": {"react": "^18.2.0"}})
    return fake


@pytest.fixture
def providers(settings: Settings) -> list[FakeProvider]:
    """Every provider the registry fixture builds, in order."""
    return []


@pytest.fixture
def registry(settings: Settings, providers: list[FakeProvider]) -> SandboxRegistry:
    def factory() -> FakeProvider:
        fake = FakeProvider(settings, reconnectable={"remote-sandbox-42"})
        providers.append(fake)
        return fake

    return SandboxRegistry(settings, provider_factory=factory)
