"""Abstract base class for sandbox providers."""

from __future__ import annotations

import logging
import shlex
from abc import ABC, abstractmethod

from codeapply.config import Settings, get_settings
from codeapply.schemas import CommandResult, SandboxInfo


logger = logging.getLogger(__name__)


class SandboxProvider(ABC):
    """Abstract base class for sandbox backends.

    Every execution environment (remote sandbox service, local directory,
    ...) implements this interface so the apply pipeline never depends on a
    concrete backend. Callers distinguish providers through `provider_name`
    and capability flags such as `supports_reconnect`, never by inspecting
    the concrete class.
    """

    #: Whether `reconnect()` can reattach to an existing sandbox by id.
    supports_reconnect: bool = False

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.sandbox_info: SandboxInfo | None = None

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name (e.g., 'sandy', 'local')."""
        ...

    @abstractmethod
    async def create_sandbox(self) -> SandboxInfo:
        """Create a new sandbox and remember its identity.

        Returns:
            SandboxInfo for the new sandbox
        """
        ...

    @abstractmethod
    async def setup_runtime(self) -> None:
        """Prepare the application runtime (template files, deps, dev server)."""
        ...

    @abstractmethod
    async def write_file(self, path: str, content: str) -> None:
        """Write a file relative to the sandbox working directory."""
        ...

    @abstractmethod
    async def read_file(self, path: str) -> str:
        """Read a file relative to the sandbox working directory."""
        ...

    @abstractmethod
    async def list_files(self, directory: str | None = None) -> list[str]:
        """List files below a directory (defaults to the working directory)."""
        ...

    @abstractmethod
    async def run_command(self, command: str) -> CommandResult:
        """Run a shell command in the sandbox working directory.

        Returns:
            CommandResult; a non-zero exit code is not an exception
        """
        ...

    @abstractmethod
    async def terminate(self) -> None:
        """Destroy the sandbox. Safe to call when nothing is running."""
        ...

    async def reconnect(self, sandbox_id: str) -> bool:
        """Reattach to an existing sandbox.

        Returns:
            True if the sandbox exists and this provider now points at it
        """
        return False

    async def make_dir(self, path: str) -> None:
        """Ensure a directory exists inside the sandbox."""
        result = await self.run_command(f"mkdir -p {shlex.quote(path)}")
        if not result.success:
            logger.warning(f"mkdir -p {path} exited with {result.exit_code}: {result.stderr}")

    def npm_install_command(self, packages: list[str]) -> str:
        """`npm install` with every package name shell-quoted."""
        flags = "--legacy-peer-deps " if self.settings.use_legacy_peer_deps else ""
        names = " ".join(shlex.quote(p) for p in packages)
        return f"npm install {flags}{names}"

    async def install_packages(self, packages: list[str]) -> CommandResult:
        """Install npm packages into the sandbox app."""
        return await self.run_command(self.npm_install_command(packages))

    async def restart_dev_server(self) -> None:
        """Restart the app's dev server. No-op for backends without one."""
        return None

    def get_sandbox_info(self) -> SandboxInfo | None:
        return self.sandbox_info

    @property
    def sandbox_id(self) -> str | None:
        return self.sandbox_info.sandbox_id if self.sandbox_info else None

    @property
    def is_alive(self) -> bool:
        return self.sandbox_info is not None

    async def close(self) -> None:
        """Release client resources (HTTP connections, ...)."""
        return None
