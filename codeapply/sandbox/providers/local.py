"""Local directory sandbox provider.

Development backend that keeps each sandbox in its own directory:
- Commands validated against an allowlist and run without a shell
- Timeouts enforced per command
- File access confined to the sandbox directory
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
import uuid
from datetime import datetime, timezone

from codeapply.config import Settings
from codeapply.schemas import CommandResult, SandboxInfo
from codeapply.sandbox.base import SandboxProvider
from codeapply.sandbox.exceptions import SandboxExecutionError
from codeapply.sandbox.template import TEMPLATE_PATHS, vite_app_files


logger = logging.getLogger(__name__)

IGNORED_DIRS = {"node_modules", ".git", "dist", "build", ".next"}


def _is_safe_path(root: str, file_path: str) -> bool:
    """Check if file_path is safely within root."""
    root_abs = os.path.abspath(root)
    file_abs = os.path.abspath(os.path.join(root, file_path))
    return file_abs == root_abs or file_abs.startswith(root_abs + os.sep)


class LocalProvider(SandboxProvider):
    """Sandbox provider rooted in a local directory."""

    supports_reconnect = True

    def __init__(self, settings: Settings | None = None):
        super().__init__(settings)
        self.root = os.path.abspath(os.path.expanduser(self.settings.local_sandbox_root))

    @property
    def provider_name(self) -> str:
        return "local"

    @property
    def workdir(self) -> str:
        if not self.sandbox_info:
            raise SandboxExecutionError("No active sandbox")
        return os.path.join(self.root, self.sandbox_info.sandbox_id)

    def _resolve(self, path: str) -> str:
        relative = path.lstrip("/")
        if not _is_safe_path(self.workdir, relative):
            raise SandboxExecutionError(
                f"Path attempts to escape sandbox: {path}",
                sandbox_id=self.sandbox_id,
            )
        return os.path.join(self.workdir, relative)

    async def create_sandbox(self) -> SandboxInfo:
        if self.sandbox_info:
            await self.terminate()

        sandbox_id = f"local-{uuid.uuid4().hex[:12]}"
        os.makedirs(os.path.join(self.root, sandbox_id), exist_ok=True)

        self.sandbox_info = SandboxInfo(
            sandbox_id=sandbox_id,
            url=f"file://{os.path.join(self.root, sandbox_id)}",
            provider=self.provider_name,
            workdir=os.path.join(self.root, sandbox_id),
        )
        logger.info(f"Created local sandbox {sandbox_id} at {self.sandbox_info.workdir}")
        return self.sandbox_info

    async def reconnect(self, sandbox_id: str) -> bool:
        if not _is_safe_path(self.root, sandbox_id):
            return False
        path = os.path.join(self.root, sandbox_id)
        if not os.path.isdir(path):
            return False

        self.sandbox_info = SandboxInfo(
            sandbox_id=sandbox_id,
            url=f"file://{path}",
            provider=self.provider_name,
            created_at=datetime.fromtimestamp(os.path.getctime(path), tz=timezone.utc),
            workdir=path,
        )
        return True

    async def setup_runtime(self) -> None:
        """Write the starter template. Dependencies are installed on demand."""
        files = vite_app_files(self.settings.sandy_vite_port)
        for path in TEMPLATE_PATHS:
            await self.write_file(path, files[path])

    async def write_file(self, path: str, content: str) -> None:
        full_path = self._resolve(path)
        os.makedirs(os.path.dirname(full_path), exist_ok=True)
        with open(full_path, "w", encoding="utf-8") as f:
            f.write(content)

    async def read_file(self, path: str) -> str:
        full_path = self._resolve(path)
        if not os.path.isfile(full_path):
            raise SandboxExecutionError(f"File not found: {path}", sandbox_id=self.sandbox_id)
        with open(full_path, encoding="utf-8", errors="replace") as f:
            return f.read()

    async def list_files(self, directory: str | None = None) -> list[str]:
        base = self._resolve(directory) if directory else self.workdir
        files: list[str] = []
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_DIRS)
            for name in sorted(filenames):
                files.append(os.path.relpath(os.path.join(dirpath, name), self.workdir))
        return files

    async def run_command(self, command: str) -> CommandResult:
        """Run an allow-listed command in the sandbox directory.

        Rejected and timed-out commands come back as failed results
        (exit codes 126 and 124) rather than exceptions.
        """
        try:
            parts = shlex.split(command)
        except ValueError as e:
            return CommandResult(stderr=f"Invalid command syntax: {e}", exit_code=2, success=False)

        if not parts:
            return CommandResult(stderr="Command is empty", exit_code=2, success=False)

        base_command = parts[0]
        allowed = self.settings.sandbox_allowed_commands
        if base_command not in allowed:
            return CommandResult(
                stderr=f"Command '{base_command}' is not in allowlist: {allowed}",
                exit_code=126,
                success=False,
            )

        cwd = self.workdir
        if not os.path.isdir(cwd):
            raise SandboxExecutionError(
                f"Working directory does not exist: {cwd}",
                command=command,
                sandbox_id=self.sandbox_id,
            )

        timeout = self.settings.sandbox_timeout_seconds
        try:
            process = await asyncio.create_subprocess_exec(
                *parts,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=os.environ.copy(),
            )
        except FileNotFoundError:
            return CommandResult(stderr=f"Command not found: {base_command}", exit_code=127, success=False)

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return CommandResult(
                stderr=f"Command timed out after {timeout} seconds",
                exit_code=124,
                success=False,
            )

        exit_code = process.returncode or 0
        return CommandResult(
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            exit_code=exit_code,
            success=exit_code == 0,
        )

    async def terminate(self) -> None:
        if not self.sandbox_info:
            return
        path = os.path.join(self.root, self.sandbox_info.sandbox_id)
        shutil.rmtree(path, ignore_errors=True)
        logger.info(f"Removed local sandbox {self.sandbox_info.sandbox_id}")
        self.sandbox_info = None
