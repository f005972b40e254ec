"""Sandy sandbox provider.

Sandy is a remote sandbox service exposing a small REST API:
- POST /api/sandboxes                         create
- GET  /api/sandboxes/{id}                    look up (used to reconnect)
- POST /api/sandboxes/{id}/exec               run a command
- POST /api/sandboxes/{id}/files/write        write a file
- GET  /api/sandboxes/{id}/files/read?path=   read a file
- GET  /api/sandboxes/{id}/files/list?path=   list files
- POST /api/sandboxes/{id}/terminate          destroy
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from codeapply.config import Settings
from codeapply.schemas import CommandResult, SandboxInfo
from codeapply.sandbox.base import SandboxProvider
from codeapply.sandbox.exceptions import (
    SandboxConfigurationError,
    SandboxConnectionError,
    SandboxExecutionError,
)
from codeapply.sandbox.template import TEMPLATE_PATHS, vite_app_files


logger = logging.getLogger(__name__)


class SandyProvider(SandboxProvider):
    """Sandbox provider backed by the Sandy HTTP service."""

    supports_reconnect = True

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(settings)
        self.base_url = self.settings.sandy_base_url.rstrip("/")
        self.workdir = self.settings.sandy_workdir

        if client is None and not self.base_url:
            raise SandboxConfigurationError("SANDY_BASE_URL is not configured")

        headers = {"Content-Type": "application/json"}
        if self.settings.sandy_api_key:
            headers["Authorization"] = f"Bearer {self.settings.sandy_api_key}"

        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.settings.sandy_request_timeout_seconds,
        )

    @property
    def provider_name(self) -> str:
        return "sandy"

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send a request and decode the JSON body.

        Transport errors (connection reset, timeouts) propagate unchanged so
        retry logic can classify them; HTTP error statuses are raised as
        SandboxConnectionError with the status code attached.
        """
        kwargs: dict[str, Any] = {}
        if json is not None:
            kwargs["json"] = json
        if params is not None:
            kwargs["params"] = params
        if timeout is not None:
            kwargs["timeout"] = timeout

        response = await self._client.request(method, path, **kwargs)

        if response.is_error:
            raise SandboxConnectionError(
                f"Sandy API error {response.status_code}: {response.text or response.reason_phrase}",
                status_code=response.status_code,
                sandbox_id=self.sandbox_id,
            )

        if not response.text.strip():
            return {}
        try:
            return response.json()
        except ValueError:
            raise SandboxConnectionError(
                "Sandy API returned non-JSON response",
                status_code=response.status_code,
                sandbox_id=self.sandbox_id,
            )

    def _require_sandbox_id(self) -> str:
        if not self.sandbox_info:
            raise SandboxExecutionError("No active sandbox")
        return self.sandbox_info.sandbox_id

    def _info_from(self, data: dict[str, Any]) -> SandboxInfo:
        created_at = data.get("createdAt")
        return SandboxInfo(
            sandbox_id=data["sandboxId"],
            url=data.get("url", ""),
            provider=self.provider_name,
            created_at=datetime.fromisoformat(created_at.replace("Z", "+00:00"))
            if created_at
            else datetime.now(timezone.utc),
            workdir=self.workdir,
        )

    async def reconnect(self, sandbox_id: str) -> bool:
        try:
            data = await self._request("GET", f"/api/sandboxes/{sandbox_id}")
        except (SandboxConnectionError, httpx.HTTPError) as e:
            logger.error(f"Failed to reconnect to sandbox {sandbox_id}: {e}")
            return False

        if not data.get("sandboxId"):
            return False

        self.sandbox_info = self._info_from(data)
        return True

    async def create_sandbox(self) -> SandboxInfo:
        if self.sandbox_info:
            await self.terminate()

        data = await self._request("POST", "/api/sandboxes")
        if not data.get("sandboxId"):
            raise SandboxConnectionError("Sandy API did not return a sandboxId")

        self.sandbox_info = self._info_from(data)
        logger.info(f"Created Sandy sandbox {self.sandbox_info.sandbox_id}")
        return self.sandbox_info

    async def _exec(self, command: str, timeout_seconds: float) -> CommandResult:
        sandbox_id = self._require_sandbox_id()
        data = await self._request(
            "POST",
            f"/api/sandboxes/{sandbox_id}/exec",
            json={
                "command": command,
                "cwd": self.workdir,
                "timeoutMs": int(timeout_seconds * 1000),
            },
            timeout=max(self.settings.sandy_request_timeout_seconds, timeout_seconds + 5),
        )
        exit_code = data.get("exitCode")
        if not isinstance(exit_code, int):
            exit_code = 0
        return CommandResult(
            stdout=data.get("stdout") or "",
            stderr=data.get("stderr") or "",
            exit_code=exit_code,
            success=exit_code == 0,
        )

    async def run_command(self, command: str) -> CommandResult:
        return await self._exec(command, self.settings.sandy_exec_timeout_seconds)

    async def install_packages(self, packages: list[str]) -> CommandResult:
        result = await self._exec(
            self.npm_install_command(packages),
            self.settings.package_install_timeout_seconds,
        )
        if result.success:
            await self.restart_dev_server()
        return result

    async def write_file(self, path: str, content: str) -> None:
        sandbox_id = self._require_sandbox_id()
        await self._request(
            "POST",
            f"/api/sandboxes/{sandbox_id}/files/write",
            json={"path": path, "content": content},
        )

    async def read_file(self, path: str) -> str:
        sandbox_id = self._require_sandbox_id()
        data = await self._request(
            "GET",
            f"/api/sandboxes/{sandbox_id}/files/read",
            params={"path": path},
        )
        return data.get("content") or ""

    async def list_files(self, directory: str | None = None) -> list[str]:
        sandbox_id = self._require_sandbox_id()
        data = await self._request(
            "GET",
            f"/api/sandboxes/{sandbox_id}/files/list",
            params={"path": directory or self.workdir},
        )
        return list(data.get("files") or [])

    async def setup_runtime(self) -> None:
        """Write the Vite template, install dependencies and start the dev server."""
        files = vite_app_files(self.settings.sandy_vite_port)
        for path in TEMPLATE_PATHS:
            await self.write_file(path, files[path])

        install = await self._exec("npm install", self.settings.package_install_timeout_seconds)
        if not install.success:
            raise SandboxExecutionError(
                f"npm install failed: {install.stderr or install.stdout}",
                command="npm install",
                sandbox_id=self.sandbox_id,
            )

        await self.run_command("pkill -f vite || true")
        await self.run_command("nohup npm run dev > /tmp/vite.log 2>&1 &")
        await asyncio.sleep(self.settings.sandy_vite_startup_delay_seconds)

    async def restart_dev_server(self) -> None:
        await self.run_command("pkill -f vite || true")
        await asyncio.sleep(2)
        await self.run_command("nohup npm run dev > /tmp/vite.log 2>&1 &")
        await asyncio.sleep(self.settings.sandy_vite_startup_delay_seconds)

    async def terminate(self) -> None:
        if not self.sandbox_info:
            return
        sandbox_id = self.sandbox_info.sandbox_id
        try:
            await self._request("POST", f"/api/sandboxes/{sandbox_id}/terminate")
        except (SandboxConnectionError, httpx.HTTPError) as e:
            logger.error(f"Failed to terminate sandbox {sandbox_id}: {e}")
        finally:
            self.sandbox_info = None

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
