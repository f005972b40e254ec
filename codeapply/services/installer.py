"""Package installation collaborators.

Two implementations:
- SandboxPackageInstaller: runs npm inside the sandbox through its provider
- HttpPackageInstaller: delegates to an external install service that
  streams progress events back
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod

import httpx

from codeapply.config import Settings, get_settings
from codeapply.pipeline.progress import EventStreamBuffer, ProgressSink
from codeapply.sandbox.base import SandboxProvider
from codeapply.sandbox.exceptions import CollaboratorError
from codeapply.schemas import EventType, InstallOutcome


logger = logging.getLogger(__name__)


class PackageInstaller(ABC):
    """Installs npm packages into a sandbox."""

    @abstractmethod
    async def install(
        self,
        packages: list[str],
        sandbox_id: str,
        provider: SandboxProvider,
        progress: ProgressSink,
    ) -> InstallOutcome:
        """Install packages and report which succeeded.

        Raises:
            Exception: when the installer itself cannot run; per-package
                failures are reported in the outcome instead
        """
        ...

    async def close(self) -> None:
        return None


async def read_declared_dependencies(provider: SandboxProvider) -> set[str]:
    """Dependency names declared in the sandbox app's package.json."""
    raw = await provider.read_file("package.json")
    data = json.loads(raw or "{}")
    declared: set[str] = set()
    for section in ("dependencies", "devDependencies"):
        declared.update((data.get(section) or {}).keys())
    return declared


class SandboxPackageInstaller(PackageInstaller):
    """Runs `npm install` through the sandbox provider."""

    async def install(
        self,
        packages: list[str],
        sandbox_id: str,
        provider: SandboxProvider,
        progress: ProgressSink,
    ) -> InstallOutcome:
        try:
            declared = await read_declared_dependencies(provider)
        except Exception as e:
            logger.warning(f"Failed to read package.json, installing all packages: {e}")
            declared = set()

        already = [p for p in packages if p in declared]
        missing = [p for p in packages if p not in declared]

        if already:
            await progress.emit(
                EventType.PACKAGE_PROGRESS,
                status="info",
                message=f"Already installed: {', '.join(already)}",
                already_installed=already,
            )
        if not missing:
            return InstallOutcome(already_installed=already, message="No new packages to install")

        await progress.emit(
            EventType.PACKAGE_PROGRESS,
            status="installing",
            message=f"Installing {', '.join(missing)}...",
            packages=missing,
        )
        result = await provider.install_packages(missing)
        if result.stdout:
            await progress.emit(EventType.PACKAGE_PROGRESS, status="output", output=result.stdout)

        if not result.success:
            logger.error(f"npm install failed for {sandbox_id}: {result.stderr}")
            return InstallOutcome(
                already_installed=already,
                failed=missing,
                success=False,
                message=result.stderr or f"npm install exited with {result.exit_code}",
            )

        try:
            declared = await read_declared_dependencies(provider)
            installed = [p for p in missing if p in declared]
            failed = [p for p in missing if p not in declared]
        except Exception as e:
            logger.warning(f"Could not verify installation: {e}")
            installed, failed = missing, []

        await progress.emit(
            EventType.PACKAGE_PROGRESS,
            status="success",
            installed_packages=installed,
        )
        return InstallOutcome(
            installed=installed,
            already_installed=already,
            failed=failed,
            success=not failed,
            message=f"Installed {len(installed)} packages",
        )


class HttpPackageInstaller(PackageInstaller):
    """Delegates installation to an external service that streams events."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        settings = settings or get_settings()
        self.url = settings.package_installer_url
        self._client = client or httpx.AsyncClient(timeout=settings.package_install_timeout_seconds)

    async def install(
        self,
        packages: list[str],
        sandbox_id: str,
        provider: SandboxProvider,
        progress: ProgressSink,
    ) -> InstallOutcome:
        outcome = InstallOutcome()
        succeeded = False
        buffer = EventStreamBuffer()

        async with self._client.stream(
            "POST",
            self.url,
            json={"packages": packages, "sandboxId": sandbox_id},
        ) as response:
            if response.is_error:
                await response.aread()
                raise CollaboratorError(
                    f"Package installer returned {response.status_code}",
                    status_code=response.status_code,
                )
            async for chunk in response.aiter_text():
                for event in buffer.add_chunk(chunk):
                    succeeded = await self._forward(event, outcome, progress) or succeeded
            for event in buffer.flush():
                succeeded = await self._forward(event, outcome, progress) or succeeded

        if succeeded and not outcome.installed and not outcome.failed:
            outcome.installed = [p for p in packages if p not in outcome.already_installed]
        outcome.success = outcome.success and not outcome.failed
        return outcome

    async def _forward(self, event: dict, outcome: InstallOutcome, progress: ProgressSink) -> bool:
        status = event.get("type")
        fields = {k: v for k, v in event.items() if k != "type"}
        await progress.send({"type": EventType.PACKAGE_PROGRESS.value, "status": status, **fields})

        if isinstance(event.get("installedPackages"), list):
            outcome.installed = list(event["installedPackages"])
        if isinstance(event.get("alreadyInstalled"), list):
            outcome.already_installed = list(event["alreadyInstalled"])
        if isinstance(event.get("failedPackages"), list):
            outcome.failed = list(event["failedPackages"])
        if status == "error":
            outcome.success = False
            outcome.message = str(event.get("error") or event.get("message") or "")
        return status in ("success", "complete")

    async def close(self) -> None:
        await self._client.aclose()


def build_installer(settings: Settings | None = None) -> PackageInstaller:
    settings = settings or get_settings()
    if settings.package_installer_url:
        return HttpPackageInstaller(settings)
    return SandboxPackageInstaller()
