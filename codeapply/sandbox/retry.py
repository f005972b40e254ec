"""Timeouts, retry with backoff, and resilient sandbox creation."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from codeapply.config import Settings, get_settings
from codeapply.sandbox.base import SandboxProvider
from codeapply.sandbox.exceptions import (
    SandboxConnectionError,
    SandboxCreationError,
    SandboxExecutionError,
    SandboxTimeoutError,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_PATTERNS = re.compile(
    r"ECONNRESET|ETIMEDOUT|ECONNREFUSED|socket hang up|bad gateway|service unavailable"
    r"|gateway timeout|\b50[234]\b|timed out|temporarily unavailable|connection reset|fetch failed",
    re.IGNORECASE,
)

HEALTH_CHECK_COMMAND = 'echo "sandbox-ready"'
MIN_SANDBOX_ID_LENGTH = 8


@dataclass
class RetryPolicy:
    """Exponential backoff settings."""

    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        return min(self.base_delay * self.backoff_factor ** (attempt - 1), self.max_delay)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.sandbox_create_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )


async def with_timeout(awaitable: Awaitable[T], seconds: float, message: str) -> T:
    """Await with a deadline.

    Raises:
        SandboxTimeoutError: when the deadline passes first
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError:
        raise SandboxTimeoutError(f"{message} (timed out after {seconds}s)", timeout_seconds=seconds)


def is_transient_error(exc: BaseException) -> bool:
    """Whether an error looks like a network or capacity hiccup worth retrying."""
    if isinstance(exc, (SandboxTimeoutError, asyncio.TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, (httpx.TransportError, httpx.TimeoutException)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status == 429
    if isinstance(exc, SandboxConnectionError) and exc.status_code is not None:
        if exc.status_code >= 500 or exc.status_code == 429:
            return True
    return bool(TRANSIENT_PATTERNS.search(str(exc)))


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    is_retryable: Callable[[BaseException], bool] = is_transient_error,
    on_retry: Callable[[int, BaseException, float], Awaitable[Any] | Any] | None = None,
) -> T:
    """Run an operation, retrying transient failures with exponential backoff.

    Fatal errors are raised immediately. After the last attempt the last
    error is re-raised.
    """
    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            if attempt >= policy.max_attempts or not is_retryable(e):
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"Attempt {attempt}/{policy.max_attempts} failed: {e}. Retrying in {delay:.1f}s"
            )
            if on_retry is not None:
                maybe = on_retry(attempt, e, delay)
                if asyncio.iscoroutine(maybe):
                    await maybe
            await asyncio.sleep(delay)


async def _teardown(provider: SandboxProvider | None) -> None:
    if provider is None:
        return
    try:
        await provider.terminate()
    except Exception as e:
        logger.warning(f"Failed to terminate partially created sandbox: {e}")
    try:
        await provider.close()
    except Exception as e:
        logger.warning(f"Failed to close provider: {e}")


async def create_sandbox_with_retry(
    factory: Callable[[], SandboxProvider],
    settings: Settings | None = None,
    policy: RetryPolicy | None = None,
) -> SandboxProvider:
    """Create, set up and health-check a sandbox, retrying transient failures.

    Each attempt uses a new provider from `factory`; a partially created
    sandbox is torn down before the next attempt.

    Raises:
        SandboxCreationError: after all attempts fail (cause chained)
        SandboxTimeoutError: when the last attempt timed out
    """
    settings = settings or get_settings()
    policy = policy or RetryPolicy.from_settings(settings)
    current: dict[str, Any] = {"provider": None, "attempts": 0}

    async def attempt() -> SandboxProvider:
        current["attempts"] += 1
        provider = factory()
        current["provider"] = provider

        info = await with_timeout(
            provider.create_sandbox(),
            settings.sandbox_create_timeout_seconds,
            "Sandbox creation",
        )
        if not info.sandbox_id or len(info.sandbox_id) < MIN_SANDBOX_ID_LENGTH:
            raise SandboxExecutionError(f"Invalid sandbox id returned: {info.sandbox_id!r}")

        await with_timeout(
            provider.setup_runtime(),
            settings.sandbox_setup_timeout_seconds,
            "Sandbox setup",
        )

        health = await provider.run_command(HEALTH_CHECK_COMMAND)
        if not health.success or "sandbox-ready" not in health.stdout:
            raise SandboxConnectionError(
                "Sandbox health check failed",
                status_code=503,
                sandbox_id=info.sandbox_id,
            )

        logger.info(f"Sandbox {info.sandbox_id} created and healthy")
        return provider

    async def before_retry(attempt_no: int, error: BaseException, delay: float) -> None:
        await _teardown(current["provider"])
        current["provider"] = None

    try:
        return await with_retry(attempt, policy, on_retry=before_retry)
    except SandboxTimeoutError:
        await _teardown(current["provider"])
        raise
    except Exception as e:
        await _teardown(current["provider"])
        raise SandboxCreationError(
            f"Failed to create sandbox after retries: {e}",
            attempts=current["attempts"],
        ) from e
