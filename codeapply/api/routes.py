"""FastAPI routes for the code application API.

Endpoints:
- GET    /health                    - Service health
- POST   /apply-ai-code             - Apply an AI response, return the result
- POST   /apply-ai-code-stream      - Apply an AI response, stream progress
- POST   /sandboxes                 - Create (or restore) a sandbox
- GET    /sandboxes/{id}            - Sandbox status
- GET    /sandboxes/{id}/files      - List sandbox files
- GET    /sandboxes/{id}/file       - Read one sandbox file (?path=)
- POST   /sandboxes/{id}/restart    - Restart the sandbox dev server
- DELETE /sandboxes/{id}            - Terminate a sandbox
- POST   /sandboxes/cleanup         - Expire idle sandboxes now
- POST   /parse                     - Parse a response without applying it
"""

from __future__ import annotations

import logging
import math
import re
import time
from contextlib import nullcontext

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from codeapply.config import Settings
from codeapply.parsing.response import parse_ai_response
from codeapply.pipeline.edits import parse_morph_edits
from codeapply.pipeline.progress import NullProgress, ProgressSink, ProgressStream
from codeapply.pipeline.workflow import ApplyContext, ApplyPipeline
from codeapply.sandbox.exceptions import (
    SandboxError,
    SandboxNotFoundError,
    SandboxTimeoutError,
)
from codeapply.sandbox.registry import SandboxRecord, SandboxRegistry
from codeapply.schemas import (
    ApplyRequest,
    ApplyResult,
    CreateSandboxRequest,
    ParsedResponse,
    ParseRequest,
    SandboxNotFoundResponse,
    SandboxResponse,
    SandboxStatusResponse,
)


logger = logging.getLogger(__name__)
router = APIRouter()

_WORKSPACE_PREFIX = re.compile(r"^/?(?:workspace/)?")


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _registry(request: Request) -> SandboxRegistry:
    return request.app.state.registry


def _validate_apply(body: ApplyRequest) -> None:
    if not body.response or not body.response.strip():
        raise HTTPException(status_code=400, detail="response is required")
    if not body.sandbox_id or not body.sandbox_id.strip():
        raise HTTPException(status_code=400, detail="sandboxId is required for session isolation")


def _not_found(sandbox_id: str, parsed: ParsedResponse) -> JSONResponse:
    logger.error(f"Sandbox {sandbox_id} not found and could not be reconnected")
    payload = SandboxNotFoundResponse(
        error=f"Sandbox {sandbox_id} not found. The sandbox may have expired. Please create a new sandbox.",
        results=ApplyResult(errors=[f"Sandbox {sandbox_id} not found - please create a new sandbox"]),
        explanation=parsed.explanation,
        structure=parsed.structure,
        parsed_files=parsed.files,
        message=f"Parsed {len(parsed.files)} files but couldn't apply them - sandbox not found.",
    )
    return JSONResponse(status_code=404, content=payload.to_wire())


def _build_context(
    request: Request,
    record: SandboxRecord,
    body: ApplyRequest,
    progress: ProgressSink,
) -> ApplyContext:
    state = request.app.state
    return ApplyContext(
        sandbox_id=record.sandbox_id,
        provider=record.provider,
        settings=state.settings,
        known_files=record.known_files,
        progress=progress,
        installer=state.installer,
        completer=state.completer if state.completer.enabled else None,
        morph=state.morph,
        is_edit=body.is_edit,
        package_hints=body.package_hints(),
    )


def _apply_lock(request: Request, sandbox_id: str):
    if _settings(request).serialize_sandbox_applies:
        return _registry(request).lock(sandbox_id)
    return nullcontext()


# =============================================================================
# Health Check
# =============================================================================

@router.get("/health")
async def health(request: Request) -> dict:
    """Health check endpoint."""
    settings = _settings(request)
    return {
        "status": "ok",
        "version": settings.app_version,
        "environment": settings.environment,
        "provider": settings.sandbox_provider,
        "sandboxes": _registry(request).count,
    }


# =============================================================================
# Apply Endpoints
# =============================================================================

@router.post("/apply-ai-code")
async def apply_ai_code(body: ApplyRequest, request: Request):
    """Apply an AI response to a sandbox and return the aggregated result."""
    _validate_apply(body)
    parsed = parse_ai_response(body.response)
    logger.info(f"Apply to {body.sandbox_id}: {len(parsed.files)} files, packages={parsed.packages}")

    try:
        record = await _registry(request).resolve(body.sandbox_id)
    except SandboxNotFoundError:
        return _not_found(body.sandbox_id, parsed)

    ctx = _build_context(request, record, body, NullProgress())
    try:
        async with _apply_lock(request, record.sandbox_id):
            run = await ApplyPipeline(ctx).run(body.response, parsed)
    except Exception as e:
        logger.error(f"Apply AI code error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e) or "Failed to apply AI code")

    return JSONResponse(content=run.to_response().to_wire())


@router.post("/apply-ai-code-stream")
async def apply_ai_code_stream(body: ApplyRequest, request: Request):
    """Apply an AI response to a sandbox, streaming progress events.

    The stream ends with a `complete` event carrying the results, or an
    `error` event. Work continues even if the client disconnects.
    """
    _validate_apply(body)
    parsed = parse_ai_response(body.response)
    logger.info(f"Streaming apply to {body.sandbox_id}: {len(parsed.files)} files, packages={parsed.packages}")

    try:
        record = await _registry(request).resolve(body.sandbox_id)
    except SandboxNotFoundError:
        return _not_found(body.sandbox_id, parsed)

    stream = ProgressStream(_settings(request).stream_format)
    ctx = _build_context(request, record, body, stream)
    lock = _apply_lock(request, record.sandbox_id)

    async def produce(progress: ProgressStream) -> None:
        async with lock:
            await ApplyPipeline(ctx).run(body.response, parsed)

    stream.run(produce)

    return StreamingResponse(
        stream,
        media_type=stream.media_type,
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


# =============================================================================
# Sandbox Endpoints
# =============================================================================

@router.post("/sandboxes", response_model=SandboxResponse)
async def create_sandbox(request: Request, body: CreateSandboxRequest | None = None) -> SandboxResponse:
    """Create a sandbox, or restore an existing one when an id is given.

    Concurrent creations from the same client share one sandbox.
    """
    registry = _registry(request)

    if body is not None and body.sandbox_id:
        try:
            record = await registry.resolve(body.sandbox_id)
        except SandboxNotFoundError:
            raise HTTPException(status_code=404, detail=f"Sandbox {body.sandbox_id} not found")
        info = record.provider.get_sandbox_info()
        return SandboxResponse(
            sandbox_id=record.sandbox_id,
            url=info.url if info else "",
            provider=record.provider.provider_name,
            message="Sandbox restored",
        )

    origin = request.client.host if request.client else "unknown"
    try:
        provider = await registry.create_sandbox(origin)
    except SandboxTimeoutError as e:
        logger.error(f"Sandbox creation timed out: {e}")
        raise HTTPException(status_code=504, detail=str(e))
    except SandboxError as e:
        logger.error(f"Sandbox creation failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    info = provider.get_sandbox_info()
    return SandboxResponse(
        sandbox_id=provider.sandbox_id,
        url=info.url if info else "",
        provider=provider.provider_name,
        message="Sandbox created and runtime initialized",
    )


@router.post("/sandboxes/cleanup")
async def cleanup_sandboxes(request: Request) -> dict:
    """Terminate sandboxes idle past the retention window."""
    removed = await _registry(request).cleanup()
    return {"success": True, "removed": removed}


@router.get("/sandboxes/{sandbox_id}", response_model=SandboxStatusResponse)
async def get_sandbox(sandbox_id: str, request: Request) -> SandboxStatusResponse:
    """Get sandbox status."""
    try:
        record = await _registry(request).resolve(sandbox_id)
    except SandboxNotFoundError:
        raise HTTPException(status_code=404, detail=f"Sandbox {sandbox_id} not found")

    info = record.provider.get_sandbox_info()
    return SandboxStatusResponse(
        sandbox_id=record.sandbox_id,
        alive=record.provider.is_alive,
        url=info.url if info else "",
        provider=record.provider.provider_name,
        created_at=record.created_at,
        last_accessed=record.last_accessed,
        known_files=len(record.known_files),
    )


@router.get("/sandboxes/{sandbox_id}/files")
async def list_sandbox_files(sandbox_id: str, request: Request) -> dict:
    """List files in the sandbox working directory."""
    try:
        record = await _registry(request).resolve(sandbox_id)
    except SandboxNotFoundError:
        raise HTTPException(status_code=404, detail=f"Sandbox {sandbox_id} not found")

    try:
        files = await record.provider.list_files()
    except Exception as e:
        logger.error(f"Failed to list files for {sandbox_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    return {"success": True, "sandboxId": sandbox_id, "files": files}


@router.get("/sandboxes/{sandbox_id}/file")
async def read_sandbox_file(sandbox_id: str, request: Request, path: str = "") -> dict:
    """Read one file from the sandbox working directory."""
    if not path:
        raise HTTPException(status_code=400, detail="path is required")
    normalized = _WORKSPACE_PREFIX.sub("", path)
    if ".." in normalized.split("/"):
        raise HTTPException(status_code=400, detail="Invalid path")

    try:
        record = await _registry(request).resolve(sandbox_id)
    except SandboxNotFoundError:
        raise HTTPException(status_code=404, detail=f"Sandbox {sandbox_id} not found")

    try:
        content = await record.provider.read_file(normalized)
    except Exception as e:
        logger.error(f"Failed to read {normalized} from {sandbox_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    return {"success": True, "sandboxId": sandbox_id, "path": normalized, "content": content}


@router.post("/sandboxes/{sandbox_id}/restart")
async def restart_dev_server(sandbox_id: str, request: Request) -> dict:
    """Restart the sandbox dev server, at most once per cooldown window."""
    try:
        record = await _registry(request).resolve(sandbox_id)
    except SandboxNotFoundError:
        raise HTTPException(status_code=404, detail=f"Sandbox {sandbox_id} not found")

    if record.restarting:
        return {"success": True, "message": "Dev server restart already in progress"}

    cooldown = _settings(request).dev_server_restart_cooldown_seconds
    elapsed = time.monotonic() - record.last_restart
    if record.last_restart and elapsed < cooldown:
        remaining = math.ceil(cooldown - elapsed)
        return {
            "success": True,
            "message": f"Dev server was recently restarted, cooldown active ({remaining}s remaining)",
        }

    record.restarting = True
    try:
        await record.provider.restart_dev_server()
    except Exception as e:
        logger.error(f"Dev server restart failed for {sandbox_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
    finally:
        record.restarting = False

    record.last_restart = time.monotonic()
    logger.info(f"Restarted dev server for {sandbox_id}")
    return {"success": True, "message": "Dev server restarted"}


@router.delete("/sandboxes/{sandbox_id}")
async def delete_sandbox(sandbox_id: str, request: Request) -> dict:
    """Terminate a sandbox and forget it."""
    killed = await _registry(request).terminate(sandbox_id)
    return {"success": True, "sandboxKilled": killed}


# =============================================================================
# Parse Endpoint
# =============================================================================

@router.post("/parse")
async def parse_response(body: ParseRequest) -> dict:
    """Parse an AI response without touching any sandbox."""
    parsed = parse_ai_response(body.response)
    edits = parse_morph_edits(body.response)
    return {
        **parsed.to_wire(),
        "edits": [edit.to_wire() for edit in edits],
    }
