"""LangGraph workflow that applies a parsed AI response to a sandbox.

Graph structure:
START → prepare → packages ─┬─→ edits ─→ files ─┬─→ scaffold ─→ commands → imports → END
                            └──────────→ files ─┴──────────────→ commands

Every step narrates to the request's progress sink and records failures in
the shared ApplyResult; a failing file, package or command never stops the
steps that follow.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Literal, TypedDict

from langgraph.graph import StateGraph, END

from codeapply.config import Settings, get_settings
from codeapply.llm.morph import MorphClient
from codeapply.parsing.imports import find_missing_imports, is_valid_package_name
from codeapply.parsing.response import parse_ai_response
from codeapply.pipeline import scaffold
from codeapply.pipeline.edits import apply_morph_edit, parse_morph_edits
from codeapply.pipeline.paths import is_protected, normalize_path, parent_dir, sanitize_content
from codeapply.pipeline.progress import NullProgress, ProgressSink
from codeapply.sandbox.base import SandboxProvider
from codeapply.schemas import (
    ApplyResponse,
    ApplyResult,
    CompensationOutcome,
    CompensationStatus,
    EventType,
    MorphEdit,
    ParsedFile,
    ParsedResponse,
)
from codeapply.services.autocomplete import MissingImportCompleter
from codeapply.services.installer import PackageInstaller, SandboxPackageInstaller


logger = logging.getLogger(__name__)


# =============================================================================
# Context & State
# =============================================================================

@dataclass
class ApplyContext:
    """Everything one apply request needs; nothing here is shared across sandboxes."""

    sandbox_id: str
    provider: SandboxProvider
    settings: Settings = field(default_factory=get_settings)
    known_files: set[str] = field(default_factory=set)
    progress: ProgressSink = field(default_factory=NullProgress)
    installer: PackageInstaller = field(default_factory=SandboxPackageInstaller)
    completer: MissingImportCompleter | None = None
    morph: MorphClient | None = None
    is_edit: bool = False
    package_hints: list[str] = field(default_factory=list)

    @property
    def morph_mode(self) -> bool:
        return self.is_edit and self.settings.morph_active and self.morph is not None


class ApplyState(TypedDict, total=False):
    """State carried between workflow nodes.

    Attributes:
        ctx: Request context (provider, collaborators, progress sink)
        parsed: Parsed AI response
        result: Accumulated outcome
        files: Parsed files left after dropping protected config files
        edits: Targeted edits parsed from the response
        patched: Normalized paths updated by targeted edits
        app_source: Synthesized App.jsx source, if one was written
        missing_imports: Relative imports of the root component with no target
        compensation: Outcome of the missing-import completion
        step: Last node that ran
    """

    ctx: ApplyContext
    parsed: ParsedResponse
    result: ApplyResult
    files: list[ParsedFile]
    edits: list[MorphEdit]
    patched: list[str]
    app_source: str | None
    missing_imports: list[str]
    compensation: CompensationOutcome
    step: str


@dataclass
class ApplyRun:
    """Final outcome of one pipeline run."""

    result: ApplyResult
    parsed: ParsedResponse
    edits: list[MorphEdit] = field(default_factory=list)
    missing_imports: list[str] = field(default_factory=list)
    compensation: CompensationOutcome = field(default_factory=CompensationOutcome)

    @property
    def message(self) -> str:
        if self.compensation.status == CompensationStatus.SUCCEEDED:
            return (
                f"Applied {len(self.result.files_created)} files + auto-generated "
                f"{len(self.compensation.components)} missing components"
            )
        return f"Applied {len(self.result.files_created)} files successfully"

    @property
    def warning(self) -> str | None:
        if self.missing_imports and self.compensation.status != CompensationStatus.SUCCEEDED:
            return (
                f"Missing {len(self.missing_imports)} imported components: "
                f"{', '.join(self.missing_imports)}"
            )
        return None

    def to_response(self) -> ApplyResponse:
        succeeded = self.compensation.status == CompensationStatus.SUCCEEDED
        return ApplyResponse(
            success=True,
            results=self.result,
            explanation=self.parsed.explanation,
            structure=self.parsed.structure,
            message=self.message,
            missing_imports=self.missing_imports if self.warning else None,
            auto_completed=succeeded,
            auto_completed_components=self.compensation.components if succeeded else None,
            warning=self.warning,
        )


# =============================================================================
# Node Functions
# =============================================================================

async def prepare_node(state: ApplyState) -> dict[str, Any]:
    """Drop protected config files and announce the run."""
    ctx = state["ctx"]
    parsed = state["parsed"]
    protected = ctx.settings.protected_config_files

    files = []
    for file in parsed.files:
        if is_protected(file.path, protected):
            logger.warning(f"[{ctx.sandbox_id}] Skipping protected config file {file.path}")
            continue
        files.append(file)

    await ctx.progress.emit(EventType.START, message="Starting code application...", total_steps=3)

    edits = state.get("edits") or []
    if ctx.morph_mode:
        await ctx.progress.emit(EventType.INFO, message="Morph Fast Apply enabled")
        await ctx.progress.emit(EventType.INFO, message=f"Parsed {len(edits)} Morph edits")
        if not edits:
            logger.warning(f"[{ctx.sandbox_id}] Morph enabled but no <edit> blocks found")
            await ctx.progress.emit(
                EventType.WARNING,
                message="Morph enabled but no <edit> blocks found; falling back to full-file flow",
            )

    return {"files": files, "step": "prepare"}


async def packages_node(state: ApplyState) -> dict[str, Any]:
    """Install hinted and detected packages that the runtime does not ship."""
    ctx = state["ctx"]
    result = state["result"]
    preinstalled = set(ctx.settings.preinstalled_packages)

    packages: list[str] = []
    rejected: list[str] = []
    for pkg in [*ctx.package_hints, *state["parsed"].packages]:
        pkg = pkg.strip()
        if not pkg or pkg in preinstalled or pkg in packages or pkg in rejected:
            continue
        if not is_valid_package_name(pkg):
            rejected.append(pkg)
            continue
        packages.append(pkg)

    for pkg in rejected:
        logger.warning(f"[{ctx.sandbox_id}] Rejecting invalid package name {pkg!r}")
        result.packages_failed.append(pkg)
        result.errors.append(f"Invalid package name: {pkg}")
    if rejected:
        await ctx.progress.emit(
            EventType.WARNING,
            message=f"Skipped {len(rejected)} invalid package names",
            packages=rejected,
        )

    if not packages:
        await ctx.progress.emit(EventType.STEP, step=1, message="No additional packages to install, skipping...")
        return {"result": result, "step": "packages"}

    await ctx.progress.emit(
        EventType.STEP,
        step=1,
        message=f"Installing {len(packages)} packages...",
        packages=packages,
    )

    try:
        outcome = await ctx.installer.install(packages, ctx.sandbox_id, ctx.provider, ctx.progress)
    except Exception as e:
        logger.error(f"[{ctx.sandbox_id}] Package installation failed: {e}")
        result.errors.append(f"Package installation failed: {e}")
        await ctx.progress.emit(
            EventType.WARNING,
            message=f"Package installation skipped ({e}). Continuing with file creation...",
        )
        return {"result": result, "step": "packages"}

    result.packages_installed.extend(outcome.installed)
    result.packages_already_installed.extend(outcome.already_installed)
    result.packages_failed.extend(outcome.failed)
    for pkg in outcome.failed:
        result.errors.append(f"Failed to install package {pkg}")

    logger.info(
        f"[{ctx.sandbox_id}] Packages: {len(outcome.installed)} installed, "
        f"{len(outcome.already_installed)} already present, {len(outcome.failed)} failed"
    )
    return {"result": result, "step": "packages"}


async def edits_node(state: ApplyState) -> dict[str, Any]:
    """Apply targeted edits; patched files are skipped by the full-file pass."""
    ctx = state["ctx"]
    result = state["result"]
    edits = state["edits"]
    patched: list[str] = []

    await ctx.progress.emit(EventType.INFO, message=f"Applying {len(edits)} fast edits via Morph...")

    for index, edit in enumerate(edits, start=1):
        await ctx.progress.emit(
            EventType.FILE_PROGRESS,
            current=index,
            total=len(edits),
            file_name=edit.target_file,
            action="morph-applying",
        )
        outcome = await apply_morph_edit(ctx.provider, edit, ctx.morph, ctx.settings.protected_config_files)
        if outcome.success and outcome.normalized_path:
            patched.append(outcome.normalized_path)
            result.record_updated(outcome.normalized_path)
            ctx.known_files.add(outcome.normalized_path)
            await ctx.progress.emit(
                EventType.FILE_COMPLETE,
                file_name=outcome.normalized_path,
                action="morph-updated",
            )
        else:
            message = outcome.error or "Unknown Morph error"
            result.errors.append(f"Morph apply failed for {edit.target_file}: {message}")
            await ctx.progress.emit(EventType.FILE_ERROR, file_name=edit.target_file, error=message)

    return {"result": result, "patched": patched, "step": "edits"}


async def files_node(state: ApplyState) -> dict[str, Any]:
    """Write full files, classifying each as created or updated."""
    ctx = state["ctx"]
    result = state["result"]
    protected = ctx.settings.protected_config_files
    patched = set(state.get("patched") or [])

    files = [f for f in state["files"] if normalize_path(f.path, protected) not in patched]

    await ctx.progress.emit(EventType.STEP, step=2, message=f"Creating {len(files)} files...")

    for index, file in enumerate(files, start=1):
        await ctx.progress.emit(
            EventType.FILE_PROGRESS,
            current=index,
            total=len(files),
            file_name=file.path,
            action="creating",
        )
        path = normalize_path(file.path, protected)
        try:
            is_update = path in ctx.known_files
            content = sanitize_content(path, file.content)

            directory = parent_dir(path)
            if directory:
                await ctx.provider.make_dir(directory)
            await ctx.provider.write_file(path, content)

            if is_update:
                result.record_updated(path)
            else:
                result.record_created(path)
            ctx.known_files.add(path)

            await ctx.progress.emit(
                EventType.FILE_COMPLETE,
                file_name=path,
                action="updated" if is_update else "created",
            )
        except Exception as e:
            logger.error(f"[{ctx.sandbox_id}] Failed to write {path}: {e}")
            result.errors.append(f"Failed to create {file.path}: {e}")
            await ctx.progress.emit(EventType.FILE_ERROR, file_name=file.path, error=str(e))

    logger.info(
        f"[{ctx.sandbox_id}] Files: {len(result.files_created)} created, {len(result.files_updated)} updated"
    )
    return {"result": result, "step": "files"}


async def scaffold_node(state: ApplyState) -> dict[str, Any]:
    """Synthesize src/App.jsx (and a baseline index.css) for a fresh generation."""
    ctx = state["ctx"]
    result = state["result"]
    protected = ctx.settings.protected_config_files
    generated = [normalize_path(f.path, protected) for f in state["files"]]
    present = set(generated) | ctx.known_files

    app_source = scaffold.build_app(generated)
    try:
        await ctx.provider.write_file(scaffold.APP_PATH, app_source)
        result.record_created(scaffold.APP_PATH)
        ctx.known_files.add(scaffold.APP_PATH)
        await ctx.progress.emit(EventType.FILE_COMPLETE, file_name=scaffold.APP_PATH, action="auto-generated")
        logger.info(f"[{ctx.sandbox_id}] Auto-generated {scaffold.APP_PATH}")
    except Exception as e:
        logger.error(f"[{ctx.sandbox_id}] Failed to create App.jsx: {e}")
        result.errors.append(f"Failed to create App.jsx: {e}")
        app_source = None

    if scaffold.needs_index_css(present):
        try:
            await ctx.provider.write_file(scaffold.INDEX_CSS_PATH, scaffold.INDEX_CSS)
            result.record_created(scaffold.INDEX_CSS_PATH)
            ctx.known_files.add(scaffold.INDEX_CSS_PATH)
            await ctx.progress.emit(
                EventType.FILE_COMPLETE,
                file_name=scaffold.INDEX_CSS_PATH,
                action="auto-generated",
            )
        except Exception as e:
            logger.error(f"[{ctx.sandbox_id}] Failed to create index.css: {e}")
            result.errors.append(f"Failed to create index.css: {e}")

    return {"result": result, "app_source": app_source, "step": "scaffold"}


async def commands_node(state: ApplyState) -> dict[str, Any]:
    """Run commands in order; each one runs regardless of earlier failures."""
    ctx = state["ctx"]
    result = state["result"]
    commands = state["parsed"].commands

    if not commands:
        return {"step": "commands"}

    await ctx.progress.emit(EventType.STEP, step=3, message=f"Executing {len(commands)} commands...")

    for index, command in enumerate(commands, start=1):
        await ctx.progress.emit(
            EventType.COMMAND_PROGRESS,
            current=index,
            total=len(commands),
            command=command,
            action="executing",
        )
        try:
            output = await ctx.provider.run_command(command)
        except Exception as e:
            logger.error(f"[{ctx.sandbox_id}] Failed to execute {command}: {e}")
            result.errors.append(f"Failed to execute {command}: {e}")
            await ctx.progress.emit(EventType.COMMAND_COMPLETE, command=command, success=False, error=str(e))
            continue

        if output.stdout:
            await ctx.progress.emit(EventType.COMMAND_OUTPUT, command=command, output=output.stdout, stream="stdout")
        if output.stderr:
            await ctx.progress.emit(EventType.COMMAND_OUTPUT, command=command, output=output.stderr, stream="stderr")

        result.commands_executed.append(command)
        if output.exit_code != 0:
            result.errors.append(f"Command '{command}' exited with code {output.exit_code}")

        await ctx.progress.emit(
            EventType.COMMAND_COMPLETE,
            command=command,
            exit_code=output.exit_code,
            success=output.exit_code == 0,
        )

    return {"result": result, "step": "commands"}


async def imports_node(state: ApplyState) -> dict[str, Any]:
    """Find root-component imports with no target and try to generate them."""
    ctx = state["ctx"]
    result = state["result"]
    protected = ctx.settings.protected_config_files
    generated = {normalize_path(f.path, protected): f for f in state["files"]}

    root_path, root_source = None, None
    for candidate in scaffold.APP_PATHS:
        if candidate in generated:
            root_path, root_source = candidate, generated[candidate].content
            break
    if root_source is None and state.get("app_source"):
        root_path, root_source = scaffold.APP_PATH, state["app_source"]

    if root_source is None:
        return {"step": "imports"}

    present = set(generated) | ctx.known_files
    missing = find_missing_imports(root_path, root_source, present)
    if not missing:
        return {"missing_imports": [], "step": "imports"}

    logger.warning(f"[{ctx.sandbox_id}] Missing imports detected: {missing}")

    if ctx.completer is None:
        compensation = CompensationOutcome(status=CompensationStatus.SKIPPED, missing_imports=missing)
    else:
        await ctx.progress.emit(EventType.INFO, message=f"Auto-generating {len(missing)} missing components...")
        compensation = await ctx.completer.complete(missing, ctx.sandbox_id)

    if compensation.status == CompensationStatus.SUCCEEDED:
        for component in compensation.components:
            result.record_created(component)
            ctx.known_files.add(component)
        await ctx.progress.emit(
            EventType.INFO,
            message=f"Auto-generated {len(compensation.components)} missing components",
            components=compensation.components,
        )
    else:
        detail = f" ({compensation.error})" if compensation.error else ""
        await ctx.progress.emit(
            EventType.WARNING,
            message=f"Missing {len(missing)} imported components: {', '.join(missing)}{detail}",
            missing_imports=missing,
        )

    return {"result": result, "missing_imports": missing, "compensation": compensation, "step": "imports"}


# =============================================================================
# Routing Functions
# =============================================================================

def route_after_packages(state: ApplyState) -> Literal["edits", "files"]:
    if state["ctx"].morph_mode and state.get("edits"):
        return "edits"
    return "files"


def route_after_files(state: ApplyState) -> Literal["scaffold", "commands"]:
    ctx = state["ctx"]
    if ctx.is_edit or not state["parsed"].files:
        return "commands"

    protected = ctx.settings.protected_config_files
    present = {normalize_path(f.path, protected) for f in state["files"]} | ctx.known_files
    if scaffold.needs_app(present):
        return "scaffold"
    return "commands"


# =============================================================================
# Workflow Builder
# =============================================================================

def build_workflow() -> StateGraph:
    """Build the LangGraph apply workflow."""
    workflow = StateGraph(ApplyState)

    workflow.add_node("prepare", prepare_node)
    workflow.add_node("packages", packages_node)
    workflow.add_node("edits", edits_node)
    workflow.add_node("files", files_node)
    workflow.add_node("scaffold", scaffold_node)
    workflow.add_node("commands", commands_node)
    workflow.add_node("imports", imports_node)

    workflow.set_entry_point("prepare")

    workflow.add_edge("prepare", "packages")
    workflow.add_conditional_edges(
        "packages",
        route_after_packages,
        {
            "edits": "edits",
            "files": "files",
        },
    )
    workflow.add_edge("edits", "files")
    workflow.add_conditional_edges(
        "files",
        route_after_files,
        {
            "scaffold": "scaffold",
            "commands": "commands",
        },
    )
    workflow.add_edge("scaffold", "commands")
    workflow.add_edge("commands", "imports")
    workflow.add_edge("imports", END)

    return workflow


# Compiled workflow
apply_workflow = build_workflow().compile()


# =============================================================================
# Public API
# =============================================================================

class ApplyPipeline:
    """Runs the apply workflow for one request."""

    def __init__(self, ctx: ApplyContext):
        self.ctx = ctx

    async def run(self, response: str = "", parsed: ParsedResponse | None = None) -> ApplyRun:
        """Apply an AI response and emit the terminal complete event.

        Args:
            response: Raw AI response text
            parsed: Pre-parsed response (skips parsing when given)

        Returns:
            ApplyRun with the aggregated result
        """
        ctx = self.ctx
        if parsed is None:
            parsed = parse_ai_response(response)
        edits = parse_morph_edits(response) if ctx.morph_mode else []

        logger.info(
            f"[{ctx.sandbox_id}] Applying {len(parsed.files)} files, {len(parsed.packages)} packages, "
            f"{len(parsed.commands)} commands (edit={ctx.is_edit}, morph={ctx.morph_mode})"
        )

        state = ApplyState(
            ctx=ctx,
            parsed=parsed,
            result=ApplyResult(),
            files=[],
            edits=edits,
            patched=[],
            app_source=None,
            missing_imports=[],
            compensation=CompensationOutcome(),
            step="start",
        )
        final = await apply_workflow.ainvoke(state)

        run = ApplyRun(
            result=final["result"],
            parsed=parsed,
            edits=edits,
            missing_imports=final.get("missing_imports") or [],
            compensation=final.get("compensation") or CompensationOutcome(),
        )

        await ctx.progress.emit(
            EventType.COMPLETE,
            results=run.result,
            explanation=parsed.explanation,
            structure=parsed.structure,
            message=run.message,
            missing_imports=run.missing_imports or None,
            auto_completed=run.compensation.status == CompensationStatus.SUCCEEDED,
        )
        logger.info(f"[{ctx.sandbox_id}] Apply finished with {len(run.result.errors)} errors")
        return run
