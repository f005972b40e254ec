"""Pydantic schemas for all code-application I/O contracts.

These schemas define the strict contracts between:
- API endpoints and clients (camelCase on the wire)
- The response parser and the apply pipeline
- Sandbox providers and their callers
- External collaborators (package installer, auto-completer)
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys and populated by either name."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Dump with aliases, the shape clients receive."""
        return self.model_dump(by_alias=True, mode="json")


# =============================================================================
# Enums
# =============================================================================

class EventType(str, Enum):
    """Types of progress events emitted while applying code."""
    START = "start"
    STEP = "step"
    PACKAGE_PROGRESS = "package-progress"
    FILE_PROGRESS = "file-progress"
    FILE_COMPLETE = "file-complete"
    FILE_ERROR = "file-error"
    COMMAND_PROGRESS = "command-progress"
    COMMAND_OUTPUT = "command-output"
    COMMAND_COMPLETE = "command-complete"
    INFO = "info"
    WARNING = "warning"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_EVENTS = frozenset({EventType.COMPLETE.value, EventType.ERROR.value})


class CompensationStatus(str, Enum):
    """Outcome of the missing-import compensation step."""
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# =============================================================================
# Parser Schemas
# =============================================================================

class ParsedFile(CamelModel):
    """A single file extracted from an AI response."""
    path: str = Field(..., description="Path as written by the model")
    content: str = Field(default="", description="File content")
    complete: bool = Field(default=True, description="Whether a closing tag was seen")


class ParsedResponse(CamelModel):
    """Normalized change-set extracted from a raw AI response."""
    files: list[ParsedFile] = Field(default_factory=list)
    packages: list[str] = Field(default_factory=list, description="Deduplicated package names")
    commands: list[str] = Field(default_factory=list, description="Shell commands, in order")
    structure: str | None = Field(default=None, description="Optional project tree text")
    explanation: str = Field(default="")
    template: str = Field(default="")


class MorphEdit(CamelModel):
    """A targeted patch block: instructions plus an elided update snippet."""
    target_file: str
    instructions: str = ""
    update_snippet: str


class EditOutcome(CamelModel):
    """Result of applying one targeted patch."""
    target_file: str
    success: bool
    normalized_path: str | None = None
    error: str | None = None


# =============================================================================
# Sandbox Schemas
# =============================================================================

class SandboxInfo(CamelModel):
    """Identity of a live sandbox as reported by its provider."""
    sandbox_id: str
    url: str = ""
    provider: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    workdir: str | None = None


class CommandResult(CamelModel):
    """Output of a shell command executed in a sandbox."""
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    success: bool = True


# =============================================================================
# Result Schemas
# =============================================================================

class ApplyResult(CamelModel):
    """Aggregate outcome of one apply run; reflects partial success explicitly."""
    files_created: list[str] = Field(default_factory=list)
    files_updated: list[str] = Field(default_factory=list)
    packages_installed: list[str] = Field(default_factory=list)
    packages_already_installed: list[str] = Field(default_factory=list)
    packages_failed: list[str] = Field(default_factory=list)
    commands_executed: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    def record_created(self, path: str) -> None:
        if path not in self.files_created and path not in self.files_updated:
            self.files_created.append(path)

    def record_updated(self, path: str) -> None:
        if path not in self.files_updated and path not in self.files_created:
            self.files_updated.append(path)


class InstallOutcome(CamelModel):
    """What the package-install collaborator reported."""
    installed: list[str] = Field(default_factory=list)
    already_installed: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    success: bool = True
    message: str = ""


class CompensationOutcome(CamelModel):
    """Typed result of the missing-import auto-completion step."""
    status: CompensationStatus = CompensationStatus.SKIPPED
    missing_imports: list[str] = Field(default_factory=list)
    components: list[str] = Field(default_factory=list, description="Generated file paths")
    error: str | None = None


# =============================================================================
# API Request/Response Schemas
# =============================================================================

class ApplyRequest(CamelModel):
    """API request to apply an AI response to a sandbox."""
    response: str = Field(default="", description="Raw AI response text")
    is_edit: bool = Field(default=False)
    sandbox_id: str = Field(default="", description="Explicit sandbox id (required)")
    packages: list[Any] = Field(default_factory=list, description="Optional package hints")

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "response": '<file path="src/Button.jsx">export default () => null;</file>',
                "isEdit": False,
                "sandboxId": "sbx-1234abcd",
                "packages": ["lodash"],
            }
        },
    )

    def package_hints(self) -> list[str]:
        """Only the string hints; anything else from the client is ignored."""
        return [p for p in self.packages if isinstance(p, str) and p.strip()]


class ApplyResponse(CamelModel):
    """API response for a non-streaming apply."""
    success: bool = True
    results: ApplyResult
    explanation: str = ""
    structure: str | None = None
    message: str = ""
    missing_imports: list[str] | None = None
    auto_completed: bool = False
    auto_completed_components: list[str] | None = None
    warning: str | None = None


class SandboxNotFoundResponse(CamelModel):
    """API response when the sandbox id is absent and unreconnectable."""
    success: bool = False
    error: str
    results: ApplyResult
    explanation: str = ""
    structure: str | None = None
    parsed_files: list[ParsedFile] = Field(default_factory=list)
    message: str = ""


class CreateSandboxRequest(CamelModel):
    """API request to create a sandbox or restore an existing one."""
    sandbox_id: str | None = None


class SandboxResponse(CamelModel):
    """API response describing a sandbox."""
    success: bool = True
    sandbox_id: str
    url: str = ""
    provider: str = ""
    message: str = ""


class SandboxStatusResponse(CamelModel):
    """API response for sandbox status."""
    sandbox_id: str
    alive: bool
    url: str = ""
    provider: str = ""
    created_at: datetime | None = None
    last_accessed: datetime | None = None
    known_files: int = 0


class ParseRequest(CamelModel):
    """API request to parse a response without applying it."""
    response: str
