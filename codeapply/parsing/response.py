"""Parser for AI responses describing file changes.

Recognized structure (XML-ish tags mixed with prose and markdown):
- <file path="...">...</file>   full file contents (closing tag optional)
- <package>x</package>, <packages>a, b</packages>
- <command>npm run build</command>
- <structure>, <explanation>, <template>
- fallbacks: ```file path="x"``` fences, "// File: X" hints inside code
  fences, and a "Generated Files: a.jsx, b.jsx" declaration

Parsing is lenient: malformed or truncated input yields whatever could be
extracted and never raises.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from codeapply.parsing.imports import infer_packages
from codeapply.pipeline.paths import normalize_path
from codeapply.schemas import ParsedFile, ParsedResponse


logger = logging.getLogger(__name__)

_FILE_OPEN_RE = re.compile(r'<file\s+path\s*=\s*"([^"]+)"\s*>')
_FILE_CLOSE = "</file>"

_FENCED_PATH_RE = re.compile(r'```(?:[\w-]+[ \t]+)?(?:file[ \t]+)?path="([^"]+)"[^\n]*\n([\s\S]*?)```')
_CODE_BLOCK_RE = re.compile(r"```(?:jsx?|tsx?|javascript|typescript)?[ \t]*\n([\s\S]*?)```")
_FILE_HINT_RE = re.compile(r"//\s*(?:File|Component):\s*([^\n]+)")
_GENERATED_FILES_RE = re.compile(r"Generated Files?:[ \t]*([^\n]+)", re.IGNORECASE)
_GENERATED_NAME_RE = re.compile(r"\.(?:jsx?|tsx?|css|json|html)$")

_PACKAGE_RE = re.compile(r"<package>([\s\S]*?)</package>")
_PACKAGES_RE = re.compile(r"<packages>([\s\S]*?)</packages>")
_COMMAND_RE = re.compile(r"<command>([\s\S]*?)</command>")
_STRUCTURE_RE = re.compile(r"<structure>([\s\S]*?)</structure>")
_EXPLANATION_RE = re.compile(r"<explanation>([\s\S]*?)</explanation>")
_TEMPLATE_RE = re.compile(r"<template>([\s\S]*?)</template>")

# "..." used as an elision marker, as opposed to spread syntax (...props).
_BARE_ELLIPSIS_RE = re.compile(r"(?<![\w.])\.\.\.(?![\w$\[({.])")


@dataclass
class _Candidate:
    path: str
    content: str
    complete: bool


def has_bare_ellipsis(content: str) -> bool:
    return bool(_BARE_ELLIPSIS_RE.search(content))


def _should_replace(existing: _Candidate | None, content: str, complete: bool) -> bool:
    if existing is None:
        return True
    if complete and not existing.complete:
        return True
    if complete == existing.complete and len(content) > len(existing.content):
        return True
    return False


def _scan_file_tags(text: str) -> list[_Candidate]:
    """Every <file path> block in order; unclosed blocks end at the next opener."""
    candidates: list[_Candidate] = []
    openers = list(_FILE_OPEN_RE.finditer(text))
    for index, opener in enumerate(openers):
        start = opener.end()
        next_open = openers[index + 1].start() if index + 1 < len(openers) else len(text)
        close = text.find(_FILE_CLOSE, start, next_open)
        if close != -1:
            body, complete = text[start:close], True
        else:
            body, complete = text[start:next_open], False
        candidates.append(_Candidate(path=opener.group(1).strip(), content=body.strip(), complete=complete))
    return candidates


def _fallback_path(name: str) -> str:
    name = name.strip().strip("`'\"")
    return name if "/" in name else f"src/components/{name}"


def _generated_file_blocks(text: str) -> list[tuple[str, str]]:
    """Files announced by a "Generated Files:" line and followed by their code."""
    declaration = _GENERATED_FILES_RE.search(text)
    if not declaration:
        return []

    names = [n.strip() for n in declaration.group(1).split(",")]
    names = [n for n in names if _GENERATED_NAME_RE.search(n)]
    rest = text[declaration.end():]

    blocks: list[tuple[str, str]] = []
    for name in names:
        position = rest.find(name)
        if position == -1:
            continue
        section = rest[position + len(name):]
        stop = re.search(r"Generated Files?:|Applying code", section, re.IGNORECASE)
        if stop:
            section = section[: stop.start()]
        for other in names:
            if other != name:
                other_at = section.find(other)
                if other_at != -1:
                    section = section[:other_at]
        code = re.search(r"^import[\s\S]+", section, re.MULTILINE)
        if code:
            blocks.append((name, code.group(0).replace("```", "").strip()))
    return blocks


def _split_packages(raw: str) -> list[str]:
    return [p.strip() for p in re.split(r"[\n,]+", raw) if p.strip()]


def parse_ai_response(text: str | None, detect_packages: bool = True) -> ParsedResponse:
    """Extract files, packages, commands and metadata from an AI response.

    Args:
        text: Raw model output
        detect_packages: Also infer packages from imports in extracted files

    Returns:
        ParsedResponse; files are unique by normalized path
    """
    if not isinstance(text, str) or not text:
        return ParsedResponse()

    chosen: dict[str, _Candidate] = {}

    for candidate in _scan_file_tags(text):
        key = normalize_path(candidate.path)
        existing = chosen.get(key)
        if not _should_replace(existing, candidate.content, candidate.complete):
            continue
        # A closed block always beats an unclosed one, ellipsis or not.
        closes_existing = existing is not None and candidate.complete and not existing.complete
        if has_bare_ellipsis(candidate.content):
            logger.warning(f"{candidate.path} contains an ellipsis and may be truncated")
            if existing is not None and not closes_existing:
                continue
        elif existing is not None:
            logger.info(f"Replacing {candidate.path} with a more complete version")
        chosen[key] = candidate

    for match in _FENCED_PATH_RE.finditer(text):
        path = match.group(1).strip()
        key = normalize_path(path)
        if key not in chosen:
            chosen[key] = _Candidate(path=path, content=match.group(2).strip(), complete=True)

    for name, content in _generated_file_blocks(text):
        path = _fallback_path(name)
        key = normalize_path(path)
        if key not in chosen:
            chosen[key] = _Candidate(path=path, content=content, complete=True)

    for match in _CODE_BLOCK_RE.finditer(text):
        content = match.group(1).strip()
        head = "\n".join(content.splitlines()[:3])
        hint = _FILE_HINT_RE.search(head)
        if not hint:
            continue
        path = _fallback_path(hint.group(1))
        key = normalize_path(path)
        if key not in chosen:
            chosen[key] = _Candidate(path=path, content=content, complete=True)

    files: list[ParsedFile] = []
    for candidate in chosen.values():
        if not candidate.complete:
            logger.warning(f"File {candidate.path} appears to be truncated (no closing tag)")
        files.append(ParsedFile(path=candidate.path, content=candidate.content, complete=candidate.complete))

    packages: list[str] = []
    if detect_packages:
        packages.extend(infer_packages((f.path, f.content) for f in files))

    declared = [m.group(1).strip() for m in _PACKAGE_RE.finditer(text)]
    for match in _PACKAGES_RE.finditer(text):
        declared.extend(_split_packages(match.group(1)))
    for pkg in declared:
        if pkg and pkg not in packages:
            packages.append(pkg)

    commands = [m.group(1).strip() for m in _COMMAND_RE.finditer(text) if m.group(1).strip()]

    structure = _STRUCTURE_RE.search(text)
    explanation = _EXPLANATION_RE.search(text)
    template = _TEMPLATE_RE.search(text)

    return ParsedResponse(
        files=files,
        packages=packages,
        commands=commands,
        structure=structure.group(1).strip() if structure else None,
        explanation=explanation.group(1).strip() if explanation else "",
        template=template.group(1).strip() if template else "",
    )
