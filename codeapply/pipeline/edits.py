"""Targeted edits: <edit> blocks merged into existing files by Morph."""

from __future__ import annotations

import logging
import re
from typing import Iterable

from codeapply.llm.morph import MorphClient
from codeapply.pipeline.paths import normalize_path
from codeapply.sandbox.base import SandboxProvider
from codeapply.schemas import EditOutcome, MorphEdit


logger = logging.getLogger(__name__)

_EDIT_RE = re.compile(r"""<edit\s+target_file\s*=\s*["']([^"']+)["']\s*>([\s\S]*?)</edit>""")
_INSTRUCTIONS_RE = re.compile(r"<instructions>([\s\S]*?)</instructions>")
_UPDATE_RE = re.compile(r"<update>([\s\S]*?)</update>")


def parse_morph_edits(text: str | None) -> list[MorphEdit]:
    """Parse independent <edit target_file="..."> blocks.

    A block without <update> is skipped; missing <instructions> is empty.
    """
    if not text:
        return []

    edits: list[MorphEdit] = []
    for match in _EDIT_RE.finditer(text):
        target = match.group(1).strip()
        body = match.group(2)

        update = _UPDATE_RE.search(body)
        if not update:
            logger.warning(f"Skipping edit for {target}: no <update> block")
            continue

        instructions = _INSTRUCTIONS_RE.search(body)
        edits.append(
            MorphEdit(
                target_file=target,
                instructions=instructions.group(1).strip() if instructions else "",
                update_snippet=update.group(1).strip("\n"),
            )
        )
    return edits


async def apply_morph_edit(
    provider: SandboxProvider,
    edit: MorphEdit,
    client: MorphClient,
    protected: Iterable[str] | None = None,
) -> EditOutcome:
    """Read the target, merge the update snippet, write the result back.

    Failures are reported in the outcome, never raised.
    """
    path = normalize_path(edit.target_file, protected)
    try:
        original = await provider.read_file(path)
        merged = await client.merge(edit.instructions, original, edit.update_snippet)
        await provider.write_file(path, merged)
    except Exception as e:
        logger.error(f"Morph edit failed for {edit.target_file}: {e}")
        return EditOutcome(target_file=edit.target_file, success=False, normalized_path=path, error=str(e))

    logger.info(f"Morph updated {path}")
    return EditOutcome(target_file=edit.target_file, success=True, normalized_path=path)
