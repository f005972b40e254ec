"""Path normalization and content clean-up for files written to a sandbox."""

from __future__ import annotations

import posixpath
import re
from typing import Iterable


PROTECTED_CONFIG_FILES = (
    "tailwind.config.js",
    "vite.config.js",
    "package.json",
    "package-lock.json",
    "tsconfig.json",
    "postcss.config.js",
)

SCRIPT_EXTENSIONS = (".js", ".jsx", ".ts", ".tsx")

_CSS_IMPORT_RE = re.compile(r"""import\s+['"]\./[^'"]+\.css['"];?\s*\n?""")
_OVERSIZED_SHADOW_RE = re.compile(r"shadow-[345]xl")


def basename(path: str) -> str:
    return posixpath.basename(path)


def is_protected(path: str, protected: Iterable[str] | None = None) -> bool:
    """Whether a path names a runtime config file the model may not overwrite."""
    names = PROTECTED_CONFIG_FILES if protected is None else tuple(protected)
    return basename(path) in names


def normalize_path(path: str, protected: Iterable[str] | None = None) -> str:
    """Map a model-written path to its location in the sandbox app.

    >>> normalize_path("Foo.jsx")
    'src/Foo.jsx'
    >>> normalize_path("/public/logo.png")
    'public/logo.png'
    """
    normalized = path.strip()
    if normalized.startswith("/"):
        normalized = normalized[1:]

    if (
        not normalized.startswith("src/")
        and not normalized.startswith("public/")
        and normalized != "index.html"
        and not is_protected(normalized, protected)
    ):
        normalized = "src/" + normalized
    return normalized


def sanitize_content(path: str, content: str) -> str:
    """Apply the fix-ups every written file gets.

    Script files lose relative CSS imports (styling comes from Tailwind);
    CSS files get non-existent shadow utilities rewritten to shadow-2xl.
    """
    if path.endswith(SCRIPT_EXTENSIONS):
        content = _CSS_IMPORT_RE.sub("", content)
    if path.endswith(".css"):
        content = _OVERSIZED_SHADOW_RE.sub("shadow-2xl", content)
    return content


def parent_dir(path: str) -> str:
    return posixpath.dirname(path)
