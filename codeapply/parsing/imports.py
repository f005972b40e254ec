"""Import scanning for generated source files.

Used two ways:
- infer npm packages from bare import specifiers
- find relative imports in the root component whose targets do not exist
"""

from __future__ import annotations

import posixpath
import re
from typing import Iterable


SCRIPT_EXTENSIONS = (".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs")

NODE_BUILTINS = frozenset({
    "fs",
    "path",
    "http",
    "https",
    "crypto",
    "stream",
    "util",
    "os",
    "url",
    "querystring",
    "child_process",
})

# Provided by the sandbox runtime template.
FRAMEWORK_PACKAGES = frozenset({"react", "react-dom"})

_IMPORT_FROM_RE = re.compile(r"""\bimport\s+(?:type\s+)?[\w*{}\s,$]+?\s+from\s*['"]([^'"\n]+)['"]""")
_SIDE_EFFECT_IMPORT_RE = re.compile(r"""\bimport\s*['"]([^'"\n]+)['"]""")
_EXPORT_FROM_RE = re.compile(r"""\bexport\s+(?:type\s+)?(?:\*(?:\s+as\s+\w+)?|\{[^}]*\})\s*from\s*['"]([^'"\n]+)['"]""")
_REQUIRE_RE = re.compile(r"""\brequire\s*\(\s*['"]([^'"\n]+)['"]\s*\)""")
_DYNAMIC_IMPORT_RE = re.compile(r"""\bimport\s*\(\s*['"]([^'"\n]+)['"]\s*\)""")

RESOLVE_EXTENSIONS = (".jsx", ".js", ".tsx", ".ts")

# npm package name, optionally scoped, with an optional @version/tag suffix.
_NPM_NAME_RE = re.compile(
    r"^(?:@[a-z0-9~-][a-z0-9._~-]*/)?[a-z0-9~-][a-z0-9._~-]*(?:@[\w.^~*<>=-]+)?$",
    re.IGNORECASE,
)


def is_script(path: str) -> bool:
    return path.endswith(SCRIPT_EXTENSIONS)


def extract_specifiers(content: str) -> list[str]:
    """All module specifiers referenced by a source file, in order of appearance."""
    found: list[tuple[int, str]] = []
    for pattern in (_IMPORT_FROM_RE, _SIDE_EFFECT_IMPORT_RE, _EXPORT_FROM_RE, _REQUIRE_RE, _DYNAMIC_IMPORT_RE):
        for match in pattern.finditer(content):
            found.append((match.start(), match.group(1).strip()))

    specifiers: list[str] = []
    for _, spec in sorted(found):
        if spec and spec not in specifiers:
            specifiers.append(spec)
    return specifiers


def package_name(specifier: str) -> str | None:
    """Reduce a bare specifier to its npm package name.

    Returns None for relative paths, workspace aliases, framework packages
    and Node built-ins.
    """
    spec = specifier.strip()
    if not spec or spec.startswith((".", "/", "@/", "~/")):
        return None
    if spec.startswith("node:"):
        return None

    parts = spec.split("/")
    if spec.startswith("@"):
        if len(parts) < 2 or not parts[1]:
            return None
        name = "/".join(parts[:2])
    else:
        name = parts[0]

    if name in FRAMEWORK_PACKAGES or name in NODE_BUILTINS:
        return None
    return name


def is_valid_package_name(name: str) -> bool:
    return len(name) <= 214 and bool(_NPM_NAME_RE.match(name))


def infer_packages(files: Iterable[tuple[str, str]]) -> list[str]:
    """Package names imported by script files, first-seen order."""
    packages: list[str] = []
    for path, content in files:
        if not is_script(path):
            continue
        for spec in extract_specifiers(content):
            name = package_name(spec)
            if name and name not in packages:
                packages.append(name)
    return packages


def relative_imports(content: str) -> list[str]:
    """Relative specifiers (./ or ../) imported by a file."""
    return [s for s in extract_specifiers(content) if s.startswith(("./", "../"))]


def candidate_paths(importer: str, specifier: str) -> list[str]:
    """Files a relative import could resolve to."""
    base = posixpath.normpath(posixpath.join(posixpath.dirname(importer), specifier))
    if posixpath.splitext(base)[1] in RESOLVE_EXTENSIONS:
        return [base]
    candidates = [base + ext for ext in RESOLVE_EXTENSIONS]
    candidates += [f"{base}/index{ext}" for ext in RESOLVE_EXTENSIONS]
    return candidates


def find_missing_imports(importer: str, content: str, present: Iterable[str]) -> list[str]:
    """Relative imports of `importer` whose targets are not in `present`.

    Style imports are ignored.
    """
    present_paths = set(present)
    missing: list[str] = []
    for spec in relative_imports(content):
        if spec.endswith((".css", ".scss", ".sass", ".less")):
            continue
        if not any(path in present_paths for path in candidate_paths(importer, spec)):
            missing.append(spec)
    return missing
