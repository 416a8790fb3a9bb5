"""
Import specifier extraction and package-name normalization.

Shared by the stream parser (which folds detected packages into its
directive set) and the package resolver (which decides what to install).
"""

import re
from typing import Dict, Iterable, List

SCRIPT_EXTENSION_RE = re.compile(r"\.(jsx?|tsx?|mjs|cjs)$")

IMPORT_RE = re.compile(
    r"""import\s+(?:(?:\{[^}]*\}|\*\s+as\s+\w+|\w+)(?:\s*,\s*(?:\{[^}]*\}|\*\s+as\s+\w+|\w+))*\s+from\s+)?['"]([^'"]+)['"]"""
)
REQUIRE_RE = re.compile(r"""require\s*\(\s*['"]([^'"]+)['"]\s*\)""")

# Provided by the runtime or the hosting framework, never installed
BUILTIN_MODULES = frozenset({
    "fs", "path", "http", "https", "crypto", "stream", "util", "os",
    "url", "querystring", "child_process",
})
FRAMEWORK_PACKAGES = frozenset({"react", "react-dom", "next"})

_VERSION_SUFFIX_RE = re.compile(r"^(@[^/@]+/[^@]+|[^@]+)(@.*)?$")


def is_script_file(path: str) -> bool:
    return bool(SCRIPT_EXTENSION_RE.search(path))


def extract_specifiers(content: str) -> List[str]:
    """Return raw import/require specifiers in the order they appear."""
    found = [(m.start(), m.group(1)) for m in IMPORT_RE.finditer(content)]
    found += [(m.start(), m.group(1)) for m in REQUIRE_RE.finditer(content)]
    found.sort(key=lambda item: item[0])
    return [spec for _, spec in found]


def normalize_specifier(specifier: str) -> str:
    """Reduce an import specifier to the installable package name.

    ``@heroicons/react/24/outline`` -> ``@heroicons/react``,
    ``lodash/get`` -> ``lodash``. Returns an empty string for anything that
    is not an installable package.
    """
    spec = specifier.strip()
    if not spec or spec.startswith((".", "/", "@/", "~/")):
        return ""
    if spec.startswith("node:"):
        return ""
    if spec.startswith("@"):
        parts = spec.split("/")
        if len(parts) < 2 or not parts[1]:
            return ""
        name = "/".join(parts[:2])
    else:
        name = spec.split("/")[0]
    if name in BUILTIN_MODULES or name in FRAMEWORK_PACKAGES:
        return ""
    return name


def strip_version(name: str) -> str:
    """``axios@1.6.0`` -> ``axios``; ``@scope/pkg@^2`` -> ``@scope/pkg``."""
    match = _VERSION_SUFFIX_RE.match(name.strip())
    return match.group(1) if match else name.strip()


def dedupe(names: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(n for n in names if n))


def script_specifiers(files: Dict[str, str]) -> List[str]:
    """Raw specifiers imported by the script files, before normalization."""
    specifiers: List[str] = []
    for path, content in files.items():
        if not isinstance(content, str) or not is_script_file(path):
            continue
        specifiers.extend(extract_specifiers(content))
    return specifiers


def packages_from_files(files: Dict[str, str]) -> List[str]:
    """Normalized, deduplicated package names imported by the script files."""
    return dedupe(normalize_specifier(spec) for spec in script_specifiers(files))
