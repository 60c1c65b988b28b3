"""
Textual module loader for Shrimpl sources.

An entry file is flattened into a single source text: every line of the form

    import "relative/path/to/file.shr"

is replaced by the content of that file (itself flattened first), resolved
against the directory of the importing file. Each file is inlined at most
once, keyed by its resolved path, so cycles and diamond-shaped import
graphs are harmless.
"""

import re
from pathlib import Path
from typing import Optional, Set

from shrimpl.shrimpl_datatypes import ShrimplLoadError

# `import`, whitespace, a quoted path, then nothing but whitespace or a comment.
_IMPORT_RE = re.compile(r'^\s*import\s+"([^"]*)"\s*(#.*)?$')


def import_target(line: str) -> Optional[str]:
    """Returns the quoted path of a well-formed import line, else None."""
    m = _IMPORT_RE.match(line)
    if m is None:
        return None
    return m.group(1)


def load_with_imports(entry: str | Path) -> str:
    """Loads an entry file and inlines all of its imports."""
    out: list[str] = []
    _load_recursive(Path(entry), set(), out, importer=None)
    return "".join(out)


def load_source(source: str, base_dir: str | Path = ".") -> str:
    """Flattens an in-memory source whose imports resolve against `base_dir`."""
    out: list[str] = []
    _emit_lines(source, Path(base_dir).resolve(), set(), out, importer="<source>")
    return "".join(out)


def _load_recursive(path: Path, visited: Set[Path], out: list[str], importer: Optional[str]):
    try:
        canonical = path.resolve(strict=True)
    except (FileNotFoundError, OSError):
        raise ShrimplLoadError(_describe_missing(path, importer), path=str(path)) from None

    if canonical in visited:
        return
    visited.add(canonical)

    try:
        text = canonical.read_bytes().decode("utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ShrimplLoadError(f"Failed to read {path}: {e}", path=str(path)) from e

    _emit_lines(text, canonical.parent, visited, out, importer=str(path))


def split_lines(text: str) -> list[str]:
    """Splits on "\n" only, dropping a trailing "\r". U+2028 and form feeds stay inside the line."""
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return [line.removesuffix("\r") for line in lines]


def _emit_lines(text: str, base_dir: Path, visited: Set[Path], out: list[str], importer: Optional[str]):
    for line in split_lines(text):
        target = import_target(line)
        if target is not None:
            _load_recursive(base_dir / target, visited, out, importer=importer)
            continue
        out.append(line)
        out.append("\n")


def _describe_missing(path: Path, importer: Optional[str]) -> str:
    if importer is None:
        return f"File not found: {path}"
    return f"File not found: {path} (imported from {importer})"
