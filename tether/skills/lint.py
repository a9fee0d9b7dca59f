"""Quality checks for skill documents.

Three families of diagnostics:

    frontmatter-*   SKILL.md frontmatter missing, unparseable, or
                    lacking a required key
    code-syntax     a fenced python/json/yaml/toml block does not parse
    broken-ref      a relative markdown link or ``references/...``
                    mention points at a file that does not exist

Blocks in any other language are skipped.
"""
from __future__ import annotations

import ast
import json
import logging
import re
import tomllib
from dataclasses import dataclass
from pathlib import Path

import yaml

from .errors import FrontmatterError
from .frontmatter import split_frontmatter
from .models import REQUIRED_KEYS, SKILL_FILENAME, Diagnostic, Severity

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"^(?P<indent>\s{0,3})(?P<fence>`{3,}|~{3,})\s*(?P<info>[^`\s]*)")
_LINK = re.compile(r"(?<!!)\[[^\]]*\]\((?P<target>[^)\s]+)(?:\s+\"[^\"]*\")?\)")
_IMAGE = re.compile(r"!\[[^\]]*\]\((?P<target>[^)\s]+)\)")
_REFERENCE_MENTION = re.compile(r"(?<![\w/.-])(?P<target>references/[\w./-]*[\w/-])")
_EXTERNAL = re.compile(r"^(?:[a-zA-Z][a-zA-Z0-9+.-]*:|//|#)")

_LANG_ALIASES = {
    "python": "python", "py": "python", "python3": "python",
    "json": "json",
    "yaml": "yaml", "yml": "yaml",
    "toml": "toml",
}


@dataclass
class CodeBlock:
    language: str
    code: str
    # 1-based line of the first code line (after the opening fence)
    line: int


def extract_code_blocks(text: str, line_offset: int = 1) -> list[CodeBlock]:
    """Find fenced code blocks. Unclosed fences run to end of document."""
    blocks: list[CodeBlock] = []
    lines = text.splitlines()
    idx = 0
    while idx < len(lines):
        match = _FENCE.match(lines[idx])
        if not match:
            idx += 1
            continue
        fence = match.group("fence")
        language = match.group("info").lower()
        start = idx + 1
        end = start
        while end < len(lines):
            stripped = lines[end].strip()
            if stripped.startswith(fence[0] * len(fence)) and not stripped.strip(fence[0]):
                break
            end += 1
        blocks.append(CodeBlock(
            language=language,
            code="\n".join(lines[start:end]),
            line=start + line_offset,
        ))
        idx = end + 1
    return blocks


def prose_lines(text: str, line_offset: int = 1):
    """Yield (line_number, line) for lines outside fenced code."""
    in_fence: str | None = None
    for idx, line in enumerate(text.splitlines()):
        match = _FENCE.match(line)
        if in_fence is None and match:
            in_fence = match.group("fence")
            continue
        if in_fence is not None:
            stripped = line.strip()
            if stripped.startswith(in_fence) and not stripped.strip(in_fence[0]):
                in_fence = None
            continue
        yield idx + line_offset, line


def check_code_block(block: CodeBlock) -> tuple[int, str] | None:
    """Return (line, message) if the block fails to parse, else None."""
    language = _LANG_ALIASES.get(block.language)
    if language is None:
        return None
    try:
        if language == "python":
            ast.parse(block.code)
        elif language == "json":
            json.loads(block.code)
        elif language == "yaml":
            for _ in yaml.safe_load_all(block.code):
                pass
        elif language == "toml":
            tomllib.loads(block.code)
    except SyntaxError as exc:
        return block.line + max((exc.lineno or 1) - 1, 0), f"python: {exc.msg}"
    except json.JSONDecodeError as exc:
        return block.line + exc.lineno - 1, f"json: {exc.msg}"
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        line = block.line + (mark.line if mark is not None else 0)
        problem = getattr(exc, "problem", None) or str(exc)
        return line, f"yaml: {problem}"
    except tomllib.TOMLDecodeError as exc:
        return block.line, f"toml: {exc}"
    return None


def _clean_target(target: str) -> str:
    target = target.strip("<>")
    for sep in ("#", "?"):
        target = target.split(sep, 1)[0]
    return target


def find_references(text: str, line_offset: int = 1) -> list[tuple[int, str]]:
    """Relative link targets and ``references/...`` mentions outside code."""
    refs: list[tuple[int, str]] = []
    for lineno, line in prose_lines(text, line_offset):
        for pattern in (_LINK, _IMAGE):
            for match in pattern.finditer(line):
                target = match.group("target")
                if _EXTERNAL.match(target) or target.startswith("/"):
                    continue
                cleaned = _clean_target(target)
                if cleaned:
                    refs.append((lineno, cleaned))
        without_links = _IMAGE.sub("", _LINK.sub("", line))
        for match in _REFERENCE_MENTION.finditer(without_links):
            refs.append((lineno, match.group("target").rstrip(".")))
    seen: set[tuple[int, str]] = set()
    unique: list[tuple[int, str]] = []
    for ref in refs:
        if ref not in seen:
            seen.add(ref)
            unique.append(ref)
    return unique


def lint_text(
    text: str,
    path: Path,
    *,
    require_frontmatter: bool = True,
    base_dir: Path | None = None,
) -> list[Diagnostic]:
    diagnostics: list[Diagnostic] = []
    body, body_line = text, 1

    if require_frontmatter:
        try:
            meta, body, body_line = split_frontmatter(text, str(path))
        except FrontmatterError as exc:
            code = "frontmatter-missing" if "missing frontmatter" in exc.reason else "frontmatter-invalid"
            diagnostics.append(Diagnostic(path, exc.line, code, exc.reason))
            return diagnostics
        for key in REQUIRED_KEYS:
            value = meta.get(key)
            if value is None or (isinstance(value, str) and not value.strip()):
                diagnostics.append(Diagnostic(
                    path, 1, "frontmatter-missing-key", f"required key '{key}' is missing or empty",
                ))
            elif not isinstance(value, str):
                diagnostics.append(Diagnostic(
                    path, 1, "frontmatter-type", f"'{key}' must be a string",
                ))
        triggers = meta.get("triggers")
        if triggers is not None and not (
            isinstance(triggers, list) and all(isinstance(t, str) for t in triggers)
        ):
            diagnostics.append(Diagnostic(
                path, 1, "frontmatter-type", "'triggers' should be a list of strings",
                Severity.WARNING,
            ))

    for block in extract_code_blocks(body, body_line):
        problem = check_code_block(block)
        if problem is not None:
            line, message = problem
            diagnostics.append(Diagnostic(path, line, "code-syntax", message))

    root = base_dir or path.parent
    for lineno, target in find_references(body, body_line):
        if not (root / target).exists():
            diagnostics.append(Diagnostic(
                path, lineno, "broken-ref", f"referenced file not found: {target}",
            ))
    return diagnostics


def lint_file(path: Path, *, require_frontmatter: bool | None = None) -> list[Diagnostic]:
    """Lint one markdown file. SKILL.md files must carry frontmatter."""
    if require_frontmatter is None:
        require_frontmatter = path.name == SKILL_FILENAME
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        return [Diagnostic(path, 1, "read-error", str(exc))]
    return lint_text(text, path, require_frontmatter=require_frontmatter)


def lint_path(path: Path) -> list[Diagnostic]:
    """Lint a file, or every markdown file under a directory."""
    if path.is_file():
        return lint_file(path)
    diagnostics: list[Diagnostic] = []
    files = sorted(p for p in path.rglob("*.md") if not any(
        part.startswith(".") for part in p.relative_to(path).parts
    ))
    for md in files:
        diagnostics.extend(lint_file(md))
    logger.info(
        "Linted %d file(s) under %s: %d diagnostic(s)",
        len(files), path, len(diagnostics),
    )
    return diagnostics


def has_errors(diagnostics: list[Diagnostic]) -> bool:
    return any(d.severity == Severity.ERROR for d in diagnostics)
