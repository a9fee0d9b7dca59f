"""Built-in file and shell tools: Read, Write, Edit, Glob, Grep, Bash.

Every tool is bound to a working directory; relative paths resolve
against it. Read/Glob/Grep are read-only, Write/Edit edit files and
Bash runs through the gateway's command policy before it gets here.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
from pathlib import Path
from typing import Any

from .tools import Tool, error_result, text_result, tool

logger = logging.getLogger(__name__)

READ_DEFAULT_LIMIT = 2000
GREP_MAX_MATCHES = 200
BASH_MAX_OUTPUT = 30_000
_SKIP_DIRS = {".git", "__pycache__", "node_modules", ".venv", ".tox"}


def _resolve(cwd: Path, raw: str) -> Path:
    path = Path(os.path.expanduser(raw))
    if not path.is_absolute():
        path = cwd / path
    return path


def _iter_files(root: Path, glob_pattern: str | None = None):
    if root.is_file():
        yield root
        return
    pattern = glob_pattern or "**/*"
    if not pattern.startswith("**/") and "/" not in pattern:
        pattern = f"**/{pattern}"
    for path in root.glob(pattern):
        if any(part in _SKIP_DIRS for part in path.relative_to(root).parts):
            continue
        if path.is_file():
            yield path


def build_builtin_tools(cwd: str | Path, *, bash_timeout: float = 120.0) -> list[Tool]:
    """Create the built-in tools bound to *cwd*."""
    root = Path(cwd).resolve()

    @tool(
        "Read",
        "Read a text file. Returns numbered lines. Use offset/limit for large files.",
        {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Path to the file"},
                "offset": {"type": "integer", "description": "1-based line to start at"},
                "limit": {"type": "integer", "description": "Maximum lines to return"},
            },
            "required": ["file_path"],
        },
        read_only=True,
    )
    async def read_file(args: dict[str, Any]) -> dict[str, Any]:
        path = _resolve(root, args["file_path"])
        if not path.is_file():
            return error_result(f"File not found: {path}")
        try:
            lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError as exc:
            return error_result(f"Cannot read {path}: {exc}")
        offset = max(1, int(args.get("offset") or 1))
        limit = int(args.get("limit") or READ_DEFAULT_LIMIT)
        window = lines[offset - 1:offset - 1 + limit]
        if not window:
            return text_result("(empty)")
        numbered = "\n".join(
            f"{n:>6}\t{line}" for n, line in enumerate(window, start=offset)
        )
        return text_result(numbered)

    @tool(
        "Write",
        "Create or overwrite a file with the given content.",
        {
            "type": "object",
            "properties": {
                "file_path": {"type": "string"},
                "content": {"type": "string"},
            },
            "required": ["file_path", "content"],
        },
        edits_files=True,
    )
    async def write_file(args: dict[str, Any]) -> dict[str, Any]:
        path = _resolve(root, args["file_path"])
        existed = path.exists()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(args["content"], encoding="utf-8")
        except OSError as exc:
            return error_result(f"Cannot write {path}: {exc}")
        verb = "Updated" if existed else "Created"
        return text_result(f"{verb} {path} ({len(args['content'])} chars)")

    @tool(
        "Edit",
        "Replace an exact string in a file. old_string must be unique unless replace_all is true.",
        {
            "type": "object",
            "properties": {
                "file_path": {"type": "string"},
                "old_string": {"type": "string"},
                "new_string": {"type": "string"},
                "replace_all": {"type": "boolean", "default": False},
            },
            "required": ["file_path", "old_string", "new_string"],
        },
        edits_files=True,
    )
    async def edit_file(args: dict[str, Any]) -> dict[str, Any]:
        path = _resolve(root, args["file_path"])
        if not path.is_file():
            return error_result(f"File not found: {path}")
        old, new = args["old_string"], args["new_string"]
        if old == new:
            return error_result("old_string and new_string are identical")
        text = path.read_text(encoding="utf-8")
        count = text.count(old)
        if count == 0:
            return error_result(f"old_string not found in {path}")
        if count > 1 and not args.get("replace_all"):
            return error_result(
                f"old_string occurs {count} times in {path}; "
                "add context or set replace_all"
            )
        updated = text.replace(old, new) if args.get("replace_all") else text.replace(old, new, 1)
        path.write_text(updated, encoding="utf-8")
        return text_result(f"Edited {path} ({count if args.get('replace_all') else 1} replacement(s))")

    @tool(
        "Glob",
        "Find files matching a glob pattern (e.g. '**/*.py'). Newest first.",
        {
            "type": "object",
            "properties": {
                "pattern": {"type": "string"},
                "path": {"type": "string", "description": "Directory to search"},
            },
            "required": ["pattern"],
        },
        read_only=True,
    )
    async def glob_files(args: dict[str, Any]) -> dict[str, Any]:
        base = _resolve(root, args.get("path") or ".")
        if not base.is_dir():
            return error_result(f"Not a directory: {base}")
        matches = list(_iter_files(base, args["pattern"]))
        matches.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        if not matches:
            return text_result("No files found")
        return text_result("\n".join(str(p) for p in matches))

    @tool(
        "Grep",
        "Search file contents with a regular expression. Returns path:line:text.",
        {
            "type": "object",
            "properties": {
                "pattern": {"type": "string"},
                "path": {"type": "string"},
                "glob": {"type": "string", "description": "Only search files matching this glob"},
                "case_insensitive": {"type": "boolean", "default": False},
            },
            "required": ["pattern"],
        },
        read_only=True,
    )
    async def grep_files(args: dict[str, Any]) -> dict[str, Any]:
        flags = re.IGNORECASE if args.get("case_insensitive") else 0
        try:
            regex = re.compile(args["pattern"], flags)
        except re.error as exc:
            return error_result(f"Invalid regex: {exc}")
        base = _resolve(root, args.get("path") or ".")
        if not base.exists():
            return error_result(f"Path not found: {base}")
        results: list[str] = []
        for path in _iter_files(base, args.get("glob")):
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            for lineno, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    results.append(f"{path}:{lineno}:{line}")
                    if len(results) >= GREP_MAX_MATCHES:
                        results.append(f"... truncated at {GREP_MAX_MATCHES} matches")
                        return text_result("\n".join(results))
        return text_result("\n".join(results) if results else "No matches")

    @tool(
        "Bash",
        "Run a shell command in the working directory. Returns combined output and exit code.",
        {
            "type": "object",
            "properties": {
                "command": {"type": "string"},
                "timeout": {"type": "number", "description": "Seconds before the command is killed"},
            },
            "required": ["command"],
        },
    )
    async def run_bash(args: dict[str, Any]) -> dict[str, Any]:
        command = str(args.get("command") or "").strip()
        if not command:
            return error_result("Command cannot be empty")
        timeout = float(args.get("timeout") or bash_timeout)
        shell_executable = shutil.which("bash") or None
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=str(root),
            executable=shell_executable,
        )
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return error_result(f"Command timed out after {timeout}s: {command[:200]}")
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise
        output = stdout.decode("utf-8", errors="replace")
        if len(output) > BASH_MAX_OUTPUT:
            output = output[:BASH_MAX_OUTPUT] + "\n... output truncated"
        logger.debug("Bash exit=%s cmd=%.80s", proc.returncode, command)
        if proc.returncode != 0:
            return {
                "content": [{"type": "text", "text": f"{output}\n[exit code {proc.returncode}]".strip()}],
                "is_error": True,
            }
        return text_result(output or "(no output)")

    return [read_file, write_file, edit_file, glob_files, grep_files, run_bash]
