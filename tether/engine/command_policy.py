"""Shell command policy for the Bash tool.

Rules are stored as one regex pattern per line in:
- <workspace>/.tether/command_whitelist.txt
- <workspace>/.tether/command_blacklist.txt

``CommandPolicy.evaluate`` returns "allow" or "prompt". The tool
gateway decides what "prompt" means for the session's permission mode.
"""
from __future__ import annotations

import logging
import re
import shlex
from dataclasses import dataclass
from pathlib import Path

from .durable import write_atomic

logger = logging.getLogger(__name__)

TETHER_DIRNAME = ".tether"
WHITELIST_FILENAME = "command_whitelist.txt"
BLACKLIST_FILENAME = "command_blacklist.txt"
DEFAULT_BLACKLIST_PATTERNS: tuple[str, ...] = (
    r"(?:^|\&\&|\|\||;|&|\|)\s*rm(?:\s|$)",
    r"(?:^|\&\&|\|\||;|&|\|)\s*git\s+push\s+[^\n]*--force",
    r"(?:^|\&\&|\|\||;|&|\|)\s*git\s+commit(?:\s|$)",
)

# Heuristic risk detector for commands not covered by explicit lists.
DANGER_PATTERNS: tuple[str, ...] = (
    r"\bsudo\b",
    r"\bchmod\b",
    r"\bchown\b",
    r"\bdd\s+(if|of)=",
    r"\bmkfs(\.| )",
    r"\bfdisk\b",
    r"\bshutdown\b",
    r"\breboot\b",
    r"\bkillall\b",
    r"\bkill\s+-9\b",
    r"\bgit\s+reset\s+--hard\b",
    r"\bgit\s+clean\s+-[^\n]*f",
    r"\bdocker\s+system\s+prune\b",
    r"(curl|wget)[^\n|]*\|\s*(sh|bash)\b",
    r"/dev/sd[a-z]",
    r":\(\)\s*\{",
)

_DESTRUCTIVE_EXECUTABLES = {"rm", "rmdir", "unlink", "shred"}
_EXPLORATORY_EXECUTABLES = {
    "ls", "grep", "rg", "find", "cat", "head", "tail", "wc", "sort",
    "uniq", "cut", "tree", "du", "df", "which",
}
_EXPLORATORY_GIT = {"status", "log", "show", "diff", "grep", "ls-files", "branch"}

# Shell control characters. A command containing one is never
# auto-allowed by a whitelist rule.
_SHELL_CONTROL = re.compile(r"[;&|`<>\n]|\$\(")
# One generalized argument: no whitespace and no shell control characters.
_ARGUMENT_PATTERN = r"[^\s;&|`<>$()]+"


@dataclass
class CommandPolicyRules:
    """Compiled command policy regex rules."""

    whitelist: list[re.Pattern[str]]
    blacklist: list[re.Pattern[str]]


def compile_patterns(patterns: list[str], flags: int = re.IGNORECASE) -> list[re.Pattern[str]]:
    compiled: list[re.Pattern[str]] = []
    for pattern in patterns:
        cleaned = str(pattern or "").strip()
        if not cleaned:
            continue
        try:
            compiled.append(re.compile(cleaned, flags))
        except re.error:
            logger.warning("Invalid command policy regex ignored: %s", cleaned)
    return compiled


def is_dangerous_command(command: str) -> bool:
    c = (command or "").strip().lower()
    if not c:
        return False
    return any(re.search(p, c) for p in DANGER_PATTERNS)


class CommandPolicy:
    """Reads workspace command lists and evaluates shell commands."""

    def __init__(
        self,
        workspace_dir: Path | str,
        *,
        extra_whitelist: list[str] | None = None,
        extra_blacklist: list[str] | None = None,
    ) -> None:
        self._workspace_dir = Path(workspace_dir)
        self._policy_dir = self._workspace_dir / TETHER_DIRNAME
        self._whitelist_path = self._policy_dir / WHITELIST_FILENAME
        self._blacklist_path = self._policy_dir / BLACKLIST_FILENAME
        self._extra_whitelist = list(extra_whitelist or [])
        self._extra_blacklist = list(extra_blacklist or [])
        self._rules = self.load_compiled()

    @property
    def whitelist_path(self) -> Path:
        return self._whitelist_path

    @property
    def blacklist_path(self) -> Path:
        return self._blacklist_path

    def load_compiled(self) -> CommandPolicyRules:
        """Load and compile regex lists from workspace policy files."""
        whitelist = self._read_patterns(self._whitelist_path)
        whitelist.extend(self._extra_whitelist)
        blacklist = list(DEFAULT_BLACKLIST_PATTERNS)
        blacklist.extend(self._read_patterns(self._blacklist_path))
        blacklist.extend(self._extra_blacklist)
        logger.debug(
            "Command policy loaded: whitelist=%d blacklist=%d (%d default) from %s",
            len(whitelist), len(blacklist), len(DEFAULT_BLACKLIST_PATTERNS),
            self._policy_dir,
        )
        return CommandPolicyRules(
            whitelist=compile_patterns(whitelist),
            blacklist=compile_patterns(blacklist, re.IGNORECASE | re.MULTILINE),
        )

    def reload(self) -> None:
        self._rules = self.load_compiled()

    def is_blacklisted(self, command: str) -> bool:
        return any(p.search(command) for p in self._rules.blacklist)

    def is_whitelisted(self, command: str) -> bool:
        """True when a rule matches a single command with no shell control characters."""
        if _SHELL_CONTROL.search(command):
            return False
        return any(p.search(command) for p in self._rules.whitelist)

    def evaluate(self, command: str) -> str:
        """Return "allow" or "prompt" for a shell command.

        Blacklisted commands always prompt. Dangerous commands prompt
        unless a whitelist rule covers them as a single simple command.
        """
        command = (command or "").strip()
        if not command:
            return "allow"
        if self.is_blacklisted(command):
            return "prompt"
        if not is_dangerous_command(command):
            return "allow"
        if self.is_whitelisted(command):
            return "allow"
        return "prompt"

    def remember_command(self, command: str) -> str:
        """Persist an allow rule generalized from *command*; return the pattern."""
        pattern = self.build_command_pattern(command)
        if pattern:
            self._add_pattern(self._whitelist_path, pattern)
            self.reload()
        return pattern

    @staticmethod
    def build_command_pattern(command: str) -> str:
        """Build an allow regex for a command.

        Exploratory commands generalize their arguments; destructive
        commands stay exact so approving one path does not approve all.
        """
        cleaned = str(command or "").strip()
        if not cleaned:
            return ""
        try:
            tokens = shlex.split(cleaned)
        except ValueError:
            return f"^{re.escape(cleaned)}$"
        if not tokens:
            return f"^{re.escape(cleaned)}$"

        exe = Path(tokens[0]).name.lower()
        sub = next((t.lower() for t in tokens[1:] if not t.startswith("-")), "")
        exploratory = exe in _EXPLORATORY_EXECUTABLES or (
            exe == "git" and sub in _EXPLORATORY_GIT
        )
        if exe in _DESTRUCTIVE_EXECUTABLES or not exploratory:
            return f"^{re.escape(cleaned)}$"

        parts = [re.escape(Path(tokens[0]).name)]
        seen_sub = False
        for token in tokens[1:]:
            if token.startswith("-"):
                parts.append(re.escape(token))
            elif exe == "git" and not seen_sub:
                parts.append(re.escape(token))
                seen_sub = True
            else:
                parts.append(_ARGUMENT_PATTERN)
        body = r"\s+".join(parts)
        return rf"^\s*{body}\s*$"

    @staticmethod
    def _read_patterns(path: Path) -> list[str]:
        if not path.exists():
            return []
        lines: list[str] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            entry = line.strip()
            if not entry or entry.startswith("#"):
                continue
            lines.append(entry)
        return lines

    def _add_pattern(self, path: Path, pattern: str) -> None:
        cleaned = pattern.strip()
        if not cleaned:
            return
        entries = self._read_patterns(path)
        if cleaned in entries:
            return
        entries.append(cleaned)
        write_atomic(path, "\n".join(entries) + "\n")
