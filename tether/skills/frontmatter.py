"""Split a skill document into YAML frontmatter and markdown body."""
from __future__ import annotations

from typing import Any

import yaml

from .errors import FrontmatterError

DELIMITER = "---"


def split_frontmatter(text: str, path: str = "<string>") -> tuple[dict[str, Any], str, int]:
    """Return (metadata, body, body_line).

    The document must open with a ``---`` line and close the block
    with another ``---`` line. Raises FrontmatterError otherwise, or
    when the block is not a YAML mapping.
    """
    lines = text.removeprefix("\ufeff").splitlines()
    if not lines or lines[0].strip() != DELIMITER:
        raise FrontmatterError(path, "missing frontmatter: document must start with '---'")

    end = None
    for idx in range(1, len(lines)):
        if lines[idx].strip() == DELIMITER:
            end = idx
            break
    if end is None:
        raise FrontmatterError(path, "unterminated frontmatter: no closing '---'")

    raw = "\n".join(lines[1:end])
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        line = 1
        mark = getattr(exc, "problem_mark", None)
        if mark is not None:
            line = mark.line + 2
        raise FrontmatterError(path, f"invalid YAML: {exc}", line=line) from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise FrontmatterError(path, "frontmatter must be a YAML mapping")

    body = "\n".join(lines[end + 1:])
    return data, body, end + 2
