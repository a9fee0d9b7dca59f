"""Session persistence: save, load, resume and fork transcripts.

Storage layout:
    <session_dir>/{session_id}.json

Writes are atomic (temp file + rename + fsync) so a crash mid-save
never leaves a truncated transcript behind.
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from pathlib import Path

from .durable import unlink_durably, write_json_atomic
from .errors import SessionNotFoundError
from .models import SessionRecord, make_id, utcnow

logger = logging.getLogger(__name__)


class SessionStore:
    """JSON-file store of SessionRecords keyed by session id."""

    def __init__(self, base_dir: Path | str) -> None:
        self._dir = Path(base_dir).expanduser()

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, session_id: str) -> Path:
        # Ids are uuid4 strings; reject anything that could escape the dir.
        if not session_id or "/" in session_id or "\\" in session_id or session_id.startswith("."):
            raise SessionNotFoundError(session_id)
        return self._dir / f"{session_id}.json"

    def save(self, record: SessionRecord) -> Path:
        record.updated_at = utcnow()
        path = self._path(record.session_id)
        write_json_atomic(path, record.to_dict())
        logger.debug(
            "Session saved id=%s messages=%d path=%s",
            record.session_id[:8], len(record.messages), path,
        )
        return path

    def exists(self, session_id: str) -> bool:
        try:
            return self._path(session_id).is_file()
        except SessionNotFoundError:
            return False

    def load(self, session_id: str) -> SessionRecord:
        """Load a session by exact id or unique id prefix."""
        resolved = self.resolve_id(session_id)
        if resolved is None:
            raise SessionNotFoundError(session_id)
        path = self._path(resolved)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read session %s: %s", path, exc)
            raise SessionNotFoundError(session_id) from exc
        return SessionRecord.from_dict(data)

    def resolve_id(self, session_id: str) -> str | None:
        """Resolve a (possibly truncated) id to the full id.

        Returns the exact match if found, or a unique prefix match,
        or None if no match / ambiguous.
        """
        if self.exists(session_id):
            return session_id
        if not self._dir.is_dir():
            return None
        matches = [
            p.stem for p in self._dir.glob("*.json")
            if p.stem.startswith(session_id)
        ]
        if len(matches) == 1:
            return matches[0]
        return None

    def list_sessions(self) -> list[SessionRecord]:
        """All readable sessions, most recently updated first."""
        if not self._dir.is_dir():
            return []
        records: list[SessionRecord] = []
        for path in self._dir.glob("*.json"):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                records.append(SessionRecord.from_dict(data))
            except (OSError, json.JSONDecodeError, KeyError) as exc:
                logger.warning("Skipping unreadable session file %s: %s", path, exc)
        records.sort(key=lambda r: r.updated_at, reverse=True)
        return records

    def latest(self) -> SessionRecord | None:
        sessions = self.list_sessions()
        return sessions[0] if sessions else None

    def fork(self, session_id: str) -> SessionRecord:
        """Copy a session under a new id; the original stays untouched."""
        source = self.load(session_id)
        forked = replace(
            source,
            session_id=make_id(),
            parent_session_id=source.session_id,
            messages=list(source.messages),
            created_at=utcnow(),
        )
        self.save(forked)
        logger.info(
            "Session forked %s -> %s", source.session_id[:8], forked.session_id[:8],
        )
        return forked

    def delete(self, session_id: str) -> bool:
        resolved = self.resolve_id(session_id)
        if resolved is None:
            return False
        return unlink_durably(self._path(resolved))
