"""
JSON persistence for finalized session records.
"""

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import List, Union

from .models import SessionRecord

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


class SessionStore:
    """Stores one JSON document per session in a directory."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, session_id: str) -> Path:
        if not _SAFE_ID.match(session_id) or session_id in (".", ".."):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self.directory / f"{session_id}.json"

    def save(self, record: SessionRecord) -> Path:
        """Write a record atomically. Existing records are never overwritten."""
        path = self.path_for(record.session_id)
        if path.exists():
            raise FileExistsError(f"Session {record.session_id} is already stored at {path}")

        fd, tmp_name = tempfile.mkstemp(prefix=f".{record.session_id}.", suffix=".tmp", dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record.to_dict(), f, ensure_ascii=False, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        logger.info(f"Stored session {record.session_id} ({record.word_count} words, {len(record.segments)} segments)")
        return path

    def load(self, session_id: str) -> SessionRecord:
        path = self.path_for(session_id)
        with open(path, "r", encoding="utf-8") as f:
            return SessionRecord.from_dict(json.load(f))

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).exists()

    def list_sessions(self) -> List[SessionRecord]:
        """All readable records, newest first."""
        records = []
        for path in self.directory.glob("*.json"):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    records.append(SessionRecord.from_dict(json.load(f)))
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Skipping unreadable session file {path.name}: {e}")
        records.sort(key=lambda record: record.started_at, reverse=True)
        return records

    def delete(self, session_id: str) -> bool:
        path = self.path_for(session_id)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"Deleted session {session_id}")
        return True
