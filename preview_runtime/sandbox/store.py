"""
Session Store - Keyed record store for preview session audit records.

Responsibilities:
- Create, find and update PreviewSession records by session id
- Look sessions up by external request id
- Optionally persist every record to a JSON file

Records are never deleted. Callers always get copies, so a record only
changes through update().
"""

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from preview_runtime.errors import SessionNotFound
from preview_runtime.schemas import PreviewSession

logger = structlog.get_logger()


class InMemorySessionStore:
    """Thread-safe in-process session store."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, PreviewSession] = {}

    def create(self, session: PreviewSession) -> PreviewSession:
        """Store a new session. Raises ValueError if the id is taken."""
        with self._lock:
            if session.session_id in self._sessions:
                raise ValueError(f"Session already exists: {session.session_id}")
            self._sessions[session.session_id] = session.model_copy(deep=True)
            self._persist()
        return session.model_copy(deep=True)

    def find(self, session_id: str) -> Optional[PreviewSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    def find_by_request(self, request_id: str) -> List[PreviewSession]:
        """All sessions for a request, oldest first."""
        with self._lock:
            matches = [s for s in self._sessions.values() if s.request_id == request_id]
            return [s.model_copy(deep=True) for s in sorted(matches, key=lambda s: s.started_at)]

    def update(self, session: PreviewSession) -> PreviewSession:
        """Replace a stored session. Raises SessionNotFound for unknown ids."""
        with self._lock:
            if session.session_id not in self._sessions:
                raise SessionNotFound(session.session_id)
            self._sessions[session.session_id] = session.model_copy(deep=True)
            self._persist()
        return session.model_copy(deep=True)

    def all(self) -> List[PreviewSession]:
        with self._lock:
            return [s.model_copy(deep=True) for s in self._sessions.values()]

    def _persist(self) -> None:
        """Hook for durable stores; called with the lock held."""
        pass


class JsonFileSessionStore(InMemorySessionStore):
    """
    Session store mirrored to a JSON file.

    The file is loaded on construction and rewritten atomically after every
    create or update.
    """

    def __init__(self, path):
        super().__init__()
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        """Load records from file."""
        if not self.path.exists():
            return
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        self._sessions = {
            session_id: PreviewSession.model_validate(record)
            for session_id, record in data.items()
        }
        logger.info("preview.store_loaded", path=str(self.path), sessions=len(self._sessions))

    def _persist(self) -> None:
        """Save records to file."""
        data = {k: v.model_dump(mode="json") for k, v in self._sessions.items()}
        self.path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".sessions_", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
