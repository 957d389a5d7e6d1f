# classes/session_registry.py

import logging
import threading
from typing import Any, Dict, List
from uuid import uuid4

from classes.command_queue import Mailbox
from classes.entities import Identity, Session, require_id
from classes.relay_errors import SessionNotFound

logger = logging.getLogger("devblox_relay")


class SessionRegistry:
    """
    Process-local index of live plugin sessions.

    - session_id is a uuid4, unique across the registry; a project may hold
      many sessions.
    - The lock guards the index only. Mailbox traffic never takes it for
      longer than a dict lookup.
    - No expiry: sessions live until remove() or process exit.
    """

    def __init__(self, mailbox_warn_depth: int = 0) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}
        self._by_project: Dict[str, set[str]] = {}
        self.mailbox_warn_depth = mailbox_warn_depth

    def register(self, project_id: str, metadata: Dict[str, Any] | None = None) -> str:
        project_id = require_id(project_id, "project_id")
        session_id = str(uuid4())
        identity = Identity(project_id, session_id)
        session = Session(
            identity,
            Mailbox(warn_depth=self.mailbox_warn_depth, label=f"{project_id}/{session_id}"),
            metadata,
        )
        with self._lock:
            self._sessions[session_id] = session
            self._by_project.setdefault(project_id, set()).add(session_id)
        logger.info("Registered session %s for project %s", session_id, project_id)
        return session_id

    def get(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(None, session_id)
        return session

    def lookup(self, project_id: str, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None or session.project_id != project_id:
            raise SessionNotFound(project_id, session_id)
        return session

    def remove(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return False
            ids = self._by_project.get(session.project_id)
            if ids is not None:
                ids.discard(session_id)
                if not ids:
                    del self._by_project[session.project_id]
        session.mailbox.close()
        logger.info("Removed session %s (project %s)", session_id, session.project_id)
        return True

    def sessions_for(self, project_id: str) -> List[str]:
        with self._lock:
            return sorted(self._by_project.get(project_id, ()))

    def snapshot(self) -> List[Session]:
        """
        Return a copy of all live sessions.
        """
        with self._lock:
            return list(self._sessions.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


DEFAULT_PROJECT = {"id": "p1", "name": "New Project"}


class ProjectDirectory:
    """Named projects the dashboard can pick from. Created ids are uuid4 strings."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._projects: List[Dict[str, str]] = [dict(DEFAULT_PROJECT)]

    def create_project(self, name: str | None = None) -> Dict[str, str]:
        project = {"id": str(uuid4()), "name": (name or "").strip() or "Untitled"}
        with self._lock:
            self._projects.append(project)
        return dict(project)

    def projects(self) -> List[Dict[str, str]]:
        with self._lock:
            return [dict(p) for p in self._projects]
