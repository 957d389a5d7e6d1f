# classes/entities.py
import time
from datetime import datetime, timezone
from typing import Any, Dict, NamedTuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from classes.relay_errors import InvalidArgument

RUN_LUA = "RUN_LUA"


class Identity(NamedTuple):
    project_id: str
    session_id: str


def require_id(value: Any, name: str) -> str:
    """
    Identifiers are opaque non-empty strings. Anything else is rejected before
    touching shared state.
    """
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(f"Missing or malformed {name}")
    return value.strip()


def make_identity(project_id: Any, session_id: Any) -> Identity:
    return Identity(require_id(project_id, "project_id"), require_id(session_id, "session_id"))


class Command(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def summary(self) -> Dict[str, Any]:
        """Wire shape handed to the plugin: {id, type, payload}."""
        return {"id": self.id, "type": self.type, "payload": dict(self.payload)}


class QuotaStatus(BaseModel):
    key: str
    day: str
    used: int
    max: int

    @property
    def left(self) -> int:
        return max(0, self.max - self.used)

    def as_dict(self) -> Dict[str, Any]:
        return {"used": self.used, "left": self.left, "max": self.max, "day": self.day}


class Session:
    """
    One plugin connection. The mailbox is the only mutable part and is guarded
    by its own lock (see classes/command_queue.py).
    """

    def __init__(self, identity: Identity, mailbox, metadata: Dict[str, Any] | None = None):
        self.identity = identity
        self.mailbox = mailbox
        self.metadata = dict(metadata or {})
        self.created_at = time.time()

    @property
    def project_id(self) -> str:
        return self.identity.project_id

    @property
    def session_id(self) -> str:
        return self.identity.session_id
