"""Logical session model owned by the SessionRegistry."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionState(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    TERMINATED = "terminated"


@dataclass
class Session:
    """A conversation bound to one project.

    May exist without a live backing process (e.g. while paused).
    """

    project_id: str
    id: str = field(default_factory=lambda: str(uuid4()))
    state: SessionState = SessionState.ACTIVE
    created_at: datetime = field(default_factory=_utcnow)
    last_active_at: datetime = field(default_factory=_utcnow)
    message_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "state": self.state.value,
            "createdAt": self.created_at.isoformat(),
            "lastActiveAt": self.last_active_at.isoformat(),
            "messageCount": self.message_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            id=data["id"],
            project_id=data["projectId"],
            state=SessionState(data.get("state", SessionState.ACTIVE.value)),
            created_at=datetime.fromisoformat(data["createdAt"]),
            last_active_at=datetime.fromisoformat(data["lastActiveAt"]),
            message_count=int(data.get("messageCount", 0)),
        )


@dataclass(frozen=True)
class SessionStatistics:
    total: int
    active: int
    paused: int
    terminated: int
    total_messages: int

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "active": self.active,
            "paused": self.paused,
            "terminated": self.terminated,
            "totalMessages": self.total_messages,
        }
