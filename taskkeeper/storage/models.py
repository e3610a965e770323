from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    name: str
    email: str
    tokens: List[str] = field(default_factory=list)
    avatar: Optional[bytes] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def has_avatar(self) -> bool:
        return bool(self.avatar)


@dataclass
class Task:
    id: str
    owner_id: str
    description: str
    completed: bool = False
    # insertion order, the tie-breaker for every sort
    seq: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
