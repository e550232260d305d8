"""Session and transcript data structures for StoryLoop."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from storyloop.engine.aggregate import AggregateState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Speaker(str, Enum):
    USER = "user"
    NARRATOR = "narrator"
    SYSTEM = "system"

    @classmethod
    def _missing_(cls, value):
        # rows written by the web client label narration "character"
        if value in ("character", "assistant"):
            return cls.NARRATOR
        return None

    @property
    def is_narrator(self) -> bool:
        return self is not Speaker.USER


class CreativityLevel(str, Enum):
    FAITHFUL = "faithful"
    BALANCED = "balanced"
    CREATIVE = "creative"

    @property
    def rank(self) -> int:
        """1-3 scale used in prompts (1 = closest to the source text)."""
        return {"faithful": 1, "balanced": 2, "creative": 3}[self.value]


@dataclass
class StoryInfo:
    """Read-only story metadata handed to the collaborator."""

    id: str
    title: str
    author: str = ""
    description: str = ""
    setting: str = ""


@dataclass
class CharacterInfo:
    id: str
    name: str
    description: str = ""
    personality_traits: List[str] = field(default_factory=list)
    backstory: str = ""
    appearance: str = ""


@dataclass
class Turn:
    """One transcript entry. Immutable once persisted."""

    session_id: str
    speaker: Speaker
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    # not persisted
    save_failed: bool = False
    ephemeral: bool = False

    @property
    def role(self) -> str:
        """Chat-completion role for this turn."""
        return "user" if self.speaker is Speaker.USER else "assistant"


@dataclass
class Session:
    """One playthrough; the engine holds a single in-memory copy."""

    id: str
    user_id: str
    story_id: str
    player_character_id: Optional[str] = None
    creativity_level: CreativityLevel = CreativityLevel.BALANCED
    state: AggregateState = field(default_factory=AggregateState)
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def completed(self) -> bool:
        return not self.is_active or self.state.completed
