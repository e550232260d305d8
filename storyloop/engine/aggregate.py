"""Aggregate session state: world facts, memory events, relationships, tokens.

The aggregate is stored as a single JSON blob on the session row
(``session_state``), so every model here round-trips through
``model_dump(mode="json")`` / ``model_validate``.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

TRUST_MIN = 0
TRUST_MAX = 100


class Importance(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def unique_strings(values: Optional[List[str]]) -> List[str]:
    """Order-preserving de-duplication of a list of labels (set semantics)."""
    seen: List[str] = []
    for v in values or []:
        if v is None:
            continue
        v = str(v).strip()
        if v and v not in seen:
            seen.append(v)
    return seen


def clamp_trust(value: int) -> int:
    return max(TRUST_MIN, min(TRUST_MAX, int(value)))


class WorldState(BaseModel):
    """Scene attributes; every field is independently optional."""

    current_location: Optional[str] = None
    time_of_day: Optional[str] = None
    mood_atmosphere: Optional[str] = None
    present_npcs: List[str] = Field(default_factory=list)

    @field_validator("present_npcs", mode="before")
    @classmethod
    def _npcs_as_set(cls, v):
        return unique_strings(v)


class MemoryEvent(BaseModel):
    id: str
    description: str
    importance: Importance = Importance.MEDIUM
    characters_involved: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    timestamp: datetime

    @field_validator("characters_involved", "tags", mode="before")
    @classmethod
    def _labels_as_set(cls, v):
        return unique_strings(v)


class Relationship(BaseModel):
    relationship_type: Optional[str] = None
    trust_level: int = 50
    notes: Optional[str] = None
    last_updated: Optional[datetime] = None

    @field_validator("trust_level", mode="before")
    @classmethod
    def _clamp(cls, v):
        if v is None:
            return 50
        return clamp_trust(v)


class AggregateState(BaseModel):
    """Merged, persisted snapshot for one session."""

    context_tokens_used: int = 0
    world_state: WorldState = Field(default_factory=WorldState)
    memory_events: List[MemoryEvent] = Field(default_factory=list)
    relationships: Dict[str, Relationship] = Field(default_factory=dict)

    completed: bool = False
    completion_summary: Optional[str] = None
    completion_date: Optional[datetime] = None
    last_update: Optional[datetime] = None

    @property
    def memory_ids(self) -> List[str]:
        return [m.id for m in self.memory_events]

    def high_importance_events(self) -> List[MemoryEvent]:
        return [m for m in self.memory_events if m.importance == Importance.HIGH]

    def to_blob(self) -> dict:
        return self.model_dump(mode="json")

    @classmethod
    def from_blob(cls, blob: Optional[dict]) -> "AggregateState":
        return cls.model_validate(blob or {})
