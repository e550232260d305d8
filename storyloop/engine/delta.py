"""The collaborator's response envelope and its default-filling boundary.

Responses come from a non-deterministic generator, so every field is
optional and validated item by item: a malformed memory event or
relationship update is repaired or dropped, never allowed to fail the
whole turn.
"""
from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from storyloop.engine.aggregate import TRUST_MAX, TRUST_MIN, Importance, unique_strings
from storyloop.utils.api_client import UsageReport

logger = logging.getLogger(__name__)


def _as_trust(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if math.isnan(number):
        return None
    if math.isinf(number):
        return TRUST_MAX if number > 0 else TRUST_MIN
    return int(round(number))


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class WorldStatePatch(BaseModel):
    """Partial world state; ``None`` means "unchanged"."""

    current_location: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("current_location", "location")
    )
    time_of_day: Optional[str] = None
    mood_atmosphere: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("mood_atmosphere", "mood", "atmosphere")
    )
    present_npcs: Optional[List[str]] = Field(
        default=None, validation_alias=AliasChoices("present_npcs", "npcs_present", "npcs")
    )

    @field_validator("current_location", "time_of_day", "mood_atmosphere", mode="before")
    @classmethod
    def _text(cls, v):
        return _as_text(v)

    @field_validator("present_npcs", mode="before")
    @classmethod
    def _npcs(cls, v):
        if v is None:
            return None
        if isinstance(v, str):
            v = [v]
        if not isinstance(v, (list, tuple, set)):
            return None
        names = []
        for item in v:
            # the model sometimes returns NPC objects instead of names
            if isinstance(item, dict):
                item = item.get("name")
            if item:
                names.append(item)
        return unique_strings(names)

    def changes(self) -> Dict[str, Any]:
        return {k: v for k, v in self.model_dump().items() if v is not None}


class MemoryEventIn(BaseModel):
    id: Optional[str] = None
    description: str
    importance: Importance = Importance.MEDIUM
    characters_involved: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, v):
        return _as_text(v)

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, v):
        text = _as_text(v)
        if text is None:
            raise ValueError("memory event needs a description")
        return text

    @field_validator("importance", mode="before")
    @classmethod
    def _importance(cls, v):
        if isinstance(v, Importance):
            return v
        v = str(v or "").strip().lower()
        return v if v in {i.value for i in Importance} else Importance.MEDIUM

    @field_validator("characters_involved", "tags", mode="before")
    @classmethod
    def _labels(cls, v):
        if isinstance(v, str):
            v = [v]
        if not isinstance(v, (list, tuple, set)):
            return []
        return unique_strings(v)


class RelationshipUpdate(BaseModel):
    """Partial update for one character; unset fields keep their value."""

    character: str = Field(validation_alias=AliasChoices("character", "name", "character_name"))
    relationship_type: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("relationship_type", "type", "relationship")
    )
    trust_level: Optional[int] = Field(default=None, validation_alias=AliasChoices("trust_level", "trust"))
    notes: Optional[str] = None

    @field_validator("character", mode="before")
    @classmethod
    def _character(cls, v):
        text = _as_text(v)
        if text is None:
            raise ValueError("relationship update needs a character name")
        return text

    @field_validator("relationship_type", "notes", mode="before")
    @classmethod
    def _text(cls, v):
        return _as_text(v)

    @field_validator("trust_level", mode="before")
    @classmethod
    def _trust(cls, v):
        # out-of-range values survive here; the reducer clamps them
        return _as_trust(v)

    def changes(self) -> Dict[str, Any]:
        return {
            k: v
            for k, v in self.model_dump(exclude={"character"}).items()
            if v is not None
        }


def _validate_items(model: type, raw: Any, label: str) -> List[Any]:
    if raw is None:
        return []
    if isinstance(raw, dict):
        raw = [raw]
    if not isinstance(raw, (list, tuple)):
        logger.debug("Ignoring %s: expected a list, got %s", label, type(raw).__name__)
        return []
    items = []
    for entry in raw:
        if isinstance(entry, model):
            items.append(entry)
            continue
        try:
            items.append(model.model_validate(entry))
        except ValidationError as exc:
            logger.debug("Dropping malformed %s %r: %s", label, entry, exc.errors()[0]["msg"])
    return items


class Delta(BaseModel):
    """One collaborator response. Transient: only its merge is persisted."""

    narration: str = Field(default="", validation_alias=AliasChoices("narration", "response", "text"))
    scene_description: Optional[str] = None
    world_state: Optional[WorldStatePatch] = Field(
        default=None, validation_alias=AliasChoices("world_state", "world_state_updates")
    )
    memory_updates: List[MemoryEventIn] = Field(
        default_factory=list, validation_alias=AliasChoices("memory_updates", "memory_events")
    )
    relationship_updates: List[RelationshipUpdate] = Field(default_factory=list)
    suggested_actions: List[str] = Field(default_factory=list)
    usage: UsageReport = Field(default_factory=UsageReport, exclude=True)

    model_config = {"arbitrary_types_allowed": True}

    @field_validator("narration", mode="before")
    @classmethod
    def _narration(cls, v):
        return "" if v is None else str(v)

    @field_validator("scene_description", mode="before")
    @classmethod
    def _scene(cls, v):
        return _as_text(v)

    @field_validator("world_state", mode="before")
    @classmethod
    def _world(cls, v):
        if not isinstance(v, (dict, WorldStatePatch)):
            return None
        return v

    @field_validator("memory_updates", mode="before")
    @classmethod
    def _memories(cls, v):
        return _validate_items(MemoryEventIn, v, "memory event")

    @field_validator("relationship_updates", mode="before")
    @classmethod
    def _relationships(cls, v):
        # {"Mr. Darcy": {...}} is accepted as well as a list of updates
        if isinstance(v, dict) and not any(k in v for k in ("character", "name", "character_name")):
            v = [
                {"character": name, **(fields if isinstance(fields, dict) else {})}
                for name, fields in v.items()
            ]
        return _validate_items(RelationshipUpdate, v, "relationship update")

    @field_validator("suggested_actions", mode="before")
    @classmethod
    def _actions(cls, v):
        if isinstance(v, str):
            v = [v]
        if not isinstance(v, (list, tuple)):
            return []
        return [str(a).strip() for a in v if a is not None and str(a).strip()]

    @classmethod
    def from_payload(cls, payload: Any, usage: Optional[UsageReport] = None) -> "Delta":
        """Build a delta from raw collaborator JSON, filling defaults."""
        if not isinstance(payload, dict):
            payload = {}
        delta = cls.model_validate(payload)
        if usage is not None:
            delta.usage = usage
        return delta

