"""Pure merge of a collaborator delta into the aggregate session state.

Rules:
* world-state patch fields overwrite only when present
* memory events are appended once per id (generated when missing)
* relationship updates overwrite per character name, trust clamped to 0-100

``merge`` never mutates its inputs and never raises for a well-typed delta.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from storyloop.engine.aggregate import (
    AggregateState,
    MemoryEvent,
    Relationship,
    TRUST_MAX,
    TRUST_MIN,
    WorldState,
    clamp_trust,
)
from storyloop.engine.delta import Delta, MemoryEventIn, RelationshipUpdate, WorldStatePatch

logger = logging.getLogger(__name__)


def new_memory_id() -> str:
    return f"mem-{uuid.uuid4().hex[:12]}"


def merge_world_state(current: WorldState, patch: Optional[WorldStatePatch]) -> WorldState:
    if patch is None:
        return current.model_copy(deep=True)
    return current.model_copy(update=patch.changes(), deep=True)


def append_memory_events(
    current: List[MemoryEvent],
    incoming: Iterable[MemoryEventIn],
    timestamp: datetime,
) -> List[MemoryEvent]:
    events = [e.model_copy(deep=True) for e in current]
    seen = {e.id for e in events}
    for item in incoming:
        event_id = item.id or new_memory_id()
        if event_id in seen:
            logger.debug("Skipping duplicate memory event %s", event_id)
            continue
        seen.add(event_id)
        events.append(
            MemoryEvent(
                id=event_id,
                description=item.description,
                importance=item.importance,
                characters_involved=list(item.characters_involved),
                tags=list(item.tags),
                timestamp=timestamp,
            )
        )
    return events


def merge_relationships(
    current: dict,
    updates: Iterable[RelationshipUpdate],
    timestamp: datetime,
) -> dict:
    merged = {name: rel.model_copy(deep=True) for name, rel in current.items()}
    for update in updates:
        changes = update.changes()
        if "trust_level" in changes:
            raw = changes["trust_level"]
            changes["trust_level"] = clamp_trust(raw)
            if raw != changes["trust_level"]:
                logger.debug(
                    "Clamped trust for %s from %d into [%d, %d]",
                    update.character, raw, TRUST_MIN, TRUST_MAX,
                )
        changes["last_updated"] = timestamp
        existing = merged.get(update.character)
        if existing is None:
            merged[update.character] = Relationship(**changes)
        else:
            merged[update.character] = existing.model_copy(update=changes)
    return merged


def merge(
    current: AggregateState,
    delta: Delta,
    now: Optional[datetime] = None,
) -> AggregateState:
    """Fold *delta* into *current* and return the new aggregate.

    Token accounting is not touched here; see :mod:`storyloop.engine.token_budget`.
    """
    now = now or datetime.now(timezone.utc)
    return current.model_copy(
        update={
            "world_state": merge_world_state(current.world_state, delta.world_state),
            "memory_events": append_memory_events(current.memory_events, delta.memory_updates, now),
            "relationships": merge_relationships(current.relationships, delta.relationship_updates, now),
        },
        deep=True,
    )


def rebuild_memory_events(turns: Iterable) -> List[MemoryEvent]:
    """Recover memory events from ``memory_updates`` stored on narrator turns.

    Used for sessions whose stored aggregate predates the memory list.
    """
    events: List[MemoryEvent] = []
    for turn in turns:
        raw = (turn.metadata or {}).get("memory_updates")
        if not raw:
            continue
        incoming = Delta.from_payload({"memory_updates": raw}).memory_updates
        events = append_memory_events(events, incoming, turn.created_at)
    return events
