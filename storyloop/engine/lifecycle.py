"""Session lifecycle as one state machine.

A session may be created before or after the player character exists;
both paths meet at ``AWAITING_FIRST_TURN`` and share the same table.

    AWAITING_CHARACTER --assign_character--> AWAITING_FIRST_TURN
    AWAITING_FIRST_TURN --open_scene-------> ACTIVE
    ACTIVE --submit_turn / change_creativity--> ACTIVE
    AWAITING_FIRST_TURN | ACTIVE --end--> COMPLETED
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, Tuple

from storyloop.engine.errors import InvalidTransitionError
from storyloop.engine.state import Session


class Phase(str, Enum):
    AWAITING_CHARACTER = "awaiting_character"
    AWAITING_FIRST_TURN = "awaiting_first_turn"
    ACTIVE = "active"
    COMPLETED = "completed"


class Event(str, Enum):
    ASSIGN_CHARACTER = "assign_character"
    OPEN_SCENE = "open_scene"
    SUBMIT_TURN = "submit_turn"
    CHANGE_CREATIVITY = "change_creativity"
    END = "end"


TRANSITIONS: Dict[Tuple[Phase, Event], Phase] = {
    (Phase.AWAITING_CHARACTER, Event.ASSIGN_CHARACTER): Phase.AWAITING_FIRST_TURN,
    (Phase.AWAITING_CHARACTER, Event.CHANGE_CREATIVITY): Phase.AWAITING_CHARACTER,
    (Phase.AWAITING_FIRST_TURN, Event.OPEN_SCENE): Phase.ACTIVE,
    (Phase.AWAITING_FIRST_TURN, Event.CHANGE_CREATIVITY): Phase.AWAITING_FIRST_TURN,
    (Phase.AWAITING_FIRST_TURN, Event.END): Phase.COMPLETED,
    (Phase.ACTIVE, Event.SUBMIT_TURN): Phase.ACTIVE,
    (Phase.ACTIVE, Event.CHANGE_CREATIVITY): Phase.ACTIVE,
    (Phase.ACTIVE, Event.END): Phase.COMPLETED,
}


def phase_of(session: Session, turn_count: int) -> Phase:
    if session.completed:
        return Phase.COMPLETED
    if not session.player_character_id:
        return Phase.AWAITING_CHARACTER
    if turn_count == 0:
        return Phase.AWAITING_FIRST_TURN
    return Phase.ACTIVE


def transition(phase: Phase, event: Event) -> Phase:
    try:
        return TRANSITIONS[(phase, event)]
    except KeyError:
        raise InvalidTransitionError(phase.value, event.value) from None


def can(phase: Phase, event: Event) -> bool:
    return (phase, event) in TRANSITIONS
