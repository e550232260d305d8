"""Tests for the transcript store, lifecycle table and aggregate blob."""
from unittest.mock import patch

import pytest

from conftest import T0
from storyloop.engine import lifecycle
from storyloop.engine.aggregate import AggregateState, MemoryEvent, Relationship
from storyloop.engine.errors import InvalidTransitionError
from storyloop.engine.lifecycle import Event, Phase
from storyloop.engine.state import CreativityLevel, Session, Speaker, Turn
from storyloop.engine.transcript import Transcript
from storyloop.utils.log_setup import configure_logging


def _turn(speaker=Speaker.USER, content="x", **kw):
    return Turn(session_id="s1", speaker=speaker, content=content, **kw)


# ── Transcript ──────────────────────────────────────────────────────

class TestTranscript:
    def test_append_and_history(self):
        t = Transcript("s1")
        t.append(_turn(Speaker.NARRATOR, "Opening"))
        t.append(_turn(Speaker.USER, "go north"))
        assert t.history() == [
            {"role": "assistant", "content": "Opening"},
            {"role": "user", "content": "go north"},
        ]

    def test_rejects_foreign_turn(self):
        with pytest.raises(ValueError):
            Transcript("s1").append(Turn(session_id="other", speaker=Speaker.USER, content="x"))

    def test_unsaved_bookkeeping(self):
        t = Transcript("s1", [_turn(Speaker.NARRATOR, "stored")])
        a = t.append(_turn(content="a"))
        b = t.append(_turn(Speaker.NARRATOR, "b"))
        assert t.unsaved() == [a, b]
        t.mark_failed([a, b])
        assert a.save_failed
        t.mark_saved([a])
        assert t.unsaved() == [b]
        assert not a.save_failed

    def test_discard_only_unsaved(self):
        stored = _turn(Speaker.NARRATOR, "stored")
        t = Transcript("s1", [stored])
        pending = t.append(_turn(content="pending"))
        assert t.discard(pending.id) is pending
        assert t.unsaved() == []
        with pytest.raises(ValueError):
            t.discard(stored.id)
        assert t.discard("nope") is None

    def test_ephemeral_turns_excluded(self):
        t = Transcript("s1")
        t.append(_turn(Speaker.NARRATOR, "sorry", ephemeral=True))
        assert t.is_empty
        assert t.unsaved() == []
        assert t.history() == []

    def test_last_skips_ephemeral(self):
        t = Transcript("s1")
        opening = t.append(_turn(Speaker.NARRATOR, "Opening"))
        t.append(_turn(Speaker.NARRATOR, "sorry", ephemeral=True))
        assert t.last is opening
        assert len(t.history()) == 1


# ── Lifecycle ───────────────────────────────────────────────────────

class TestLifecycle:
    def _session(self, **kw):
        return Session(id="s1", user_id="u", story_id="st", **kw)

    def test_phases(self):
        assert lifecycle.phase_of(self._session(), 0) is Phase.AWAITING_CHARACTER
        assert lifecycle.phase_of(self._session(player_character_id="c"), 0) is Phase.AWAITING_FIRST_TURN
        assert lifecycle.phase_of(self._session(player_character_id="c"), 3) is Phase.ACTIVE
        assert lifecycle.phase_of(self._session(player_character_id="c", is_active=False), 3) is Phase.COMPLETED

    def test_transition_table(self):
        assert lifecycle.transition(Phase.AWAITING_CHARACTER, Event.ASSIGN_CHARACTER) is Phase.AWAITING_FIRST_TURN
        assert lifecycle.transition(Phase.AWAITING_FIRST_TURN, Event.OPEN_SCENE) is Phase.ACTIVE
        assert lifecycle.transition(Phase.ACTIVE, Event.END) is Phase.COMPLETED

    @pytest.mark.parametrize("phase,event", [
        (Phase.COMPLETED, Event.SUBMIT_TURN),
        (Phase.COMPLETED, Event.END),
        (Phase.ACTIVE, Event.OPEN_SCENE),
        (Phase.AWAITING_CHARACTER, Event.SUBMIT_TURN),
    ])
    def test_invalid_transitions(self, phase, event):
        assert not lifecycle.can(phase, event)
        with pytest.raises(InvalidTransitionError):
            lifecycle.transition(phase, event)


# ── Data model ──────────────────────────────────────────────────────

class TestDataModel:
    def test_blob_round_trip(self):
        state = AggregateState(
            context_tokens_used=12,
            memory_events=[MemoryEvent(id="m", description="d", tags=["a", "a", "b"], timestamp=T0)],
            relationships={"Jane": Relationship(relationship_type="sister", trust_level=90, last_updated=T0)},
        )
        assert state.memory_events[0].tags == ["a", "b"]
        assert AggregateState.from_blob(state.to_blob()) == state

    def test_empty_blob(self):
        assert AggregateState.from_blob(None) == AggregateState()

    def test_relationship_trust_clamped_on_load(self):
        assert Relationship(trust_level=400).trust_level == 100

    def test_creativity_rank(self):
        assert [c.rank for c in CreativityLevel] == [1, 2, 3]

    def test_legacy_speaker_names(self):
        assert Speaker("character") is Speaker.NARRATOR
        assert _turn(Speaker.SYSTEM).role == "assistant"

    def test_configure_logging(self):
        with patch("storyloop.utils.log_setup.logging.basicConfig") as basic:
            configure_logging("debug")
        assert basic.call_args.kwargs["level"] == "DEBUG"
