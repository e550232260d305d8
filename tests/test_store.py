"""Tests for the SQLAlchemy session persistence adapter."""
from datetime import timedelta
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from conftest import T0
from storyloop.engine.aggregate import AggregateState, WorldState
from storyloop.engine.state import CreativityLevel, Speaker, Turn
from storyloop.utils.api_client import UsageReport


class TestSessionStore:
    def test_create_and_load(self, store, session):
        loaded, turns = store.load(session.id)
        assert loaded.id == session.id
        assert loaded.user_id == "user-1"
        assert loaded.is_active
        assert loaded.state.context_tokens_used == 0
        assert loaded.creativity_level == CreativityLevel.BALANCED
        assert turns == []

    def test_load_unknown_session(self, store):
        assert store.load("nope") is None

    def test_save_round_trips_aggregate(self, store, session):
        session.state = AggregateState(
            context_tokens_used=777,
            world_state=WorldState(current_location="Pemberley", present_npcs=["Georgiana"]),
        )
        assert store.save(session, [])
        loaded, _ = store.load(session.id)
        assert loaded.state == session.state

    def test_turns_are_ordered_and_not_duplicated(self, store, session):
        first = Turn(session_id=session.id, speaker=Speaker.NARRATOR, content="one", created_at=T0)
        second = Turn(session_id=session.id, speaker=Speaker.USER, content="two", created_at=T0 + timedelta(seconds=1))
        third = Turn(session_id=session.id, speaker=Speaker.NARRATOR, content="three", created_at=T0 + timedelta(seconds=1))
        assert store.save(session, [first, second])
        # retried save carries an already-stored turn forward
        assert store.save(session, [second, third])
        _, turns = store.load(session.id)
        assert [t.content for t in turns] == ["one", "two", "three"]
        assert [t.speaker for t in turns] == [Speaker.NARRATOR, Speaker.USER, Speaker.NARRATOR]
        assert turns[0].created_at.tzinfo is not None

    def test_ephemeral_turns_are_not_persisted(self, store, session):
        apology = Turn(session_id=session.id, speaker=Speaker.NARRATOR, content="sorry", ephemeral=True)
        assert store.save(session, [apology])
        _, turns = store.load(session.id)
        assert turns == []

    def test_last_write_wins(self, store, session):
        session.state = AggregateState(context_tokens_used=10)
        store.save(session, [])
        session.state = AggregateState(context_tokens_used=3)
        store.save(session, [])
        loaded, _ = store.load(session.id)
        assert loaded.state.context_tokens_used == 3

    def test_save_failure_returns_false(self, store, session):
        with patch.object(store, "Session") as factory:
            factory.begin.side_effect = OperationalError("UPDATE", {}, Exception("disk I/O error"))
            assert store.save(session, []) is False

    def test_save_missing_row_returns_false(self, store, session):
        session.id = "ghost"
        assert store.save(session, []) is False

    def test_legacy_character_message_type(self, store, session):
        from storyloop.persistence.models import MessageRow

        with store.Session.begin() as db:
            db.add(MessageRow(id="legacy", session_id=session.id, sequence=1,
                              message_type="character", content="hello", created_at=T0))
        _, turns = store.load(session.id)
        assert turns[0].speaker is Speaker.NARRATOR

    def test_record_usage(self, store, session):
        store.record_usage("user-1", session.id, "continue_conversation",
                           UsageReport(input_tokens=100, output_tokens=20, model="gpt-4o-mini",
                                       input_cost=0.1, output_cost=0.2))
        rows = store.usage_for_session(session.id)
        assert len(rows) == 1
        assert rows[0].tokens_used == 120
        assert rows[0].total_cost == 0.1 + 0.2

    def test_record_usage_failure_is_swallowed(self, store, session):
        with patch.object(store, "Session") as factory:
            factory.begin.side_effect = OperationalError("INSERT", {}, Exception("locked"))
            store.record_usage("user-1", session.id, "opening_scene", UsageReport())

    def test_list_sessions(self, store, story, character, session):
        other = store.create_session("user-1", story.id, character.id)
        other.is_active = False
        store.save(other, [])
        assert {s.id for s in store.list_sessions("user-1")} == {session.id, other.id}
        assert [s.id for s in store.list_sessions("user-1", active_only=True)] == [session.id]

    def test_story_and_character_lookup(self, store, story, character):
        assert store.get_story(story.id).title == "Pride and Prejudice"
        assert store.get_character(character.id).personality_traits == ["curious", "stubborn"]
        assert store.get_story("missing") is None

    def test_set_character(self, store, story, character):
        session = store.create_session("user-3", story.id)
        assert store.set_character(session.id, character.id)
        loaded, _ = store.load(session.id)
        assert loaded.player_character_id == character.id
        assert not store.set_character("missing", character.id)
