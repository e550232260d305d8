"""Shared fixtures: in-memory store, seeded story/character, mocked generator."""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from storyloop.drafts.cache import DraftCache
from storyloop.engine.delta import Delta
from storyloop.engine.game_engine import GameEngine
from storyloop.engine.state import CharacterInfo, Speaker, StoryInfo, Turn
from storyloop.nlg.story_generator import StoryGenerator
from storyloop.persistence.store import SessionStore
from storyloop.utils.api_client import UsageReport

T0 = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def make_delta(narration="The story continues.", tokens=(100, 20), **fields):
    """Build a delta the way the generator would from raw JSON."""
    payload = {"narration": narration, **fields}
    return Delta.from_payload(payload, UsageReport(input_tokens=tokens[0], output_tokens=tokens[1], model="gpt-4o-mini"))


class StepClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        self.now = self.now + timedelta(seconds=1)
        return self.now


@pytest.fixture
def store():
    return SessionStore("sqlite://")


@pytest.fixture
def story(store):
    return store.add_story(
        StoryInfo(
            id="story-pp",
            title="Pride and Prejudice",
            author="Jane Austen",
            description="Manners and marriage in Regency England.",
            setting="Hertfordshire, 1811",
        )
    )


@pytest.fixture
def character(store, story):
    return store.add_character(
        CharacterInfo(
            id="char-eliza",
            name="Eliza",
            description="A quick-witted young woman.",
            personality_traits=["curious", "stubborn"],
        ),
        story_id=story.id,
    )


@pytest.fixture
def generator():
    gen = MagicMock(spec=StoryGenerator)
    gen.generate_opening.return_value = make_delta(
        "You stand in the drawing room at Longbourn.",
        tokens=(300, 100),
        world_state={"current_location": "Longbourn", "time_of_day": "morning"},
        suggested_actions=["Greet your sisters", "Read the letter"],
    )
    gen.continue_story.return_value = make_delta("The door creaks open.", tokens=(100, 20))
    gen.generate_summary.return_value = ("Eliza found her own ending.", UsageReport(input_tokens=40, output_tokens=10))
    return gen


@pytest.fixture
def drafts(tmp_path):
    return DraftCache(directory=tmp_path / "drafts")


@pytest.fixture
def engine(store, generator, drafts):
    return GameEngine(store, generator=generator, drafts=drafts, clock=StepClock())


@pytest.fixture
def session(store, story, character):
    return store.create_session("user-1", story.id, character.id)


@pytest.fixture
def active_session(store, session):
    """A session that already has an opening turn and 500 tokens used."""
    session.state = session.state.model_copy(update={"context_tokens_used": 500})
    opening = Turn(session_id=session.id, speaker=Speaker.NARRATOR, content="It is a truth universally acknowledged.", created_at=T0)
    assert store.save(session, [opening])
    return session
