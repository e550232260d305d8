"""Turn orchestrator for StoryLoop.

Pipeline per turn:
1. Validate input and take the per-session turn guard
2. Append the user turn optimistically to the in-memory transcript
3. Call the story generator with the full history and aggregate state
4. Merge the delta (reducer) and add the reported tokens (token budget)
5. Persist the session row and every not-yet-saved turn
6. Record API usage, clear the local draft

A failed collaborator call withdraws the optimistic user turn, hands the
text back for resubmission and surfaces an apology that is never stored;
the aggregate is left exactly as it was. A failed save keeps the
in-memory copy authoritative and flags the unsaved turns; the next
successful save carries them forward.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Union

from storyloop.drafts.cache import DraftCache
from storyloop.engine import lifecycle
from storyloop.engine.delta import Delta
from storyloop.engine.errors import (
    EmptyInputError,
    SessionCompletedError,
    SessionNotFoundError,
    StoryLoopError,
    TurnInFlightError,
)
from storyloop.engine.export import export_transcript
from storyloop.engine.lifecycle import Event, Phase
from storyloop.engine.reducer import merge, rebuild_memory_events
from storyloop.engine.state import (
    CharacterInfo,
    CreativityLevel,
    Session,
    Speaker,
    StoryInfo,
    Turn,
    utcnow,
)
from storyloop.engine.token_budget import record_usage, utilization
from storyloop.engine.transcript import Transcript
from storyloop.nlg.story_generator import StoryGenerator
from storyloop.persistence.store import SessionStore
from storyloop.utils.api_client import UsageReport

logger = logging.getLogger(__name__)

FALLBACK_OPENING = (
    "Welcome to {title}. As {name}, you're about to embark on an adventure "
    "through this classic tale. What would you like to do first?"
)
FALLBACK_REPLY = (
    "I'm sorry, I couldn't process that properly. "
    "Could you try again or phrase it differently?"
)


@dataclass
class TurnResult:
    """Container returned after every turn (or bootstrap)."""

    story_text: str
    new_turns: List[Turn] = field(default_factory=list)
    suggested_actions: List[str] = field(default_factory=list)
    context_tokens_used: int = 0
    utilization: float = 0.0
    save_status: str = "idle"
    failed: bool = False
    restored_input: Optional[str] = None
    error: Optional[str] = None


@dataclass
class EndResult:
    completed: bool
    already_complete: bool = False
    summary: Optional[str] = None
    save_status: str = "idle"
    error: Optional[str] = None


@dataclass
class SessionView:
    """What the presentation layer needs when a session is (re)opened."""

    session: Session
    story: StoryInfo
    character: Optional[CharacterInfo]
    turns: List[Turn]
    phase: Phase
    utilization: float
    recovered_draft: Optional[str] = None
    opening: Optional[TurnResult] = None


@dataclass
class _LiveSession:
    session: Session
    story: StoryInfo
    character: Optional[CharacterInfo]
    transcript: Transcript
    bootstrap_checked: bool = False
    save_status: str = "idle"

    @property
    def phase(self) -> Phase:
        if self.character is None and not self.session.completed:
            return Phase.AWAITING_CHARACTER
        return lifecycle.phase_of(self.session, len(self.transcript.history()))


def _delta_metadata(delta: Delta) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {"tokens_used": delta.usage.total_tokens}
    if delta.scene_description:
        metadata["scene_description"] = delta.scene_description
    if delta.world_state is not None and delta.world_state.changes():
        metadata["world_state_updates"] = delta.world_state.changes()
    if delta.relationship_updates:
        metadata["relationship_updates"] = [r.model_dump(mode="json") for r in delta.relationship_updates]
    return metadata


class GameEngine:
    """Coordinates generator → reducer → token budget → store for each session."""

    def __init__(
        self,
        store: SessionStore,
        generator: Optional[StoryGenerator] = None,
        drafts: Optional[DraftCache] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.generator = generator or StoryGenerator()
        self.drafts = drafts or DraftCache()
        self._clock = clock
        self._live: Dict[str, _LiveSession] = {}
        self._in_flight: Set[str] = set()
        self._guard_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start_session(
        self,
        user_id: str,
        story_id: str,
        character_id: Optional[str] = None,
        creativity_level: Union[CreativityLevel, str] = CreativityLevel.BALANCED,
    ) -> Session:
        """Create a session, with or without an already-customised character."""
        if self.store.get_story(story_id) is None:
            raise StoryLoopError(f"Story {story_id} not found")
        if character_id is not None and self.store.get_character(character_id) is None:
            raise StoryLoopError(f"Character {character_id} not found")
        return self.store.create_session(
            user_id, story_id, character_id, CreativityLevel(creativity_level)
        )

    def open_session(self, session_id: str, reload: bool = False) -> SessionView:
        """Load (or reuse) the in-memory copy, recover any draft, bootstrap once."""
        live = self._live.get(session_id)
        if live is None or reload:
            if session_id in self._in_flight:
                raise TurnInFlightError(session_id)
            live = self._load(session_id)
            self._live[session_id] = live

        opening = None
        if not live.bootstrap_checked:
            live.bootstrap_checked = True
            if live.phase is Phase.AWAITING_FIRST_TURN:
                opening = self.bootstrap(session_id)

        return SessionView(
            session=live.session,
            story=live.story,
            character=live.character,
            turns=live.transcript.turns,
            phase=live.phase,
            utilization=utilization(live.session.state),
            recovered_draft=self.drafts.recover(session_id),
            opening=opening,
        )

    def assign_character(self, session_id: str, character_id: str) -> Session:
        """Attach the player character to a session created without one."""
        live = self._require(session_id)
        lifecycle.transition(live.phase, Event.ASSIGN_CHARACTER)
        character = self.store.get_character(character_id)
        if character is None:
            raise StoryLoopError(f"Character {character_id} not found")
        now = self._clock()
        live.session.player_character_id = character_id
        live.session.updated_at = now
        live.character = character
        # the opening scene is due now that there is someone to play
        live.bootstrap_checked = False
        if self.store.set_character(session_id, character_id, now):
            live.save_status = "saved"
        else:
            live.save_status = "error"
            logger.warning("Session %s: character kept in memory only", session_id)
        logger.info("Session %s: character %s assigned", session_id, character.name)
        return live.session

    def change_creativity_level(
        self, session_id: str, level: Union[CreativityLevel, str]
    ) -> Session:
        """Update only the creativity level; takes effect on the next turn."""
        live = self._require(session_id)
        if live.session.completed:
            raise SessionCompletedError(session_id)
        lifecycle.transition(live.phase, Event.CHANGE_CREATIVITY)
        live.session.creativity_level = CreativityLevel(level)
        live.session.updated_at = self._clock()
        self._persist(live)
        return live.session

    def restart_with_same_character(self, session_id: str) -> Session:
        """Start a fresh playthrough of the same story with the same character."""
        live = self._require(session_id)
        old = live.session
        return self.store.create_session(
            old.user_id, old.story_id, old.player_character_id, old.creativity_level
        )

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def bootstrap(self, session_id: str) -> TurnResult:
        """Synthesise the opening scene when the transcript is empty."""
        live = self._require(session_id)
        with self._turn_guard(session_id):
            if not live.transcript.is_empty:
                return self._result(live, live.transcript.last.content)
            lifecycle.transition(live.phase, Event.OPEN_SCENE)

            session = live.session
            try:
                delta = self.generator.generate_opening(
                    live.story, live.character, session.creativity_level
                )
            except Exception as exc:
                logger.warning("Opening scene failed for session %s: %s", session_id, exc)
                turn = Turn(
                    session_id=session_id,
                    speaker=Speaker.NARRATOR,
                    content=FALLBACK_OPENING.format(title=live.story.title, name=live.character.name),
                    created_at=self._clock(),
                )
                live.transcript.append(turn)
                self._persist(live)
                return self._result(live, turn.content, [turn], error=str(exc))

            now = self._clock()
            turn = Turn(
                session_id=session_id,
                speaker=Speaker.NARRATOR,
                content=delta.narration,
                metadata=self._apply(live, delta, now),
                created_at=now,
            )
            live.transcript.append(turn)
            self._persist(live)
            self._track_usage(live, "opening_scene", delta.usage)
            logger.info("Session %s: opening scene generated", session_id)
            return self._result(live, turn.content, [turn], delta.suggested_actions)

    def submit_turn(self, session_id: str, user_text: str) -> TurnResult:
        """Run one full turn for the player's *user_text*."""
        text = (user_text or "").strip()
        if not text:
            raise EmptyInputError("Cannot submit an empty turn")
        live = self._require(session_id)
        if live.session.completed:
            raise SessionCompletedError(session_id)

        with self._turn_guard(session_id):
            lifecycle.transition(live.phase, Event.SUBMIT_TURN)
            session = live.session
            history = live.transcript.history()
            user_turn = live.transcript.append(
                Turn(session_id=session_id, speaker=Speaker.USER, content=text, created_at=self._clock())
            )

            try:
                delta = self.generator.continue_story(
                    live.story,
                    live.character,
                    history,
                    text,
                    session.creativity_level,
                    session.state.memory_events,
                    session.state.world_state,
                    session.state.relationships,
                )
            except Exception as exc:
                logger.warning("Turn failed for session %s: %s", session_id, exc)
                live.transcript.discard(user_turn.id)
                apology = live.transcript.append(
                    Turn(
                        session_id=session_id,
                        speaker=Speaker.NARRATOR,
                        content=FALLBACK_REPLY,
                        created_at=self._clock(),
                        ephemeral=True,
                    )
                )
                self.drafts.stage(session_id, text)
                return self._result(
                    live, apology.content, [apology],
                    failed=True, restored_input=text, error=str(exc),
                )

            now = self._clock()
            reply = Turn(
                session_id=session_id,
                speaker=Speaker.NARRATOR,
                content=delta.narration,
                metadata=self._apply(live, delta, now),
                created_at=now,
            )
            live.transcript.append(reply)
            self._persist(live)
            self._track_usage(live, "continue_conversation", delta.usage)
            self.drafts.clear(session_id)
            return self._result(live, reply.content, [user_turn, reply], delta.suggested_actions)

    def end_session(self, session_id: str) -> EndResult:
        """Summarise, mark inactive and freeze. A second call is a no-op."""
        live = self._require(session_id)
        state = live.session.state
        if live.session.completed:
            return EndResult(
                completed=True,
                already_complete=True,
                summary=state.completion_summary,
                save_status=live.save_status,
            )

        with self._turn_guard(session_id):
            lifecycle.transition(live.phase, Event.END)
            try:
                summary, usage = self.generator.generate_summary(
                    live.story,
                    live.character,
                    live.transcript.history(),
                    state.memory_events,
                )
            except Exception as exc:
                logger.warning("Summary failed for session %s: %s", session_id, exc)
                return EndResult(completed=False, save_status=live.save_status, error=str(exc))

            now = self._clock()
            final = record_usage(state, usage.total_tokens).model_copy(
                update={
                    "completed": True,
                    "completion_summary": summary,
                    "completion_date": now,
                    "last_update": now,
                }
            )
            live.session.state = final
            live.session.is_active = False
            live.session.updated_at = now
            self._persist(live)
            self._track_usage(live, "generate_summary", usage)
            self.drafts.clear(session_id)
            logger.info("Session %s completed", session_id)
            return EndResult(completed=True, summary=summary, save_status=live.save_status)

    def retry_save(self, session_id: str) -> bool:
        """Write the in-memory copy again, e.g. after a failed save."""
        live = self._require(session_id)
        return self._persist(live)

    # ------------------------------------------------------------------
    # Read-only helpers
    # ------------------------------------------------------------------

    def utilization(self, session_id: str) -> float:
        return utilization(self._require(session_id).session.state)

    def save_status(self, session_id: str) -> str:
        return self._require(session_id).save_status

    def time_played(self, session_id: str) -> str:
        session = self._require(session_id).session
        end = session.state.completion_date if session.completed and session.state.completion_date else self._clock()
        minutes = max(0, round((end - session.created_at).total_seconds() / 60))
        if minutes < 60:
            return f"{minutes} minute{'s' if minutes != 1 else ''}"
        hours, mins = divmod(minutes, 60)
        return f"{hours} hour{'s' if hours != 1 else ''} {mins} minute{'s' if mins != 1 else ''}"

    def export(self, session_id: str, fmt: str = "markdown") -> str:
        live = self._require(session_id)
        return export_transcript(live.session, live.transcript.turns, live.story, live.character, fmt)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _turn_guard(self, session_id: str) -> Iterator[None]:
        with self._guard_lock:
            if session_id in self._in_flight:
                raise TurnInFlightError(session_id)
            self._in_flight.add(session_id)
        try:
            yield
        finally:
            with self._guard_lock:
                self._in_flight.discard(session_id)

    def _require(self, session_id: str) -> _LiveSession:
        live = self._live.get(session_id)
        if live is None:
            live = self._load(session_id)
            self._live[session_id] = live
        return live

    def _load(self, session_id: str) -> _LiveSession:
        loaded = self.store.load(session_id)
        if loaded is None:
            raise SessionNotFoundError(session_id)
        session, turns = loaded
        story = self.store.get_story(session.story_id)
        if story is None:
            raise StoryLoopError(f"Story {session.story_id} not found for session {session_id}")
        character = None
        if session.player_character_id:
            character = self.store.get_character(session.player_character_id)
            if character is None:
                logger.warning(
                    "Session %s: character %s not found, awaiting a new one",
                    session_id, session.player_character_id,
                )

        if not session.state.memory_events:
            recovered = rebuild_memory_events(turns)
            if recovered:
                logger.info("Session %s: rebuilt %d memory events from transcript", session_id, len(recovered))
                session.state = session.state.model_copy(update={"memory_events": recovered})

        transcript = Transcript(session_id, turns)
        logger.debug("Loaded session %s with %d turns", session_id, len(transcript))
        return _LiveSession(session=session, story=story, character=character, transcript=transcript)

    def _apply(self, live: _LiveSession, delta: Delta, now: datetime) -> Dict[str, Any]:
        """Merge and count *delta*; return the metadata for its narrator turn."""
        known = set(live.session.state.memory_ids)
        state = merge(live.session.state, delta, now)
        added = [e for e in state.memory_events if e.id not in known]
        state = record_usage(state, delta.usage.total_tokens)
        live.session.state = state.model_copy(update={"last_update": now})
        live.session.updated_at = now
        metadata = _delta_metadata(delta)
        if added:
            metadata["memory_updates"] = [e.model_dump(mode="json") for e in added]
        return metadata

    def _persist(self, live: _LiveSession) -> bool:
        pending = live.transcript.unsaved()
        live.save_status = "saving"
        if self.store.save(live.session, pending):
            live.transcript.mark_saved(pending)
            live.save_status = "saved"
            return True
        live.transcript.mark_failed(pending)
        live.save_status = "error"
        logger.warning(
            "Session %s kept in memory with %d unsaved turn(s)", live.session.id, len(pending)
        )
        return False

    def _track_usage(self, live: _LiveSession, operation: str, usage: UsageReport) -> None:
        self.store.record_usage(live.session.user_id, live.session.id, operation, usage)

    def _result(
        self,
        live: _LiveSession,
        story_text: str,
        new_turns: Optional[List[Turn]] = None,
        suggested_actions: Optional[List[str]] = None,
        **extra: Any,
    ) -> TurnResult:
        state = live.session.state
        return TurnResult(
            story_text=story_text,
            new_turns=list(new_turns or []),
            suggested_actions=list(suggested_actions or []),
            context_tokens_used=state.context_tokens_used,
            utilization=utilization(state),
            save_status=live.save_status,
            **extra,
        )
