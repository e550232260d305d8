"""Exception hierarchy for the narrative session engine."""
from __future__ import annotations


class StoryLoopError(Exception):
    """Base class for every error raised by StoryLoop."""


class TurnRejected(StoryLoopError):
    """A turn (or other mutation) was refused before anything was changed."""


class EmptyInputError(TurnRejected):
    pass


class TurnInFlightError(TurnRejected):
    """Another turn is still running for the same session."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"A turn is already in progress for session {session_id}")
        self.session_id = session_id


class SessionCompletedError(TurnRejected):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} is already complete")
        self.session_id = session_id


class InvalidTransitionError(TurnRejected):
    def __init__(self, phase: str, event: str) -> None:
        super().__init__(f"Cannot apply '{event}' while session is {phase}")
        self.phase = phase
        self.event = event


class CollaboratorError(StoryLoopError):
    """The language-model call failed or returned something unusable."""


class SessionNotFoundError(StoryLoopError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id
