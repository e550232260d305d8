"""Ordered turn log for one session.

Append-only from the engine's point of view; the one exception is
:meth:`Transcript.discard`, used to withdraw an optimistic user turn whose
collaborator call failed before anything was persisted.
"""
from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Optional

from storyloop.engine.state import Turn

logger = logging.getLogger(__name__)


class Transcript:
    def __init__(self, session_id: str, turns: Optional[List[Turn]] = None) -> None:
        self.session_id = session_id
        self._turns: List[Turn] = []
        self._unsaved: List[str] = []
        for turn in turns or []:
            self._turns.append(turn)

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(self._turns)

    @property
    def turns(self) -> List[Turn]:
        return list(self._turns)

    @property
    def is_empty(self) -> bool:
        return not any(not t.ephemeral for t in self._turns)

    @property
    def last(self) -> Optional[Turn]:
        """Most recent turn that belongs to the story (ephemeral ones skipped)."""
        for turn in reversed(self._turns):
            if not turn.ephemeral:
                return turn
        return None

    # ── writes ────────────────────────────────────────────
    def append(self, turn: Turn) -> Turn:
        if turn.session_id != self.session_id:
            raise ValueError(f"Turn belongs to session {turn.session_id}, not {self.session_id}")
        self._turns.append(turn)
        if not turn.ephemeral:
            self._unsaved.append(turn.id)
        return turn

    def discard(self, turn_id: str) -> Optional[Turn]:
        """Remove a turn that was never persisted. Returns it, or ``None``."""
        for i, turn in enumerate(self._turns):
            if turn.id == turn_id:
                if turn.id not in self._unsaved and not turn.ephemeral:
                    raise ValueError(f"Turn {turn_id} is already persisted")
                del self._turns[i]
                if turn.id in self._unsaved:
                    self._unsaved.remove(turn.id)
                return turn
        return None

    # ── persistence bookkeeping ───────────────────────────
    def unsaved(self) -> List[Turn]:
        by_id: Dict[str, Turn] = {t.id: t for t in self._turns}
        return [by_id[i] for i in self._unsaved if i in by_id]

    def mark_saved(self, turns: List[Turn]) -> None:
        saved = {t.id for t in turns}
        self._unsaved = [i for i in self._unsaved if i not in saved]
        for turn in turns:
            turn.save_failed = False

    def mark_failed(self, turns: List[Turn]) -> None:
        for turn in turns:
            turn.save_failed = True

    # ── views ─────────────────────────────────────────────
    def history(self) -> List[Dict[str, str]]:
        """Chat-style history for the collaborator (ephemeral turns excluded)."""
        return [
            {"role": t.role, "content": t.content}
            for t in self._turns
            if not t.ephemeral
        ]
