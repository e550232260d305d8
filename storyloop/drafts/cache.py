"""Local draft recovery cache for unsent player input.

Drafts live in small JSON files under ``settings.DRAFT_DIR``, one per
session, and expire after ``settings.DRAFT_TTL_SECONDS``. They are never
story state: only the keystrokes the player has not submitted yet.

``DraftDebouncer`` sits between the input box and the cache: it records
every keystroke but only stages a draft once typing has paused for
``DRAFT_DEBOUNCE_SECONDS``.
"""
from __future__ import annotations

import hashlib
import json
import logging
import time
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

from config import settings

logger = logging.getLogger(__name__)


class DraftCache:
    """File-backed, per-session draft store."""

    def __init__(
        self,
        directory: Optional[Path] = None,
        min_length: Optional[int] = None,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = Path(directory or settings.DRAFT_DIR)
        self.min_length = settings.DRAFT_MIN_LENGTH if min_length is None else min_length
        self.ttl_seconds = settings.DRAFT_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock

    def _path(self, session_id: str) -> Path:
        digest = hashlib.sha1(session_id.encode("utf-8")).hexdigest()[:16]
        return self.directory / f"draft-{digest}.json"

    def stage(self, session_id: str, draft_text: str) -> bool:
        """Overwrite the draft for *session_id*. Short drafts are ignored.

        Fire-and-forget: I/O errors are logged and reported as ``False``.
        """
        if len((draft_text or "").strip()) < self.min_length:
            return False
        payload = {"session_id": session_id, "text": draft_text, "saved_at": self._clock()}
        path = self._path(session_id)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(json.dumps(payload), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.warning("Could not stage draft for session %s: %s", session_id, exc)
            return False
        return True

    def recover(self, session_id: str) -> Optional[str]:
        """Return the unexpired draft for *session_id*, if any."""
        path = self._path(session_id)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Discarding unreadable draft for session %s: %s", session_id, exc)
            self.clear(session_id)
            return None
        if payload.get("session_id") != session_id:
            return None
        if self._clock() - float(payload.get("saved_at", 0)) > self.ttl_seconds:
            logger.debug("Draft for session %s expired", session_id)
            self.clear(session_id)
            return None
        return payload.get("text") or None

    def clear(self, session_id: str) -> None:
        try:
            self._path(session_id).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not clear draft for session %s: %s", session_id, exc)


class DraftDebouncer:
    """Stage drafts only after a pause in typing."""

    def __init__(
        self,
        cache: DraftCache,
        delay_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self.delay = settings.DRAFT_DEBOUNCE_SECONDS if delay_seconds is None else delay_seconds
        self._clock = clock
        self._pending: Dict[str, Tuple[str, float]] = {}

    def keystroke(self, session_id: str, text: str) -> None:
        self._pending[session_id] = (text, self._clock())

    def poll(self) -> int:
        """Stage every draft whose last keystroke is older than the delay."""
        now = self._clock()
        due = [sid for sid, (_, at) in self._pending.items() if now - at >= self.delay]
        staged = 0
        for sid in due:
            text, _ = self._pending.pop(sid)
            if self.cache.stage(sid, text):
                staged += 1
        return staged

    def cancel(self, session_id: str) -> None:
        """Drop a pending draft (called when the turn is submitted)."""
        self._pending.pop(session_id, None)
