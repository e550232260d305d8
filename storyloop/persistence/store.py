"""
Session Persistence Adapter

Durable storage of the merged aggregate plus the transcript, keyed by
session id. Writes are last-write-wins for the whole session row; any
field-level merge has already happened in the reducer. Turn inserts are
idempotent by turn id, so a save retried after a failure never duplicates.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storyloop.engine.aggregate import AggregateState
from storyloop.engine.state import (
    CharacterInfo,
    CreativityLevel,
    Session,
    Speaker,
    StoryInfo,
    Turn,
)
from storyloop.persistence.models import (
    ApiUsageRow,
    Base,
    CharacterRow,
    MessageRow,
    StoryRow,
    StorySessionRow,
)
from storyloop.utils.api_client import UsageReport

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_session(row: StorySessionRow) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        story_id=row.story_id,
        player_character_id=row.player_character_id,
        creativity_level=CreativityLevel(row.creativity_level),
        state=AggregateState.from_blob(row.session_state),
        is_active=row.is_active,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _to_turn(row: MessageRow) -> Turn:
    return Turn(
        id=row.id,
        session_id=row.session_id,
        speaker=Speaker(row.message_type),
        content=row.content,
        metadata=dict(row.message_metadata or {}),
        created_at=_aware(row.created_at),
    )


class SessionStore:
    """SQLAlchemy-backed store for sessions, turns and usage records."""

    def __init__(self, database_url: Optional[str] = None, echo: Optional[bool] = None):
        from config import settings

        url = database_url or settings.DATABASE_URL
        kwargs = {"echo": settings.DATABASE_ECHO if echo is None else echo}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # one shared connection so every session sees the same memory DB
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(url, **kwargs)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)
        logger.info("SessionStore ready (%s)", self.engine.url.render_as_string(hide_password=True))

    # ============================================================
    # Story / character (read side, plus seeding helpers)
    # ============================================================

    def add_story(self, story: StoryInfo) -> StoryInfo:
        with self.Session.begin() as db:
            db.merge(
                StoryRow(
                    id=story.id,
                    title=story.title,
                    author=story.author,
                    description=story.description,
                    setting=story.setting,
                )
            )
        return story

    def add_character(self, character: CharacterInfo, story_id: Optional[str] = None) -> CharacterInfo:
        with self.Session.begin() as db:
            db.merge(
                CharacterRow(
                    id=character.id,
                    story_id=story_id,
                    name=character.name,
                    description=character.description,
                    personality_traits=list(character.personality_traits),
                    backstory=character.backstory,
                    appearance=character.appearance,
                )
            )
        return character

    def get_story(self, story_id: str) -> Optional[StoryInfo]:
        with self.Session() as db:
            row = db.get(StoryRow, story_id)
            if row is None:
                return None
            return StoryInfo(
                id=row.id,
                title=row.title,
                author=row.author,
                description=row.description,
                setting=row.setting,
            )

    def get_character(self, character_id: str) -> Optional[CharacterInfo]:
        with self.Session() as db:
            row = db.get(CharacterRow, character_id)
            if row is None:
                return None
            return CharacterInfo(
                id=row.id,
                name=row.name,
                description=row.description,
                personality_traits=list(row.personality_traits or []),
                backstory=row.backstory,
                appearance=row.appearance,
            )

    # ============================================================
    # Sessions
    # ============================================================

    def create_session(
        self,
        user_id: str,
        story_id: str,
        player_character_id: Optional[str] = None,
        creativity_level: CreativityLevel = CreativityLevel.BALANCED,
    ) -> Session:
        """Insert a fresh session row (tokens start at zero)."""
        now = datetime.now(timezone.utc)
        session = Session(
            id=str(uuid.uuid4()),
            user_id=user_id,
            story_id=story_id,
            player_character_id=player_character_id,
            creativity_level=creativity_level,
            state=AggregateState(),
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        with self.Session.begin() as db:
            db.add(
                StorySessionRow(
                    id=session.id,
                    user_id=user_id,
                    story_id=story_id,
                    player_character_id=player_character_id,
                    creativity_level=creativity_level.value,
                    session_state=session.state.to_blob(),
                    is_active=True,
                    created_at=now,
                    updated_at=now,
                )
            )
        logger.info("Created session %s for user %s (story %s)", session.id, user_id, story_id)
        return session

    def set_character(
        self, session_id: str, character_id: str, updated_at: Optional[datetime] = None
    ) -> bool:
        """Point the session at its player character; ``False`` if the write fails."""
        try:
            with self.Session.begin() as db:
                row = db.get(StorySessionRow, session_id)
                if row is None:
                    logger.error("Cannot set character on session %s: row does not exist", session_id)
                    return False
                row.player_character_id = character_id
                row.updated_at = updated_at or datetime.now(timezone.utc)
            return True
        except SQLAlchemyError as exc:
            logger.error("Failed to set character on session %s: %s", session_id, exc)
            return False

    def save(self, session: Session, new_turns: List[Turn]) -> bool:
        """Overwrite the session row and insert any turns not stored yet.

        Returns ``False`` (after logging) when the write fails; the caller's
        in-memory copy stays authoritative.
        """
        try:
            with self.Session.begin() as db:
                row = db.get(StorySessionRow, session.id)
                if row is None:
                    logger.error("Cannot save session %s: row does not exist", session.id)
                    return False
                row.player_character_id = session.player_character_id
                row.creativity_level = session.creativity_level.value
                row.session_state = session.state.to_blob()
                row.is_active = session.is_active
                row.updated_at = session.updated_at

                persistable = [t for t in new_turns if not t.ephemeral]
                if persistable:
                    ids = [t.id for t in persistable]
                    stored = set(
                        db.scalars(select(MessageRow.id).where(MessageRow.id.in_(ids))).all()
                    )
                    next_seq = db.scalar(
                        select(func.coalesce(func.max(MessageRow.sequence), 0)).where(
                            MessageRow.session_id == session.id
                        )
                    )
                    for turn in persistable:
                        if turn.id in stored:
                            continue
                        next_seq += 1
                        db.add(
                            MessageRow(
                                id=turn.id,
                                session_id=session.id,
                                sequence=next_seq,
                                message_type=turn.speaker.value,
                                content=turn.content,
                                message_metadata=turn.metadata or {},
                                created_at=turn.created_at,
                            )
                        )
            return True
        except SQLAlchemyError as exc:
            logger.error("Failed to save session %s: %s", session.id, exc)
            return False

    def load(self, session_id: str) -> Optional[Tuple[Session, List[Turn]]]:
        """Return the session and its turns in creation order, or ``None``."""
        with self.Session() as db:
            row = db.get(StorySessionRow, session_id)
            if row is None:
                return None
            messages = db.scalars(
                select(MessageRow)
                .where(MessageRow.session_id == session_id)
                .order_by(MessageRow.created_at, MessageRow.sequence)
            ).all()
            return _to_session(row), [_to_turn(m) for m in messages]

    def list_sessions(self, user_id: str, active_only: bool = False) -> List[Session]:
        with self.Session() as db:
            stmt = select(StorySessionRow).where(StorySessionRow.user_id == user_id)
            if active_only:
                stmt = stmt.where(StorySessionRow.is_active.is_(True))
            stmt = stmt.order_by(StorySessionRow.updated_at.desc())
            return [_to_session(r) for r in db.scalars(stmt).all()]

    # ============================================================
    # Usage accounting (side channel)
    # ============================================================

    def record_usage(
        self,
        user_id: str,
        session_id: str,
        operation_type: str,
        usage: UsageReport,
    ) -> None:
        """Insert an ``api_usage`` row. Failures are logged, never raised."""
        try:
            with self.Session.begin() as db:
                db.add(
                    ApiUsageRow(
                        user_id=user_id,
                        session_id=session_id,
                        operation_type=operation_type,
                        model_type=usage.model,
                        tokens_used=usage.total_tokens,
                        input_tokens=usage.input_tokens,
                        output_tokens=usage.output_tokens,
                        response_time_ms=usage.response_time_ms,
                        input_cost=usage.input_cost,
                        output_cost=usage.output_cost,
                        total_cost=usage.total_cost,
                    )
                )
        except SQLAlchemyError as exc:
            logger.warning("Error tracking API usage for session %s: %s", session_id, exc)

    def usage_for_session(self, session_id: str) -> List[ApiUsageRow]:
        with self.Session() as db:
            return list(
                db.scalars(
                    select(ApiUsageRow).where(ApiUsageRow.session_id == session_id).order_by(ApiUsageRow.id)
                ).all()
            )
