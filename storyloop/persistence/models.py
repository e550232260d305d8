"""
Persistence ORM Models

Row layout for the durable store: one ``story_sessions`` row per playthrough
(aggregate state kept as a JSON blob), one ``messages`` row per transcript
turn, and one ``api_usage`` row per collaborator call. ``stories`` and
``characters`` are read by the engine but authored elsewhere.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class StoryRow(Base):
    """Source work a session is played in"""

    __tablename__ = "stories"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    title: Mapped[str] = mapped_column(String, nullable=False)
    author: Mapped[str] = mapped_column(String, nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    setting: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class CharacterRow(Base):
    """Player character created for a story"""

    __tablename__ = "characters"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    story_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("stories.id", ondelete="CASCADE"), nullable=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    personality_traits: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    backstory: Mapped[str] = mapped_column(Text, nullable=False, default="")
    appearance: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class StorySessionRow(Base):
    """A user's playthrough of a story"""

    __tablename__ = "story_sessions"
    __table_args__ = (
        Index("ix_story_sessions_user_id", "user_id"),
        Index("idx_story_sessions_user_story", "user_id", "story_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    story_id: Mapped[str] = mapped_column(String, ForeignKey("stories.id", ondelete="CASCADE"), nullable=False)
    player_character_id: Mapped[Optional[str]] = mapped_column(
        String, ForeignKey("characters.id", ondelete="SET NULL"), nullable=True
    )
    creativity_level: Mapped[str] = mapped_column(String, nullable=False, default="balanced")

    # AggregateState blob
    session_state: Mapped[dict] = mapped_column(JSON, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    messages: Mapped[list["MessageRow"]] = relationship(
        "MessageRow", back_populates="session", cascade="all, delete-orphan", order_by="MessageRow.sequence"
    )


class MessageRow(Base):
    """One transcript turn; never updated after insert"""

    __tablename__ = "messages"
    __table_args__ = (Index("idx_messages_session_sequence", "session_id", "sequence"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    session_id: Mapped[str] = mapped_column(String, ForeignKey("story_sessions.id", ondelete="CASCADE"), nullable=False)
    # insertion order within the session; breaks created_at ties
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    message_type: Mapped[str] = mapped_column(String, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    # column name 'metadata' is reserved on declarative classes
    message_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    session: Mapped["StorySessionRow"] = relationship("StorySessionRow", back_populates="messages")


class ApiUsageRow(Base):
    """Accounting record for one collaborator call (reporting only)"""

    __tablename__ = "api_usage"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    session_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    api_provider: Mapped[str] = mapped_column(String, nullable=False, default="openai")
    operation_type: Mapped[str] = mapped_column(String, nullable=False)
    model_type: Mapped[str] = mapped_column(String, nullable=False, default="")
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    response_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    input_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    output_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
