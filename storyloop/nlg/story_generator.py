"""Story generation via OpenAI chat completions.

``StoryGenerator`` is the engine's language-model collaborator. It renders
prompts from story/character context and the current aggregate, calls the
shared ``llm_client`` singleton in JSON mode, and hands back a
:class:`~storyloop.engine.delta.Delta` with the call's usage attached.
Every failure surfaces as :class:`CollaboratorError`.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from storyloop.engine.aggregate import MemoryEvent, Relationship, WorldState
from storyloop.engine.delta import Delta
from storyloop.engine.errors import CollaboratorError
from storyloop.engine.state import CharacterInfo, CreativityLevel, StoryInfo
from storyloop.nlg.content_cleaner import clean_story_content
from storyloop.nlg.prompt_templates import (
    CREATIVITY_NOTES,
    OPENING_PROMPT,
    STORY_CONTINUE_PROMPT,
    SUMMARY_PROMPT,
    SYSTEM_PROMPT,
)
from storyloop.utils.api_client import UsageReport, llm_client

logger = logging.getLogger(__name__)


def _format_world(world: WorldState) -> str:
    lines = [
        f"Location: {world.current_location or 'unknown'}",
        f"Time of day: {world.time_of_day or 'unknown'}",
        f"Mood: {world.mood_atmosphere or 'unknown'}",
        f"Present: {', '.join(world.present_npcs) or 'nobody'}",
    ]
    return "\n".join(lines)


def _format_memories(events: List[MemoryEvent], limit: int = 20) -> str:
    if not events:
        return "(none yet)"
    # high-importance memories first, then the most recent
    ranked = sorted(events, key=lambda e: (e.importance.value != "high", -e.timestamp.timestamp()))
    return "\n".join(f"- [{e.importance.value}] {e.description}" for e in ranked[:limit])


def _format_relationships(relationships: Dict[str, Relationship]) -> str:
    if not relationships:
        return "(none yet)"
    lines = []
    for name, rel in relationships.items():
        kind = rel.relationship_type or "unknown"
        note = f" — {rel.notes}" if rel.notes else ""
        lines.append(f"- {name}: {kind}, trust {rel.trust_level}/100{note}")
    return "\n".join(lines)


class StoryGenerator:
    """LLM-powered narrator and summariser for one story session."""

    def _system_message(
        self, story: StoryInfo, character: CharacterInfo, creativity: CreativityLevel
    ) -> Dict[str, str]:
        content = SYSTEM_PROMPT.format(
            title=story.title,
            author=story.author or "an unknown author",
            character_name=character.name,
            character_description=character.description or "",
            personality=", ".join(character.personality_traits) or "unspecified",
            backstory=character.backstory or "unspecified",
            creativity_rank=creativity.rank,
            creativity_note=CREATIVITY_NOTES[creativity.rank],
        )
        return {"role": "system", "content": content}

    def _temperature(self, creativity: CreativityLevel) -> Optional[float]:
        from config import settings

        return settings.CREATIVITY_TEMPERATURES.get(creativity.value)

    def _narrate(
        self, messages: List[Dict[str, str]], creativity: CreativityLevel
    ) -> Delta:
        data, usage = llm_client.chat_json(messages, temperature=self._temperature(creativity))
        delta = Delta.from_payload(data, usage)
        delta.narration = clean_story_content(delta.narration)
        if not delta.narration:
            raise CollaboratorError("LLM response carried no narration")
        return delta

    def generate_opening(
        self,
        story: StoryInfo,
        character: CharacterInfo,
        creativity: CreativityLevel = CreativityLevel.BALANCED,
    ) -> Delta:
        """Generate the opening scene from story and character context only."""
        user_msg = OPENING_PROMPT.format(
            setting=story.setting or "as in the original work",
            description=story.description or "",
            character_name=character.name,
        )
        messages = [
            self._system_message(story, character, creativity),
            {"role": "user", "content": user_msg},
        ]
        return self._narrate(messages, creativity)

    def continue_story(
        self,
        story: StoryInfo,
        character: CharacterInfo,
        history: List[Dict[str, str]],
        user_text: str,
        creativity: CreativityLevel,
        memory_events: List[MemoryEvent],
        world_state: WorldState,
        relationships: Dict[str, Relationship],
    ) -> Delta:
        """Continue the story from the full history plus the player's new line."""
        user_msg = STORY_CONTINUE_PROMPT.format(
            world_state=_format_world(world_state),
            memories=_format_memories(memory_events),
            relationships=_format_relationships(relationships),
            player_input=user_text,
        )
        messages = [self._system_message(story, character, creativity)]
        messages.extend(history)
        messages.append({"role": "user", "content": user_msg})
        return self._narrate(messages, creativity)

    def generate_summary(
        self,
        story: StoryInfo,
        character: CharacterInfo,
        history: List[Dict[str, str]],
        memory_events: List[MemoryEvent],
    ) -> Tuple[str, UsageReport]:
        """Return an epilogue for a finished session and the call's usage."""
        user_msg = SUMMARY_PROMPT.format(
            character_name=character.name,
            title=story.title,
            memories=_format_memories(memory_events, limit=50),
        )
        messages = [{"role": "system", "content": "You write concise literary epilogues."}]
        messages.extend(history)
        messages.append({"role": "user", "content": user_msg})
        data, usage = llm_client.chat_json(messages, temperature=0.7)
        summary = data.get("summary")
        summary = clean_story_content(summary) if isinstance(summary, str) else ""
        if not summary:
            raise CollaboratorError("LLM response carried no summary")
        return summary, usage
