"""Transcript export to plain text, Markdown or JSON."""
from __future__ import annotations

import json
from typing import List, Optional

from storyloop.engine.state import CharacterInfo, Session, Speaker, StoryInfo, Turn

FORMATS = ("text", "markdown", "json")


def _speaker_label(turn: Turn, character: Optional[CharacterInfo]) -> str:
    if turn.speaker is Speaker.USER:
        return character.name if character else "You"
    if turn.speaker is Speaker.SYSTEM:
        return "System"
    return "Narrator"


def export_transcript(
    session: Session,
    turns: List[Turn],
    story: StoryInfo,
    character: Optional[CharacterInfo],
    fmt: str = "markdown",
) -> str:
    """Render a session for download. Ephemeral turns are left out."""
    if fmt not in FORMATS:
        raise ValueError(f"Unknown export format {fmt!r}; expected one of {FORMATS}")
    kept = [t for t in turns if not t.ephemeral]
    state = session.state
    key_moments = [e.description for e in state.high_importance_events()]

    if fmt == "json":
        return json.dumps(
            {
                "session_id": session.id,
                "story": {"id": story.id, "title": story.title, "author": story.author},
                "character": character.name if character else None,
                "creativity_level": session.creativity_level.value,
                "completed": session.completed,
                "completion_summary": state.completion_summary,
                "context_tokens_used": state.context_tokens_used,
                "key_moments": key_moments,
                "turns": [
                    {
                        "speaker": t.speaker.value,
                        "content": t.content,
                        "created_at": t.created_at.isoformat(),
                    }
                    for t in kept
                ],
            },
            indent=2,
            ensure_ascii=False,
        )

    md = fmt == "markdown"
    lines: List[str] = []
    title = f"{story.title}" + (f" by {story.author}" if story.author else "")
    lines.append(f"# {title}" if md else title)
    if character:
        lines.append(f"_Played as {character.name}_" if md else f"Played as {character.name}")
    lines.append("")

    for turn in kept:
        label = _speaker_label(turn, character)
        lines.append(f"**{label}:** {turn.content}" if md else f"{label}: {turn.content}")
        lines.append("")

    if key_moments:
        lines.append("## Key moments" if md else "Key moments")
        lines.extend(f"- {m}" for m in key_moments)
        lines.append("")
    if state.completion_summary:
        lines.append("## Epilogue" if md else "Epilogue")
        lines.append(state.completion_summary)
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"
