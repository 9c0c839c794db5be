from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from flask import current_app

from .generation import (
    GenerationError,
    GenerationStream,
    format_chat_history,
    normalize_messages,
    stream_prompt,
)
from .outline_parser import OutlineChapter


class StageGenerationError(RuntimeError):
    """Raised when a stage request is missing the context it needs."""


DEFAULT_TOPIC = "their book"
FIRST_CHAPTER_CONTEXT = "This is the first chapter."
SCENE_START_CONTEXT = "Start of the chapter."
MAX_CHAPTERS = 100
MAX_CHARACTERS = 30

STAGE_PROMPT_KEYS: Dict[str, str] = {
    "world_chat": "world_chat",
    "world_finalize": "world_finalize",
    "characters_chat": "character_chat",
    "characters_finalize": "character_finalize",
    "outline_chat": "outline_chat",
    "outline_finalize": "outline_finalize",
    "chapter": "chapter_generate",
    "scene": "scene_generate",
}


def stream_world_chat(messages: Any, topic: Optional[str] = None) -> GenerationStream:
    history = _chat_messages(messages)
    topic_text = _clean(topic) or DEFAULT_TOPIC
    return _stream(
        "world_chat",
        {"topic": topic_text},
        messages=history,
        fallback=lambda: _fallback_world_chat(topic_text, history),
    )


def stream_world_finalize(
    messages: Any,
    topic: Optional[str] = None,
    *,
    on_complete: Optional[Callable[[str], None]] = None,
) -> GenerationStream:
    history = _history(messages)
    topic_text = _clean(topic) or DEFAULT_TOPIC
    return _stream(
        "world_finalize",
        {"topic": topic_text, "chatHistory": format_chat_history(history)},
        fallback=lambda: _fallback_world_document(topic_text, history),
        on_complete=on_complete,
    )


def stream_character_chat(messages: Any, world_context: Optional[str]) -> GenerationStream:
    history = _chat_messages(messages)
    world = _require(world_context, "World context is required for character creation.")
    return _stream(
        "characters_chat",
        {"worldContext": world},
        messages=history,
        fallback=lambda: _fallback_character_chat(history),
    )


def stream_character_finalize(
    messages: Any,
    world_context: Optional[str],
    num_characters: Any = None,
    *,
    on_complete: Optional[Callable[[str], None]] = None,
) -> GenerationStream:
    history = _history(messages)
    world = _require(world_context, "World context is required to finalize characters.")
    count = coerce_count(
        num_characters,
        default=current_app.config.get("DEFAULT_NUM_CHARACTERS", 3),
        maximum=MAX_CHARACTERS,
        label="numCharacters",
    )
    return _stream(
        "characters_finalize",
        {
            "worldContext": world,
            "chatHistory": format_chat_history(history),
            "numCharacters": count,
        },
        fallback=lambda: _fallback_character_profiles(count, history),
        on_complete=on_complete,
    )


def stream_outline_chat(
    messages: Any,
    world_context: Optional[str],
    character_context: Optional[str],
    num_chapters: Any = None,
) -> GenerationStream:
    history = _chat_messages(messages)
    world, characters = _outline_context(
        world_context,
        character_context,
        "World and character context are required for outline chat.",
    )
    count = _chapter_count(num_chapters)
    return _stream(
        "outline_chat",
        {"worldContext": world, "characterContext": characters, "numChapters": count},
        messages=history,
        fallback=lambda: _fallback_outline_chat(count),
    )


def stream_outline_finalize(
    messages: Any,
    world_context: Optional[str],
    character_context: Optional[str],
    num_chapters: Any = None,
    *,
    on_complete: Optional[Callable[[str], None]] = None,
) -> GenerationStream:
    history = _history(messages)
    world, characters = _outline_context(
        world_context,
        character_context,
        "World and character context are required to finalize the outline.",
    )
    count = _chapter_count(num_chapters)
    return _stream(
        "outline_finalize",
        {
            "worldContext": world,
            "characterContext": characters,
            "chatHistory": format_chat_history(history),
            "numChapters": count,
        },
        fallback=lambda: fallback_outline(count, history),
        on_complete=on_complete,
    )


def stream_chapter(
    payload: Dict[str, Any],
    *,
    on_complete: Optional[Callable[[str], None]] = None,
) -> GenerationStream:
    """Stream a full chapter draft.

    ``payload`` uses the browser's field names (``worldContext``,
    ``chapterNumber`` ...). ``previousChapterContext``, ``mindMapContext`` and
    ``chapterScenes`` are optional.
    """

    values = _chapter_values(payload, "Missing required context or chapter details for generation.")
    values["previousChapterContext"] = _clean(payload.get("previousChapterContext")) or FIRST_CHAPTER_CONTEXT
    values["chapterScenes"] = _clean(payload.get("chapterScenes")) or "No pre-defined scenes."
    return _stream(
        "chapter",
        values,
        fallback=lambda: _fallback_chapter(values),
        label=f"chapter {values['chapterNumber']}",
        on_complete=on_complete,
    )


def stream_scene(payload: Dict[str, Any]) -> GenerationStream:
    values = _chapter_values(payload, "Missing required context or scene details for generation.")
    values["sceneDescription"] = _require(
        payload.get("sceneDescription"),
        "Missing required context or scene details for generation.",
    )
    values["previousContext"] = _clean(payload.get("previousContext")) or SCENE_START_CONTEXT
    return _stream(
        "scene",
        values,
        fallback=lambda: _fallback_scene(values),
        label=f"scene in chapter {values['chapterNumber']}",
    )


def coerce_count(value: Any, *, default: int, maximum: int, label: str) -> int:
    if value is None or value == "":
        return int(default)
    if isinstance(value, bool):
        raise StageGenerationError(f"{label} must be a whole number.")
    try:
        count = int(value)
    except (TypeError, ValueError) as exc:
        raise StageGenerationError(f"{label} must be a whole number.") from exc
    if isinstance(value, float) and value != count:
        raise StageGenerationError(f"{label} must be a whole number.")
    if count < 1 or count > maximum:
        raise StageGenerationError(f"{label} must be between 1 and {maximum}.")
    return count


def chapter_context(chapter: OutlineChapter) -> str:
    """Condensed focus text for a parsed chapter, used when none is supplied."""

    parts: List[str] = []
    if chapter.summary:
        parts.append(chapter.summary)
    if chapter.key_events:
        parts.append("Key events:\n" + "\n".join(f"- {event}" for event in chapter.key_events))
    if chapter.ending_hook:
        parts.append(f"Ending hook: {chapter.ending_hook}")
    return "\n\n".join(parts) or chapter.raw_content.strip()


def _stream(
    stage: str,
    values: Dict[str, Any],
    *,
    fallback: Callable[[], str],
    messages: Optional[List[Dict[str, str]]] = None,
    label: Optional[str] = None,
    on_complete: Optional[Callable[[str], None]] = None,
) -> GenerationStream:
    try:
        return stream_prompt(
            STAGE_PROMPT_KEYS[stage],
            values,
            messages=messages,
            fallback=fallback,
            label=label or stage.replace("_", " "),
            on_complete=on_complete,
        )
    except GenerationError:
        raise
    except Exception as exc:
        current_app.logger.warning("Unable to start %s generation: %s", stage, exc)
        raise GenerationError(f"The text generator failed: {exc}") from exc


def _chat_messages(raw: Any) -> List[Dict[str, str]]:
    if raw is None:
        raise StageGenerationError("Send a message to start the conversation.")
    history = _history(raw)
    if not any(message["role"] == "user" for message in history):
        raise StageGenerationError("Send a message to start the conversation.")
    return history


def _history(raw: Any) -> List[Dict[str, str]]:
    try:
        return normalize_messages(raw)
    except GenerationError as exc:
        raise StageGenerationError(str(exc)) from exc


def _outline_context(world_context: Any, character_context: Any, message: str) -> tuple[str, str]:
    world = _clean(world_context)
    characters = _clean(character_context)
    if not world or not characters:
        raise StageGenerationError(message)
    return world, characters


def _chapter_count(value: Any) -> int:
    return coerce_count(
        value,
        default=current_app.config.get("DEFAULT_NUM_CHAPTERS", 10),
        maximum=MAX_CHAPTERS,
        label="numChapters",
    )


def _chapter_values(payload: Dict[str, Any], message: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise StageGenerationError(message)
    values: Dict[str, Any] = {}
    for key in ("worldContext", "characterContext", "outlineContext", "chapterTitle", "chapterOutline"):
        values[key] = _require(payload.get(key), message)

    number = payload.get("chapterNumber")
    if isinstance(number, bool) or number in (None, "", 0):
        raise StageGenerationError(message)
    try:
        values["chapterNumber"] = int(number)
    except (TypeError, ValueError) as exc:
        raise StageGenerationError("chapterNumber must be a whole number.") from exc

    values["mindMapContext"] = _clean(payload.get("mindMapContext")) or "No mind map provided."
    return values


def _require(value: Any, message: str) -> str:
    cleaned = _clean(value)
    if not cleaned:
        raise StageGenerationError(message)
    return cleaned


def _clean(value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        value = str(value)
    return value.strip()


def _last_user_message(history: List[Dict[str, str]]) -> str:
    for message in reversed(history):
        if message["role"] == "user" and message["content"].strip():
            return message["content"].strip()
    return ""


def _user_notes(history: List[Dict[str, str]]) -> List[str]:
    return [message["content"].strip() for message in history if message["role"] == "user" and message["content"].strip()]


def _fallback_world_chat(topic: str, history: List[Dict[str, str]]) -> str:
    latest = _last_user_message(history)
    return (
        f"Let's keep building the world for {topic}.\n\n"
        f"You mentioned: \"{latest}\". A few directions to explore next:\n"
        "1. Geography: which landscape shapes daily life the most, and what makes it dangerous?\n"
        "2. Culture: what custom would surprise an outsider on their first day?\n"
        "3. Power: who holds authority, and who quietly resists it?\n"
        "4. History: which old event still divides people today?\n\n"
        "Answer whichever feels most alive and we'll go deeper. Say when you're ready to finalize."
    )


def _fallback_world_document(topic: str, history: List[Dict[str, str]]) -> str:
    notes = _user_notes(history)
    established = "\n".join(f"- {note}" for note in notes) or "- [Further detail needed on the core premise]"
    return (
        f"# World Setting for {topic}\n\n"
        "## Established Ideas\n"
        f"{established}\n\n"
        "## Geography\n"
        "- [Further detail needed on major regions and the terrain that connects them]\n\n"
        "## Culture & Society\n"
        "- [Further detail needed on customs, beliefs and everyday life]\n\n"
        "## History\n"
        "- [Further detail needed on the founding events and the conflicts they left behind]\n\n"
        "## Factions\n"
        "- [Further detail needed on who competes for power and why]\n\n"
        "## Atmosphere\n"
        "- [Further detail needed on the tone a reader should feel on arrival]"
    )


def _fallback_character_chat(history: List[Dict[str, str]]) -> str:
    latest = _last_user_message(history)
    return (
        f"That gives us something to work with: \"{latest}\".\n\n"
        "To make this character feel grounded in your world, consider:\n"
        "1. What do they want badly enough to break a rule for it?\n"
        "2. Which faction or place shaped them, and do they still belong there?\n"
        "3. Who do they trust, and who would they never turn their back on?\n"
        "4. What secret would change how the others see them?\n\n"
        "Tell me more, or introduce the next character."
    )


def _fallback_character_profiles(count: int, history: List[Dict[str, str]]) -> str:
    notes = _user_notes(history)
    roles = ["Protagonist", "Antagonist", "Mentor", "Ally", "Rival", "Wildcard"]
    profiles = []
    for index in range(count):
        role = roles[index] if index < len(roles) else "Supporting Character"
        seed = notes[index] if index < len(notes) else "[Further detail needed]"
        profiles.append(
            f"## Character {index + 1}\n\n"
            f"* **Role:** {role}\n"
            f"* **Concept:** {seed}\n"
            "* **Personality:** [Core traits, strengths and flaws]\n"
            "* **Background/History:** [Formative events and secrets]\n"
            "* **Motivations/Goals:** [What drives them in this story]\n"
            "* **Relationships:** [Connections to the rest of the cast]\n"
            "* **Potential Arc:** [How they change by the final chapter]"
        )
    return "\n\n".join(profiles)


def _fallback_outline_chat(count: int) -> str:
    return (
        f"Let's shape the arc across {count} chapters.\n\n"
        "1. Opening: what ordinary moment does the story disrupt, and how quickly?\n"
        "2. Midpoint: what revelation forces the protagonist to change tactics?\n"
        "3. Crisis: which relationship breaks under pressure?\n"
        "4. Climax and resolution: what does winning cost?\n\n"
        "Share your thoughts on any of these and we can place them in specific chapters."
    )


def fallback_outline(count: int, history: Optional[List[Dict[str, str]]] = None) -> str:
    """A placeholder outline in the finalized chapter format."""

    notes = _user_notes(history or [])
    acts = ("Setup", "Rising Action", "Confrontation", "Resolution")
    chapters = []
    for number in range(1, count + 1):
        act = acts[min(len(acts) - 1, (number - 1) * len(acts) // count)]
        idea = notes[number - 1] if number - 1 < len(notes) else "[Further detail needed]"
        chapters.append(
            f"## Chapter {number}: {act} {number}\n\n"
            f"* **Summary:** {act} beat for chapter {number}. {idea}\n"
            "* **Key Events:**\n"
            "    * [Opening event that changes the situation]\n"
            "    * [Complication that raises the stakes]\n"
            "* **Character Development:**\n"
            "    * [Character]: [Decision or realization]\n"
            "* **Setting/Atmosphere:** [Location and mood]\n"
            "* **Themes Explored:** [Theme]\n"
            "* **Setup/Foreshadowing:** [Hint at later events]\n"
            "* **Ending Hook:** [Reason to keep reading]"
        )
    return "\n\n".join(chapters)


def _fallback_chapter(values: Dict[str, Any]) -> str:
    return (
        f"# Chapter {values['chapterNumber']}: {values['chapterTitle']}\n\n"
        "[Draft scaffold: no text generator is configured.]\n\n"
        "Chapter focus:\n"
        f"{values['chapterOutline']}\n\n"
        "Picking up from the previous chapter:\n"
        f"{values['previousChapterContext']}\n\n"
        "Scenes to weave in:\n"
        f"{values['chapterScenes']}"
    )


def _fallback_scene(values: Dict[str, Any]) -> str:
    return (
        f"[Scene draft for Chapter {values['chapterNumber']}: {values['chapterTitle']}]\n\n"
        f"Goal: {values['sceneDescription']}\n\n"
        f"Leading in from: {values['previousContext']}\n\n"
        "Open on a concrete sensory detail, let the conflict surface through dialogue, "
        "and close on a change that pushes the chapter forward."
    )


__all__ = [
    "StageGenerationError",
    "chapter_context",
    "coerce_count",
    "fallback_outline",
    "stream_chapter",
    "stream_character_chat",
    "stream_character_finalize",
    "stream_outline_chat",
    "stream_outline_finalize",
    "stream_scene",
    "stream_world_chat",
    "stream_world_finalize",
]
