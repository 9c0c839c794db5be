"""Persistence helpers shared by the story pages and the JSON API."""

from __future__ import annotations

import json
import time
from typing import Any, Dict, List, Optional

from flask import current_app

from ..extensions import db
from ..models import CHAT_STAGES, Chapter, ChatTranscript, Story, User
from ..services.generation import GenerationError, normalize_messages
from ..services.manuscript import ManuscriptStorage
from ..services.stage_generation import MAX_CHAPTERS, MAX_CHARACTERS, StageGenerationError, coerce_count


class StoryDataError(RuntimeError):
    """Raised when a story update request is invalid."""


_MISSING = object()


def manuscript_storage() -> ManuscriptStorage:
    return ManuscriptStorage(current_app.config["STORY_OUTPUT_DIR"])


def default_story_title() -> str:
    return f"Untitled Story {int(time.time() * 1000)}"


def create_story(owner: User, title: Optional[str]) -> Story:
    cleaned = title.strip() if isinstance(title, str) else ""
    story = Story(
        title=cleaned or default_story_title(),
        owner=owner,
        num_characters=current_app.config.get("DEFAULT_NUM_CHARACTERS", 3),
        num_chapters=current_app.config.get("DEFAULT_NUM_CHAPTERS", 10),
    )
    db.session.add(story)
    db.session.commit()
    current_app.logger.info("Created story %s for user %s", story.id, owner.id)
    return story


def rename_story(story: Story, title: Any) -> Story:
    if not isinstance(title, str) or not title.strip():
        raise StoryDataError("A non-empty title is required.")
    story.title = title.strip()[:150]
    db.session.commit()
    return story


def delete_story(story: Story) -> None:
    story_id = story.id
    db.session.delete(story)
    db.session.commit()
    # Files are secondary to the database row; a leftover directory is only logged.
    manuscript_storage().delete_story_dir(story_id)
    current_app.logger.info("Deleted story %s", story_id)


def world_data(story: Story) -> Dict[str, Any]:
    return {"topic": story.world_topic, "description": story.world_description}


def update_world(story: Story, payload: Dict[str, Any]) -> None:
    topic = payload.get("topic", _MISSING)
    description = payload.get("description", _MISSING)
    if topic is _MISSING and description is _MISSING:
        raise StoryDataError("Missing data to update (topic or description).")
    if topic is not _MISSING:
        story.world_topic = _optional_text(topic, "topic")
    if description is not _MISSING:
        story.world_description = _optional_text(description, "description")
    db.session.commit()


def character_data(story: Story) -> Dict[str, Any]:
    return {"profiles": story.character_profiles, "numCharacters": story.num_characters}


def update_characters(story: Story, payload: Dict[str, Any]) -> None:
    profiles = payload.get("profiles", _MISSING)
    count = payload.get("numCharacters", _MISSING)
    if profiles is _MISSING and count is _MISSING:
        raise StoryDataError("Missing data to update (profiles or numCharacters).")
    if profiles is not _MISSING:
        story.character_profiles = _optional_text(profiles, "profiles")
    if count is not _MISSING:
        story.num_characters = _count(count, "numCharacters", MAX_CHARACTERS)
    db.session.commit()


def outline_data(story: Story) -> Dict[str, Any]:
    return {"outline": story.outline_text, "numChapters": story.num_chapters}


def update_outline(story: Story, payload: Dict[str, Any]) -> None:
    outline = payload.get("outline", _MISSING)
    count = payload.get("numChapters", _MISSING)
    if outline is _MISSING and count is _MISSING:
        raise StoryDataError("Missing data to update (outline or numChapters).")
    if outline is not _MISSING:
        story.outline_text = _optional_text(outline, "outline")
    if count is not _MISSING:
        story.num_chapters = _count(count, "numChapters", MAX_CHAPTERS)
    db.session.commit()


def get_chapter(story: Story, chapter_number: int) -> Optional[Chapter]:
    return Chapter.query.filter_by(story_id=story.id, chapter_number=chapter_number).first()


def save_chapter(
    story: Story,
    chapter_number: int,
    *,
    content: Any = _MISSING,
    title: Any = _MISSING,
) -> Chapter:
    """Create or update one chapter; at least one of ``content``/``title`` is required."""

    if content is _MISSING and title is _MISSING:
        raise StoryDataError("Missing data to update (content or title).")

    chapter = get_chapter(story, chapter_number)
    if chapter is None:
        chapter = Chapter(story=story, chapter_number=chapter_number, title=f"Chapter {chapter_number}")
        db.session.add(chapter)
    if title is not _MISSING:
        cleaned = _optional_text(title, "title")
        chapter.title = (cleaned or "").strip() or f"Chapter {chapter_number}"
    if content is not _MISSING:
        chapter.content = _optional_text(content, "content")
    db.session.commit()
    return chapter


def get_transcript(story: Story, stage: str) -> List[Dict[str, str]]:
    _check_stage(stage)
    transcript = ChatTranscript.query.filter_by(story_id=story.id, stage=stage).first()
    return transcript.messages_list if transcript else []


def save_transcript(story: Story, stage: str, raw_messages: Any) -> List[Dict[str, str]]:
    _check_stage(stage)
    if raw_messages is None:
        raise StoryDataError("Missing messages to save.")
    try:
        messages = normalize_messages(raw_messages)
    except GenerationError as exc:
        raise StoryDataError(str(exc)) from exc

    transcript = ChatTranscript.query.filter_by(story_id=story.id, stage=stage).first()
    if transcript is None:
        transcript = ChatTranscript(story=story, stage=stage)
        db.session.add(transcript)
    transcript.messages = json.dumps(messages)
    db.session.commit()
    return messages


def _check_stage(stage: str) -> None:
    if stage not in CHAT_STAGES:
        raise StoryDataError(f"Unknown chat stage '{stage}'.")


def _optional_text(value: Any, field_name: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise StoryDataError(f"'{field_name}' must be a string.")
    return value


def _count(value: Any, label: str, maximum: int) -> Optional[int]:
    if value is None:
        return None
    try:
        return coerce_count(value, default=1, maximum=maximum, label=label)
    except StageGenerationError as exc:
        raise StoryDataError(str(exc)) from exc


__all__ = [
    "StoryDataError",
    "character_data",
    "create_story",
    "default_story_title",
    "delete_story",
    "get_chapter",
    "get_transcript",
    "manuscript_storage",
    "outline_data",
    "rename_story",
    "save_chapter",
    "save_transcript",
    "update_characters",
    "update_outline",
    "update_world",
    "world_data",
]
