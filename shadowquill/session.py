"""Request-scoped access to the signed-in user's active story."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from flask import abort, session
from flask_login import current_user

from .extensions import db
from .models import Story, User

ACTIVE_STORY_KEY = "active_story_id"


@dataclass
class StorySession:
    """The user and story a request operates on.

    Built per request and passed to whatever needs it; the only state that
    outlives the request is the active story id kept in the Flask session.
    """

    user: User
    story: Optional[Story] = None

    @property
    def story_id(self) -> Optional[int]:
        return self.story.id if self.story is not None else None

    @classmethod
    def current(cls) -> "StorySession":
        """The signed-in user with the remembered active story, if it is still theirs."""

        user = _require_user()
        story = None
        remembered = session.get(ACTIVE_STORY_KEY)
        if remembered is not None:
            story = _owned_story(user, remembered)
            if story is None:
                session.pop(ACTIVE_STORY_KEY, None)
        return cls(user=user, story=story)

    @classmethod
    def for_story(cls, story_id: Any, *, activate: bool = False) -> "StorySession":
        """Resolve ``story_id`` for the signed-in user; 404 when missing or not owned."""

        user = _require_user()
        story = _owned_story(user, story_id)
        if story is None:
            abort(404)
        story_session = cls(user=user, story=story)
        if activate:
            story_session.activate()
        return story_session

    def activate(self) -> None:
        if self.story is not None:
            session[ACTIVE_STORY_KEY] = self.story.id

    def clear(self) -> None:
        session.pop(ACTIVE_STORY_KEY, None)
        self.story = None

    def require_story(self) -> Story:
        if self.story is None:
            abort(404)
        return self.story


def _require_user() -> User:
    if not current_user.is_authenticated:
        abort(401)
    return current_user._get_current_object()


def _owned_story(user: User, story_id: Any) -> Optional[Story]:
    try:
        identifier = int(story_id)
    except (TypeError, ValueError):
        return None
    story = db.session.get(Story, identifier)
    if story is None or story.owner_id != user.id:
        return None
    return story


__all__ = ["ACTIVE_STORY_KEY", "StorySession"]
