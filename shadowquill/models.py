from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from flask_login import UserMixin
from werkzeug.security import check_password_hash, generate_password_hash

from .extensions import db, login_manager


CHAT_STAGES = ("world", "characters", "outline")


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    display_name = db.Column(db.String(120), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    stories = db.relationship("Story", backref="owner", lazy=True, cascade="all, delete-orphan")

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.display_name,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:  # pragma: no cover - repr for debugging
        return f"<User {self.email}>"


@login_manager.user_loader
def load_user(user_id: str) -> Optional["User"]:
    return db.session.get(User, int(user_id))


class Story(db.Model):
    __tablename__ = "stories"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(150), nullable=False)
    world_topic = db.Column(db.Text, nullable=True)
    world_description = db.Column(db.Text, nullable=True)
    character_profiles = db.Column(db.Text, nullable=True)
    num_characters = db.Column(db.Integer, nullable=True, default=3)
    outline_text = db.Column(db.Text, nullable=True)
    num_chapters = db.Column(db.Integer, nullable=True, default=10)
    mind_map_data = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    chapters = db.relationship(
        "Chapter",
        backref="story",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="Chapter.chapter_number",
    )
    transcripts = db.relationship(
        "ChatTranscript",
        backref="story",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="ChatTranscript.stage",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Story {self.title}>"


class Chapter(db.Model):
    __tablename__ = "chapters"

    id = db.Column(db.Integer, primary_key=True)
    story_id = db.Column(db.Integer, db.ForeignKey("stories.id"), nullable=False, index=True)
    chapter_number = db.Column(db.Integer, nullable=False)
    title = db.Column(db.String(255), nullable=False)
    content = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("story_id", "chapter_number", name="uq_chapter_story_number"),
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Chapter {self.chapter_number}: {self.title}>"


class ChatTranscript(db.Model):
    __tablename__ = "chat_transcripts"

    id = db.Column(db.Integer, primary_key=True)
    story_id = db.Column(db.Integer, db.ForeignKey("stories.id"), nullable=False, index=True)
    stage = db.Column(db.String(50), nullable=False)
    messages = db.Column(db.Text, nullable=False, default="[]")
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("story_id", "stage", name="uq_chat_transcript_stage"),
    )

    @property
    def messages_list(self) -> list[dict]:
        if not self.messages:
            return []
        try:
            data = json.loads(self.messages)
        except json.JSONDecodeError:
            return []
        return data if isinstance(data, list) else []

    def __repr__(self) -> str:  # pragma: no cover
        return f"<ChatTranscript {self.stage} for story {self.story_id}>"
