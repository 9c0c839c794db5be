"""Manuscript files on disk and the compiled Markdown book."""
from __future__ import annotations

import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Union

LOGGER = logging.getLogger(__name__)

CHAPTER_FILE_PREFIX = "chapter_"
CHAPTERS_SUBDIR = "chapters"
NO_CONTENT_PLACEHOLDER = "*(No content)*"

_UNSAFE_DIR_CHARS = re.compile(r"[^a-zA-Z0-9_-]")
_UNSAFE_TITLE_CHARS = re.compile(r"[^a-z0-9]", re.IGNORECASE)


class ManuscriptError(RuntimeError):
    """Raised when a manuscript file cannot be stored or read."""


def _clean(value: Optional[str]) -> str:
    if not value:
        return ""
    return str(value).strip()


def chapter_filename(chapter_number: int) -> str:
    return f"{CHAPTER_FILE_PREFIX}{int(chapter_number)}.md"


class ManuscriptStorage:
    """Per-story directories under ``root``.

    Chapter files (``chapter_<n>.md``) live in a ``chapters/`` subdirectory;
    every other file sits at the top of the story directory. Filenames must
    be bare basenames.
    """

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)

    def story_dir(self, story_id: Union[int, str]) -> Path:
        safe_id = _UNSAFE_DIR_CHARS.sub("_", str(story_id))
        if not safe_id:
            raise ManuscriptError("Invalid story identifier.")
        return self.root / safe_id

    def create_story_dir(self, story_id: Union[int, str]) -> tuple[Path, bool]:
        """Create the story directory; the flag is ``False`` when it already existed."""

        directory = self.story_dir(story_id)
        existed = directory.is_dir()
        try:
            (directory / CHAPTERS_SUBDIR).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ManuscriptError(f"Failed to create story directory: {exc}") from exc
        return directory, not existed

    def path_for(self, story_id: Union[int, str], filename: Optional[str]) -> Path:
        name = filename or ""
        if not name or os.path.basename(name) != name or name in (".", ".."):
            raise ManuscriptError("Invalid filename.")
        directory = self.story_dir(story_id)
        if name.startswith(CHAPTER_FILE_PREFIX):
            return directory / CHAPTERS_SUBDIR / name
        return directory / name

    def save(self, story_id: Union[int, str], filename: Optional[str], content: str) -> Path:
        path = self.path_for(story_id, filename)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise ManuscriptError(f"Failed to save file: {exc}") from exc
        LOGGER.info("Saved manuscript file %s", path)
        return path

    def read(self, story_id: Union[int, str], filename: Optional[str]) -> str:
        """Return the file's text, or an empty string when it does not exist."""

        path = self.path_for(story_id, filename)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except OSError as exc:
            raise ManuscriptError(f"Failed to read file: {exc}") from exc

    def delete_story_dir(self, story_id: Union[int, str]) -> bool:
        directory = self.story_dir(story_id)
        if not directory.exists():
            return False
        try:
            shutil.rmtree(directory)
        except OSError as exc:
            LOGGER.warning("Could not remove manuscript directory %s: %s", directory, exc)
            return False
        return True


@dataclass
class CompiledBook:
    filename: str
    content: str


def book_filename(title: Optional[str]) -> str:
    cleaned = _UNSAFE_TITLE_CHARS.sub("_", title or "").lower()
    return f"{cleaned or 'story'}.md"


def compile_book(story: object, chapters: Iterable[object]) -> CompiledBook:
    """Assemble the story's stage outputs and chapters into one Markdown document."""

    title = _clean(getattr(story, "title", "")) or "Untitled Story"
    parts = [f"# {title}\n\n"]

    sections = (
        ("World", getattr(story, "world_description", None)),
        ("Characters", getattr(story, "character_profiles", None)),
        ("Outline", getattr(story, "outline_text", None)),
    )
    for heading, body in sections:
        if body:
            parts.append(f"## {heading}\n\n{body}\n\n")

    parts.append("## Chapters\n\n")
    for chapter in sorted(chapters, key=lambda item: getattr(item, "chapter_number", 0)):
        chapter_title = _clean(getattr(chapter, "title", ""))
        heading = f"### Chapter {getattr(chapter, 'chapter_number', '?')}"
        if chapter_title:
            heading += f": {chapter_title}"
        parts.append(f"{heading}\n\n")
        parts.append(f"{getattr(chapter, 'content', None) or NO_CONTENT_PLACEHOLDER}\n\n")

    return CompiledBook(filename=book_filename(getattr(story, "title", None)), content="".join(parts))


__all__ = [
    "CompiledBook",
    "ManuscriptError",
    "ManuscriptStorage",
    "book_filename",
    "chapter_filename",
    "compile_book",
]
