"""Split a chapter-by-chapter outline into structured chapter records.

The outline is free-form Markdown produced by the outline stage. Each chapter
starts with a heading line of the form ``## Chapter 3: The Long Night``;
everything up to the next such heading belongs to that chapter. Inside a
chapter block the bolded labels emitted by the outline prompt
(``**Summary:**``, ``**Key Events:**`` ...) are extracted when present. The
structured fields are best-effort: :attr:`OutlineChapter.raw_content` is the
authoritative text.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

LOGGER = logging.getLogger(__name__)

_HEADING_PATTERN = re.compile(r"^##[ \t]+Chapter[ \t]+(\d+):[ \t]*(.*)$", re.MULTILINE)

# A bolded label with its colon inside the bold markers, optionally bulleted.
_LABEL_LINE = r"(?:^|\n)[ \t]*(?:[*+\-][ \t]+)?\*\*{label}:\*\*"
_NEXT_LABEL = r"(?=\n[ \t]*(?:[*+\-][ \t]+)?\*\*[^*\n]+:\*\*|\Z)"

_BULLET_PREFIX = re.compile(r"^(?:[*+\-•](?!\*)|\d+[.)])\s*")

_TEXT_SECTIONS: Dict[str, Sequence[str]] = {
    "summary": ("Summary",),
    "setting": ("Setting/Atmosphere", "Setting"),
    "themes": ("Themes Explored", "Themes"),
    "setup": ("Setup/Foreshadowing", "Setup"),
    "ending_hook": ("Ending Hook",),
}

_LIST_SECTIONS: Dict[str, Sequence[str]] = {
    "key_events": ("Key Events",),
    "character_development": ("Character Development",),
}


@dataclass(frozen=True)
class OutlineChapter:
    chapter_number: int
    title: str
    raw_content: str
    summary: Optional[str] = None
    key_events: Optional[List[str]] = field(default=None, hash=False)
    character_development: Optional[List[str]] = field(default=None, hash=False)
    setting: Optional[str] = None
    themes: Optional[str] = None
    setup: Optional[str] = None
    ending_hook: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "chapterNumber": self.chapter_number,
            "title": self.title,
        }
        optional_fields = (
            ("summary", self.summary),
            ("keyEvents", self.key_events),
            ("characterDevelopment", self.character_development),
            ("setting", self.setting),
            ("themes", self.themes),
            ("setup", self.setup),
            ("endingHook", self.ending_hook),
        )
        for key, value in optional_fields:
            if value is not None:
                payload[key] = list(value) if isinstance(value, list) else value
        payload["rawContent"] = self.raw_content
        return payload


def parse_outline(outline_text: Optional[str]) -> List[OutlineChapter]:
    """Return the chapters found in ``outline_text`` ordered by chapter number.

    Headings that appear out of numeric order are re-sorted. When a chapter
    number is repeated, the first heading wins; the later duplicate still
    terminates the previous block but does not produce a record.
    """

    text = outline_text or ""
    matches = list(_HEADING_PATTERN.finditer(text))
    if not matches:
        return []

    chapters: Dict[int, OutlineChapter] = {}
    for index, match in enumerate(matches):
        start = match.start()
        end = matches[index + 1].start() if index + 1 < len(matches) else len(text)
        number = int(match.group(1))
        if number in chapters:
            LOGGER.debug("Ignoring duplicate heading for chapter %s at offset %s", number, start)
            continue

        raw_content = text[start:end]
        body = text[match.end():end]
        sections = _extract_sections(body)
        chapters[number] = OutlineChapter(
            chapter_number=number,
            title=match.group(2).strip(),
            raw_content=raw_content,
            **sections,
        )

    return [chapters[number] for number in sorted(chapters)]


def find_chapter(chapters: Sequence[OutlineChapter], chapter_number: int) -> Optional[OutlineChapter]:
    return next((chapter for chapter in chapters if chapter.chapter_number == chapter_number), None)


def next_chapter(chapters: Sequence[OutlineChapter], chapter_number: int) -> Optional[OutlineChapter]:
    """The chapter numbered directly after ``chapter_number``, if it exists."""

    return find_chapter(chapters, chapter_number + 1)


def _extract_sections(body: str) -> Dict[str, object]:
    sections: Dict[str, object] = {}
    for field_name, labels in _TEXT_SECTIONS.items():
        value = _find_section(body, labels)
        if value is not None:
            sections[field_name] = value.strip() or None
    for field_name, labels in _LIST_SECTIONS.items():
        value = _find_section(body, labels)
        if value is not None:
            sections[field_name] = _split_items(value)
    return sections


def _find_section(body: str, labels: Sequence[str]) -> Optional[str]:
    for label in labels:
        pattern = re.compile(
            _LABEL_LINE.format(label=re.escape(label)) + r"[ \t]*(.*?)" + _NEXT_LABEL,
            re.DOTALL,
        )
        match = pattern.search(body)
        if match:
            return match.group(1)
    return None


def _split_items(block: str) -> List[str]:
    items: List[str] = []
    for line in block.splitlines():
        item = _BULLET_PREFIX.sub("", line.strip()).strip()
        if item:
            items.append(item)
    return items


__all__ = ["OutlineChapter", "find_chapter", "next_chapter", "parse_outline"]
