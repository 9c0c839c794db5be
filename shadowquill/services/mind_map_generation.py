"""AI-assisted mind map generation for a story."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .generation import complete_prompt
from .mind_map import MindMapEditor
from .mind_map_schema import MindMapGraph, MindMapSchemaError
from .outline_parser import parse_outline


PROMPT_KEY = "mind_map_generate"

_CODE_FENCE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_CHARACTER_HEADING = re.compile(r"^##[ \t]+(?!Chapter\b)(.+?)[ \t]*$", re.MULTILINE)

_CHAPTER_SPACING = 220.0
_MAX_THEME_LABEL = 60


@dataclass
class MindMapGenerationResult:
    graph: MindMapGraph
    used_fallback: bool


def generate_mind_map(
    world_context: str,
    character_context: str,
    outline_context: str,
    *,
    story_title: Optional[str] = None,
    editor: Optional[MindMapEditor] = None,
) -> MindMapGenerationResult:
    """Generate a fresh graph and load it into ``editor``.

    Raises the editor's errors unchanged: :class:`MindMapContextError` for
    missing context, :class:`MindMapSchemaError` when the model answers with
    something that is not a graph, :class:`MindMapGenerationError` when the
    generator itself fails.
    """

    target = editor or MindMapEditor()
    title = (story_title or "").strip() or "Untitled Story"
    state = {"used_fallback": False}

    def _collaborator(world: str, characters: str, outline: str) -> Dict[str, Any]:
        raw = complete_prompt(
            PROMPT_KEY,
            {
                "storyTitle": title,
                "worldContext": world,
                "characterContext": characters,
                "outlineContext": outline,
            },
        )
        if raw is None:
            state["used_fallback"] = True
            return build_fallback_graph(outline, characters, story_title=title).to_payload()
        return parse_graph_response(raw)

    graph = target.generate(_collaborator, world_context, character_context, outline_context)
    return MindMapGenerationResult(graph=graph, used_fallback=state["used_fallback"])


def parse_graph_response(raw_response: Optional[str]) -> Dict[str, Any]:
    """Decode a model response into a graph payload, tolerating code fences."""

    text = (raw_response or "").strip()
    text = _CODE_FENCE.sub("", text).strip()
    if not text:
        raise MindMapSchemaError("The AI returned an empty mind map.")

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        # Models sometimes wrap the object in prose; try the outermost braces.
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise MindMapSchemaError("The AI response was not valid mind map JSON.") from None
        try:
            data = json.loads(text[start : end + 1])
        except json.JSONDecodeError as exc:
            raise MindMapSchemaError("The AI response was not valid mind map JSON.") from exc

    MindMapGraph.from_payload(data)
    return data


def build_fallback_graph(
    outline_context: str,
    character_context: str,
    *,
    story_title: str = "Untitled Story",
) -> MindMapGraph:
    """A deterministic graph built from the outline and character headings."""

    nodes: List[Dict[str, Any]] = [
        {"id": "story", "position": {"x": 0.0, "y": -150.0}, "data": {"label": story_title}},
    ]
    edges: List[Dict[str, Any]] = []

    chapters = parse_outline(outline_context)
    previous_id: Optional[str] = None
    for index, chapter in enumerate(chapters):
        node_id = f"chapter-{chapter.chapter_number}"
        label = f"Chapter {chapter.chapter_number}: {chapter.title}" if chapter.title else f"Chapter {chapter.chapter_number}"
        nodes.append({"id": node_id, "position": {"x": index * _CHAPTER_SPACING, "y": 0.0}, "data": {"label": label}})
        if previous_id is None:
            edges.append({"id": f"e-story-{node_id}", "source": "story", "target": node_id, "label": "begins with"})
        else:
            edges.append({"id": f"e-{previous_id}-{node_id}", "source": previous_id, "target": node_id, "label": "leads to"})
        previous_id = node_id

    seen: set[str] = set()
    for index, match in enumerate(_CHARACTER_HEADING.finditer(character_context or "")):
        name = match.group(1).strip().strip("[]").strip()
        if not name or name.casefold() in seen:
            continue
        seen.add(name.casefold())
        node_id = f"character-{len(seen)}"
        nodes.append({"id": node_id, "position": {"x": index * _CHAPTER_SPACING, "y": 200.0}, "data": {"label": name}})
        edges.append({"id": f"e-{node_id}-story", "source": node_id, "target": "story", "label": "features in"})

    theme = next((chapter.themes for chapter in chapters if chapter.themes), None)
    theme_label = f"Theme: {theme[:_MAX_THEME_LABEL].strip()}" if theme else "Theme: [Main Theme]"
    nodes.append({"id": "theme", "position": {"x": -_CHAPTER_SPACING, "y": -150.0}, "data": {"label": theme_label}})
    edges.append({"id": "e-theme-story", "source": "theme", "target": "story", "label": "central to"})

    return MindMapGraph.from_payload({"nodes": nodes, "edges": edges})


__all__ = [
    "MindMapGenerationResult",
    "build_fallback_graph",
    "generate_mind_map",
    "parse_graph_response",
]
