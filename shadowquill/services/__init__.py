"""Service layer helpers for AI-assisted workflows."""

from __future__ import annotations

from .generation import GenerationError, GenerationStream, StreamEvent  # noqa: F401
from .manuscript import ManuscriptError, ManuscriptStorage, compile_book  # noqa: F401
from .mind_map import MindMapEditor, SqlMindMapStore  # noqa: F401
from .mind_map_schema import MindMapError, MindMapGraph, MindMapSchemaError  # noqa: F401
from .outline_parser import OutlineChapter, parse_outline  # noqa: F401

__all__ = [
    "GenerationError",
    "GenerationStream",
    "ManuscriptError",
    "ManuscriptStorage",
    "MindMapEditor",
    "MindMapError",
    "MindMapGraph",
    "MindMapSchemaError",
    "OutlineChapter",
    "SqlMindMapStore",
    "StreamEvent",
    "compile_book",
    "parse_outline",
]
