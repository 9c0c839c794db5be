from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from flask import Response, current_app, jsonify, request, stream_with_context
from flask_login import login_required

from ..models import Story
from ..services.generation import GenerationError, GenerationStream
from ..services.mind_map import (
    MindMapContextError,
    MindMapGenerationError,
)
from ..services.mind_map_generation import generate_mind_map
from ..services.mind_map_schema import MindMapSchemaError
from ..services.stage_generation import (
    StageGenerationError,
    stream_chapter,
    stream_character_chat,
    stream_character_finalize,
    stream_outline_chat,
    stream_outline_finalize,
    stream_scene,
    stream_world_chat,
    stream_world_finalize,
)
from ..session import StorySession
from ..stories.service import get_transcript
from . import bp


FALLBACK_HEADER = "X-Used-Fallback"


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _story_from(payload: Dict[str, Any]) -> Optional[Story]:
    story_id = payload.get("storyId")
    if story_id in (None, ""):
        return None
    return StorySession.for_story(story_id).require_story()


def _finalize_messages(payload: Dict[str, Any], stage: str, story: Optional[Story]) -> Any:
    messages = payload.get("messages")
    if messages is None and story is not None:
        return get_transcript(story, stage)
    return messages


def _run_stream(label: str, build: Callable[[], GenerationStream]):
    try:
        stream = build()
    except StageGenerationError as exc:
        return jsonify({"error": str(exc)}), 400
    except GenerationError as exc:
        current_app.logger.warning("Unable to start %s generation: %s", label, exc)
        return jsonify({"error": str(exc)}), 502
    except Exception:  # pragma: no cover - defensive logging
        current_app.logger.exception("Unexpected error while starting %s generation", label)
        return jsonify({"error": f"An error occurred generating the {label}."}), 500

    first = stream.prime()
    if first is not None and first.kind == "error":
        return jsonify({"error": f"The text generator failed: {first.text}"}), 502

    response = Response(stream_with_context(stream.iter_text()), mimetype="text/plain")
    response.headers[FALLBACK_HEADER] = "true" if stream.used_fallback else "false"
    response.headers["Cache-Control"] = "no-cache"
    return response


@bp.route("/world/chat", methods=["POST"])
@login_required
def world_chat():
    payload = _json_body()
    return _run_stream(
        "world chat",
        lambda: stream_world_chat(payload.get("messages"), payload.get("topic")),
    )


@bp.route("/world/finalize", methods=["POST"])
@login_required
def world_finalize():
    payload = _json_body()
    story = _story_from(payload)
    return _run_stream(
        "world description",
        lambda: stream_world_finalize(
            _finalize_messages(payload, "world", story),
            payload.get("topic"),
        ),
    )


@bp.route("/characters/chat", methods=["POST"])
@login_required
def characters_chat():
    payload = _json_body()
    return _run_stream(
        "character chat",
        lambda: stream_character_chat(payload.get("messages"), payload.get("worldContext")),
    )


@bp.route("/characters/finalize", methods=["POST"])
@login_required
def characters_finalize():
    payload = _json_body()
    story = _story_from(payload)
    return _run_stream(
        "character profiles",
        lambda: stream_character_finalize(
            _finalize_messages(payload, "characters", story),
            payload.get("worldContext"),
            payload.get("numCharacters"),
        ),
    )


@bp.route("/outline/chat", methods=["POST"])
@login_required
def outline_chat():
    payload = _json_body()
    return _run_stream(
        "outline chat",
        lambda: stream_outline_chat(
            payload.get("messages"),
            payload.get("worldContext"),
            payload.get("characterContext"),
            payload.get("numChapters"),
        ),
    )


@bp.route("/outline/generate", methods=["POST"])
@login_required
def outline_generate():
    payload = _json_body()
    story = _story_from(payload)
    return _run_stream(
        "outline",
        lambda: stream_outline_finalize(
            _finalize_messages(payload, "outline", story),
            payload.get("worldContext"),
            payload.get("characterContext"),
            payload.get("numChapters"),
        ),
    )


@bp.route("/chapter/generate", methods=["POST"])
@login_required
def chapter_generate():
    payload = _json_body()
    # Rejects a storyId the current user does not own.
    _story_from(payload)
    return _run_stream("chapter", lambda: stream_chapter(payload))


@bp.route("/scene/generate", methods=["POST"])
@login_required
def scene_generate():
    payload = _json_body()
    return _run_stream("scene", lambda: stream_scene(payload))


@bp.route("/mindmap/generate", methods=["POST"])
@login_required
def mind_map_generate():
    payload = _json_body()
    story = _story_from(payload)
    try:
        result = generate_mind_map(
            payload.get("worldContext") or "",
            payload.get("characterContext") or "",
            payload.get("outlineContext") or "",
            story_title=story.title if story is not None else payload.get("storyTitle"),
        )
    except MindMapContextError as exc:
        return jsonify({"error": str(exc)}), 400
    except MindMapSchemaError as exc:
        current_app.logger.warning("Mind map generation returned malformed data: %s", exc)
        return jsonify({"error": f"The AI returned a malformed mind map. {exc}"}), 502
    except MindMapGenerationError as exc:
        current_app.logger.warning("Mind map generation failed: %s", exc)
        return jsonify({"error": str(exc)}), 502

    body = result.graph.to_payload()
    body["usedFallback"] = result.used_fallback
    response = jsonify(body)
    response.headers[FALLBACK_HEADER] = "true" if result.used_fallback else "false"
    return response
