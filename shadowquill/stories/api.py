"""JSON endpoints for story data, scoped to the signed-in owner."""

from __future__ import annotations

from typing import Any, Dict

from flask import Response, current_app, jsonify, request
from flask_login import current_user, login_required

from ..models import Story
from ..services.manuscript import ManuscriptError, compile_book
from ..services.mind_map import MindMapEditor, MindMapPersistenceError, SqlMindMapStore
from ..services.mind_map_schema import MindMapGraph, MindMapSchemaError
from ..services.outline_parser import parse_outline
from ..session import StorySession
from . import api_bp
from .service import (
    StoryDataError,
    character_data,
    create_story,
    delete_story,
    get_chapter,
    get_transcript,
    manuscript_storage,
    outline_data,
    rename_story,
    save_chapter,
    save_transcript,
    update_characters,
    update_outline,
    update_world,
    world_data,
)


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _owned_story(story_id: int) -> Story:
    return StorySession.for_story(story_id).require_story()


@api_bp.route("/stories", methods=["GET"])
@login_required
def list_stories():
    stories = (
        Story.query.filter_by(owner_id=current_user.id)
        .order_by(Story.updated_at.desc())
        .all()
    )
    return jsonify({"stories": [story.to_dict() for story in stories]})


@api_bp.route("/stories", methods=["POST"])
@login_required
def create_story_api():
    payload = _json_body()
    story = create_story(current_user, payload.get("title"))
    if payload.get("activate"):
        StorySession(user=current_user, story=story).activate()
    return jsonify(story.to_dict()), 201


@api_bp.route("/stories/active", methods=["GET"])
@login_required
def active_story():
    story_session = StorySession.current()
    return jsonify({"story": story_session.story.to_dict() if story_session.story else None})


@api_bp.route("/stories/<int:story_id>", methods=["GET"])
@login_required
def story_detail(story_id: int):
    return jsonify(_owned_story(story_id).to_dict())


@api_bp.route("/stories/<int:story_id>", methods=["PATCH", "PUT"])
@login_required
def rename_story_api(story_id: int):
    story = _owned_story(story_id)
    try:
        rename_story(story, _json_body().get("title"))
    except StoryDataError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify(story.to_dict())


@api_bp.route("/stories/<int:story_id>", methods=["DELETE"])
@login_required
def delete_story_api(story_id: int):
    story = StorySession.for_story(story_id).require_story()
    active = StorySession.current()
    if active.story_id == story.id:
        active.clear()
    delete_story(story)
    return jsonify({"message": "Story deleted successfully.", "storyId": story_id})


@api_bp.route("/stories/<int:story_id>/activate", methods=["POST"])
@login_required
def activate_story(story_id: int):
    story_session = StorySession.for_story(story_id, activate=True)
    return jsonify({"story": story_session.story.to_dict()})


@api_bp.route("/stories/<int:story_id>/world", methods=["GET", "PUT"])
@login_required
def world(story_id: int):
    story = _owned_story(story_id)
    if request.method == "GET":
        return jsonify(world_data(story))
    try:
        update_world(story, _json_body())
    except StoryDataError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify({"message": "World data updated successfully.", "storyId": story.id})


@api_bp.route("/stories/<int:story_id>/characters", methods=["GET", "PUT"])
@login_required
def characters(story_id: int):
    story = _owned_story(story_id)
    if request.method == "GET":
        return jsonify(character_data(story))
    try:
        update_characters(story, _json_body())
    except StoryDataError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify({"message": "Character data updated successfully.", "storyId": story.id})


@api_bp.route("/stories/<int:story_id>/outline", methods=["GET", "PUT"])
@login_required
def outline(story_id: int):
    story = _owned_story(story_id)
    if request.method == "GET":
        return jsonify(outline_data(story))
    try:
        update_outline(story, _json_body())
    except StoryDataError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify({"message": "Outline data updated successfully.", "storyId": story.id})


@api_bp.route("/stories/<int:story_id>/outline/chapters", methods=["GET"])
@login_required
def outline_chapters(story_id: int):
    story = _owned_story(story_id)
    chapters = parse_outline(story.outline_text)
    return jsonify({"chapters": [chapter.to_dict() for chapter in chapters]})


@api_bp.route("/stories/<int:story_id>/mindmap", methods=["GET"])
@login_required
def get_mind_map(story_id: int):
    story = _owned_story(story_id)
    try:
        editor = MindMapEditor.load(SqlMindMapStore(), story.id)
    except (MindMapPersistenceError, MindMapSchemaError) as exc:
        current_app.logger.error("Stored mind map for story %s is unreadable: %s", story.id, exc)
        return jsonify({"error": "Failed to parse stored mind map data."}), 500
    return jsonify({"mindMapData": editor.to_graph().to_payload()})


@api_bp.route("/stories/<int:story_id>/mindmap", methods=["PUT"])
@login_required
def save_mind_map(story_id: int):
    story = _owned_story(story_id)
    payload = _json_body()
    if "mindMapData" not in payload:
        return jsonify({"error": "Missing mindMapData in request body."}), 400
    raw = payload["mindMapData"]
    if not isinstance(raw, dict):
        return jsonify({"error": "Invalid mindMapData format."}), 400

    try:
        graph = MindMapGraph.from_payload(raw)
    except MindMapSchemaError as exc:
        return jsonify({"error": str(exc)}), 400

    editor = MindMapEditor.from_graph(graph)
    try:
        editor.save(SqlMindMapStore(), story.id)
    except MindMapPersistenceError:
        current_app.logger.exception("Failed to save mind map for story %s", story.id)
        return jsonify({"error": "Failed to save mind map data."}), 500

    return jsonify(
        {
            "message": "Mind map data saved successfully.",
            "updatedAt": story.updated_at.isoformat() if story.updated_at else None,
        }
    )


@api_bp.route("/stories/<int:story_id>/chapters/<int:chapter_number>", methods=["GET"])
@login_required
def get_chapter_api(story_id: int, chapter_number: int):
    story = _owned_story(story_id)
    chapter = get_chapter(story, chapter_number)
    if chapter is None:
        return jsonify({"content": "", "title": None})
    return jsonify({"content": chapter.content or "", "title": chapter.title})


@api_bp.route("/stories/<int:story_id>/chapters/<int:chapter_number>", methods=["PUT"])
@login_required
def save_chapter_api(story_id: int, chapter_number: int):
    story = _owned_story(story_id)
    payload = _json_body()
    fields = {key: payload[key] for key in ("content", "title") if key in payload}
    try:
        chapter = save_chapter(story, chapter_number, **fields)
    except StoryDataError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify({"message": "Chapter data saved successfully.", "chapterId": chapter.id})


@api_bp.route("/stories/<int:story_id>/transcripts/<stage>", methods=["GET", "PUT"])
@login_required
def transcript(story_id: int, stage: str):
    story = _owned_story(story_id)
    try:
        if request.method == "GET":
            messages = get_transcript(story, stage)
        else:
            messages = save_transcript(story, stage, _json_body().get("messages"))
    except StoryDataError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify({"stage": stage, "messages": messages})


@api_bp.route("/stories/<int:story_id>/directory", methods=["POST"])
@login_required
def create_story_directory(story_id: int):
    story = _owned_story(story_id)
    try:
        path, created = manuscript_storage().create_story_dir(story.id)
    except ManuscriptError as exc:
        current_app.logger.exception("Failed to create directory for story %s", story.id)
        return jsonify({"error": str(exc)}), 500
    if not created:
        return jsonify({"message": "Directory already exists.", "path": str(path)}), 200
    return jsonify({"message": "Directory created successfully.", "path": str(path)}), 201


@api_bp.route("/stories/<int:story_id>/files", methods=["POST"])
@login_required
def save_story_file(story_id: int):
    story = _owned_story(story_id)
    payload = _json_body()
    filename = payload.get("filename")
    content = payload.get("content")
    if not isinstance(filename, str) or not filename or not isinstance(content, str):
        return jsonify({"error": "Missing filename or content."}), 400

    storage = manuscript_storage()
    try:
        storage.path_for(story.id, filename)
    except ManuscriptError as exc:
        return jsonify({"error": str(exc)}), 400
    try:
        path = storage.save(story.id, filename, content)
    except ManuscriptError as exc:
        current_app.logger.exception("Failed to save %s for story %s", filename, story.id)
        return jsonify({"error": str(exc)}), 500
    return jsonify({"message": "File saved successfully.", "path": str(path)})


@api_bp.route("/stories/<int:story_id>/files/<path:filename>", methods=["GET"])
@login_required
def read_story_file(story_id: int, filename: str):
    story = _owned_story(story_id)
    storage = manuscript_storage()
    try:
        storage.path_for(story.id, filename)
    except ManuscriptError as exc:
        return jsonify({"error": str(exc)}), 400
    try:
        content = storage.read(story.id, filename)
    except ManuscriptError as exc:
        current_app.logger.exception("Failed to read %s for story %s", filename, story.id)
        return jsonify({"error": str(exc)}), 500
    return jsonify({"content": content})


@api_bp.route("/stories/<int:story_id>/compile", methods=["GET"])
@login_required
def compile_story(story_id: int):
    story = _owned_story(story_id)
    book = compile_book(story, story.chapters)
    return Response(
        book.content,
        mimetype="text/markdown",
        headers={"Content-Disposition": f'attachment; filename="{book.filename}"'},
    )
