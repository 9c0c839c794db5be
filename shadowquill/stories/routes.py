from __future__ import annotations

from flask import abort, flash, redirect, render_template, request, url_for
from flask_login import login_required

from ..services.outline_parser import find_chapter, next_chapter, parse_outline
from ..services.stage_generation import chapter_context
from ..session import StorySession
from . import bp
from .forms import RenameStoryForm
from .service import StoryDataError, delete_story, get_chapter, get_transcript, rename_story


STORY_STAGES = [
    ("world", "World"),
    ("characters", "Characters"),
    ("outline", "Outline"),
    ("write", "Write"),
]

CHAT_STAGE_ENDPOINTS = {
    "world": "writer.world_chat",
    "characters": "writer.characters_chat",
    "outline": "writer.outline_chat",
}

FINALIZE_STAGE_ENDPOINTS = {
    "world": "writer.world_finalize",
    "characters": "writer.characters_finalize",
    "outline": "writer.outline_generate",
}


@bp.route("/<int:story_id>")
@login_required
def detail(story_id: int):
    StorySession.for_story(story_id, activate=True)
    return redirect(url_for("stories.stage", story_id=story_id, stage="world"))


@bp.route("/<int:story_id>/<stage>")
@login_required
def stage(story_id: int, stage: str):
    stage_ids = [step[0] for step in STORY_STAGES]
    if stage not in stage_ids:
        abort(404)

    story_session = StorySession.for_story(story_id, activate=True)
    story = story_session.require_story()

    chapters = parse_outline(story.outline_text) if stage in ("outline", "write") else []
    selected_chapter = None
    following_chapter = None
    saved_chapter = None
    if stage == "write" and chapters:
        requested = request.args.get("chapter", type=int)
        selected_chapter = find_chapter(chapters, requested) if requested is not None else None
        if selected_chapter is None:
            selected_chapter = chapters[0]
        following_chapter = next_chapter(chapters, selected_chapter.chapter_number)
        saved_chapter = get_chapter(story, selected_chapter.chapter_number)

    transcript = get_transcript(story, stage) if stage in CHAT_STAGE_ENDPOINTS else []

    return render_template(
        "stories/stage.html",
        story=story,
        stage=stage,
        steps=STORY_STAGES,
        current_index=stage_ids.index(stage),
        chapters=chapters,
        selected_chapter=selected_chapter,
        selected_focus=chapter_context(selected_chapter) if selected_chapter else "",
        following_chapter=following_chapter,
        saved_chapter=saved_chapter,
        transcript=transcript,
        chat_endpoint=CHAT_STAGE_ENDPOINTS.get(stage),
        finalize_endpoint=FINALIZE_STAGE_ENDPOINTS.get(stage),
        rename_form=RenameStoryForm(prefix="rename", title=story.title),
    )


@bp.route("/<int:story_id>/rename", methods=["POST"])
@login_required
def rename(story_id: int):
    story = StorySession.for_story(story_id).require_story()
    form = RenameStoryForm(prefix="rename")
    if form.validate_on_submit():
        try:
            rename_story(story, form.title.data)
            flash("Story renamed.", "success")
        except StoryDataError as exc:
            flash(str(exc), "danger")
    else:
        flash("Enter a title before renaming.", "danger")
    return redirect(request.referrer or url_for("stories.stage", story_id=story.id, stage="world"))


@bp.route("/<int:story_id>/delete", methods=["POST"])
@login_required
def delete(story_id: int):
    story = StorySession.for_story(story_id).require_story()
    active = StorySession.current()
    if active.story_id == story.id:
        active.clear()
    delete_story(story)
    flash("Story deleted.", "info")
    return redirect(url_for("main.dashboard"))
