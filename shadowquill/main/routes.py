from flask import redirect, render_template, url_for
from flask_login import current_user, login_required

from ..models import Story
from ..session import StorySession
from ..stories.forms import StoryForm
from ..stories.service import create_story
from . import bp


@bp.route("/")
def index():
    if current_user.is_authenticated:
        return redirect(url_for("main.dashboard"))
    return render_template("main/landing.html")


@bp.route("/dashboard", methods=["GET", "POST"])
@login_required
def dashboard():
    form = StoryForm()
    if form.validate_on_submit():
        story = create_story(current_user, form.title.data)
        StorySession(user=current_user, story=story).activate()
        return redirect(url_for("stories.stage", story_id=story.id, stage="world"))

    stories = (
        Story.query.filter_by(owner_id=current_user.id)
        .order_by(Story.updated_at.desc())
        .all()
    )
    active = StorySession.current()
    return render_template("main/dashboard.html", stories=stories, form=form, active_story=active.story)
