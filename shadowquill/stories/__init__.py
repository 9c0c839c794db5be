from flask import Blueprint

bp = Blueprint("stories", __name__, url_prefix="/stories")
api_bp = Blueprint("story_api", __name__, url_prefix="/api")

from . import api, routes  # noqa: E402,F401
