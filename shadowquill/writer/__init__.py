from flask import Blueprint

bp = Blueprint("writer", __name__, url_prefix="/api/ai-writer")

from . import routes  # noqa: E402,F401
