import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")


def _default_sqlite_uri() -> str:
    instance_path = BASE_DIR / "instance"
    instance_path.mkdir(exist_ok=True)
    return f"sqlite:///{instance_path / 'shadowquill.db'}"


class Config:
    """Base configuration shared across environments."""

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-change-me")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", _default_sqlite_uri())
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_TIME_LIMIT = None

    PROMPT_CONFIG_PATH = os.environ.get("PROMPT_CONFIG_PATH", str(BASE_DIR / "prompt_config.json"))
    STORY_OUTPUT_DIR = os.environ.get("STORY_OUTPUT_DIR", str(BASE_DIR / "instance" / "manuscripts"))

    OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
    OPENAI_MODEL = os.environ.get("OPENAI_MODEL")

    DEFAULT_NUM_CHAPTERS = 10
    DEFAULT_NUM_CHARACTERS = 3

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    OPENAI_API_KEY = None
    OPENAI_MODEL = None
    TEXT_GENERATOR_MODEL_PATH = None
