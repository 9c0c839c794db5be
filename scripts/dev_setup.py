"""Prepare a local Shadowquill checkout: write ``.env`` and create the database.

Example::

    python scripts/dev_setup.py --openai-model gpt-4o-mini --openai-api-key sk-...
    python scripts/dev_setup.py --model-path ~/models/mistral-7b-instruct
"""
from __future__ import annotations

import argparse
import secrets
import shutil
import sys
from pathlib import Path
from typing import Dict, Optional

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

DEFAULT_ENV_PATH = REPO_ROOT / ".env"
SECRET_PLACEHOLDERS = {"", "dev-change-me"}

# Command-line option -> environment variable written to .env.
ENV_OPTIONS = {
    "flask_app": "FLASK_APP",
    "flask_debug": "FLASK_DEBUG",
    "database_url": "DATABASE_URL",
    "openai_api_key": "OPENAI_API_KEY",
    "openai_model": "OPENAI_MODEL",
    "model_path": "TEXT_GENERATOR_MODEL_PATH",
    "story_output_dir": "STORY_OUTPUT_DIR",
    "prompt_config": "PROMPT_CONFIG_PATH",
    "log_level": "LOG_LEVEL",
}


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Write a development .env and initialize the Shadowquill database.")
    parser.add_argument("--env-path", type=Path, default=DEFAULT_ENV_PATH, help="Location of the .env file.")
    parser.add_argument("--flask-app", default="wsgi.py", help="FLASK_APP entry point (default: wsgi.py).")
    parser.add_argument("--flask-debug", default="1", help="FLASK_DEBUG value (default: 1).")
    parser.add_argument("--secret-key", help="Session secret; generated when missing or still the default.")
    parser.add_argument("--database-url", help="SQLAlchemy URL; defaults to instance/shadowquill.db.")
    parser.add_argument("--openai-api-key", help="Key for the hosted model (used together with --openai-model).")
    parser.add_argument("--openai-model", help="Hosted model name, e.g. gpt-4o-mini.")
    parser.add_argument("--model-path", help="Local Hugging Face model directory, used when no hosted model is set.")
    parser.add_argument("--story-output-dir", help="Where chapter files and compiled books are written.")
    parser.add_argument("--prompt-config", help="Alternative prompt_config.json.")
    parser.add_argument("--log-level", help="Application log level, e.g. DEBUG.")
    parser.add_argument("--skip-db", action="store_true", help="Only write the .env file.")
    return parser.parse_args(argv)


def read_env(path: Path) -> Dict[str, str]:
    values: Dict[str, str] = {}
    if not path.exists():
        return values
    for line in path.read_text(encoding="utf-8").splitlines():
        key, sep, value = line.strip().partition("=")
        if not sep or key.startswith("#"):
            continue
        values[key.strip()] = value.strip()
    return values


def merge_env(current: Dict[str, str], args: argparse.Namespace) -> Dict[str, str]:
    merged = dict(current)
    for option, env_key in ENV_OPTIONS.items():
        value = getattr(args, option)
        if value:
            merged[env_key] = str(value)

    if args.secret_key:
        merged["SECRET_KEY"] = args.secret_key
    elif merged.get("SECRET_KEY", "") in SECRET_PLACEHOLDERS:
        merged["SECRET_KEY"] = secrets.token_hex(32)

    if merged.get("OPENAI_API_KEY") and not merged.get("OPENAI_MODEL"):
        print("Warning: OPENAI_API_KEY is set without OPENAI_MODEL; the hosted model will not be used.")
    return merged


def write_env(path: Path, values: Dict[str, str]) -> None:
    if path.exists():
        backup = path.with_name(path.name + ".bak")
        shutil.copy(path, backup)
        print(f"Previous {path.name} kept as {backup.name}.")
    path.write_text("".join(f"{key}={value}\n" for key, value in sorted(values.items())), encoding="utf-8")
    print(f"Wrote {len(values)} settings to {path}.")


def initialize_database() -> None:
    # Imported late so the .env written above is picked up by the config.
    from shadowquill import create_app, db

    app = create_app()
    with app.app_context():
        db.create_all()
        Path(app.config["STORY_OUTPUT_DIR"]).mkdir(parents=True, exist_ok=True)
    print(f"Database ready at {app.config['SQLALCHEMY_DATABASE_URI']}.")
    print(f"Manuscripts will be written to {app.config['STORY_OUTPUT_DIR']}.")


def main(argv: Optional[list] = None) -> None:
    args = parse_args(argv)
    values = merge_env(read_env(args.env_path), args)
    write_env(args.env_path, values)

    if args.skip_db:
        print("Skipping database initialization.")
        return
    initialize_database()


if __name__ == "__main__":
    main()
