import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from shadowquill.services.manuscript import (
    ManuscriptError,
    ManuscriptStorage,
    book_filename,
    chapter_filename,
    compile_book,
)


def test_story_dir_is_sanitised(tmp_path):
    storage = ManuscriptStorage(tmp_path)

    assert storage.story_dir(12) == tmp_path / "12"
    assert storage.story_dir("../etc") == tmp_path / "___etc"


def test_create_story_dir_reports_existing(tmp_path):
    storage = ManuscriptStorage(tmp_path)

    path, created = storage.create_story_dir(4)
    again, created_again = storage.create_story_dir(4)

    assert created is True
    assert created_again is False
    assert path == again
    assert (path / "chapters").is_dir()


def test_chapter_files_go_to_chapters_subdirectory(tmp_path):
    storage = ManuscriptStorage(tmp_path)

    saved = storage.save(7, chapter_filename(3), "Chapter three")
    notes = storage.save(7, "notes.md", "Remember the lighthouse.")

    assert saved == tmp_path / "7" / "chapters" / "chapter_3.md"
    assert notes == tmp_path / "7" / "notes.md"
    assert storage.read(7, "chapter_3.md") == "Chapter three"


def test_read_missing_file_returns_empty_string(tmp_path):
    assert ManuscriptStorage(tmp_path).read(1, "chapter_9.md") == ""


@pytest.mark.parametrize("filename", ["", None, "../x.md", "a/b.md", ".", ".."])
def test_invalid_filenames_are_rejected(tmp_path, filename):
    with pytest.raises(ManuscriptError):
        ManuscriptStorage(tmp_path).path_for(1, filename)


def test_delete_story_dir(tmp_path):
    storage = ManuscriptStorage(tmp_path)
    storage.save(2, "notes.md", "x")

    assert storage.delete_story_dir(2) is True
    assert not (tmp_path / "2").exists()
    assert storage.delete_story_dir(2) is False


def test_book_filename():
    assert book_filename("The Long Night!") == "the_long_night_.md"
    assert book_filename("") == "story.md"
    assert book_filename(None) == "story.md"


def test_compile_book_orders_chapters_and_skips_empty_sections():
    story = SimpleNamespace(
        title="Tidewrack",
        world_description=None,
        character_profiles="## Mara",
        outline_text="",
    )
    chapters = [
        SimpleNamespace(chapter_number=2, title="Storm", content="Thunder."),
        SimpleNamespace(chapter_number=1, title="", content=""),
    ]

    book = compile_book(story, chapters)

    assert book.filename == "tidewrack.md"
    assert book.content == (
        "# Tidewrack\n\n"
        "## Characters\n\n## Mara\n\n"
        "## Chapters\n\n"
        "### Chapter 1\n\n*(No content)*\n\n"
        "### Chapter 2: Storm\n\nThunder.\n\n"
    )
