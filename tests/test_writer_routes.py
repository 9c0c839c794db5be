import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from shadowquill import create_app
from shadowquill.config import TestConfig
from shadowquill.extensions import db
from shadowquill.models import Story, User
from shadowquill.services import generation
from shadowquill.services.outline_parser import parse_outline
from shadowquill.stories.service import get_chapter, save_chapter, save_transcript


CHAPTER_PAYLOAD = {
    "worldContext": "A drowned city.",
    "characterContext": "## Mara\nA smuggler.",
    "outlineContext": "## Chapter 1: Arrival\n* **Summary:** Mara lands.",
    "chapterNumber": 1,
    "chapterTitle": "Arrival",
    "chapterOutline": "Mara lands.",
}


@pytest.fixture
def app_instance(tmp_path):
    app = create_app(TestConfig)
    app.config["WTF_CSRF_ENABLED"] = False
    app.config["STORY_OUTPUT_DIR"] = str(tmp_path / "manuscripts")
    ctx = app.app_context()
    ctx.push()
    db.create_all()
    yield app
    db.session.remove()
    db.drop_all()
    ctx.pop()


@pytest.fixture
def client(app_instance):
    return app_instance.test_client()


@pytest.fixture
def user(app_instance):
    user = User(email="user@example.com", display_name="Test User")
    user.set_password("password123")
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def story(app_instance, user):
    story = Story(title="Tidewrack", owner=user)
    db.session.add(story)
    db.session.commit()
    return story


class DummyGenerator:
    def __init__(self, chunks=None, response=""):
        self.chunks = chunks or ["The tide ", "came in."]
        self.response = response
        self.calls = []

    def stream_response(self, prompt, *, system_prompt=None, messages=None, **params):
        self.calls.append({"prompt": prompt, "system_prompt": system_prompt, "messages": messages})
        for chunk in self.chunks:
            yield chunk

    def generate_response(self, prompt, **_):
        self.calls.append({"prompt": prompt})
        return self.response


class BrokenGenerator:
    def stream_response(self, *args, **kwargs):
        raise RuntimeError("CUDA out of memory")
        yield  # pragma: no cover


def _login(client, user):
    client.post(
        "/login",
        data={"email": user.email, "password": "password123"},
        follow_redirects=True,
    )


def test_writer_requires_login(client):
    response = client.post("/api/ai-writer/world/chat", json={"messages": []})

    assert response.status_code == 401


def test_chat_without_user_message_is_rejected(monkeypatch, client, user):
    calls = []
    monkeypatch.setattr(generation, "get_text_generator", lambda: calls.append(True))
    _login(client, user)

    response = client.post("/api/ai-writer/world/chat", json={"messages": [], "topic": "Tides"})

    assert response.status_code == 400
    assert response.get_json()["error"] == "Send a message to start the conversation."
    assert calls == []


def test_character_chat_requires_world_context(client, user):
    _login(client, user)

    response = client.post(
        "/api/ai-writer/characters/chat",
        json={"messages": [{"role": "user", "content": "A smuggler"}]},
    )

    assert response.status_code == 400
    assert "World context" in response.get_json()["error"]


def test_outline_generate_rejects_bad_chapter_count(client, user):
    _login(client, user)

    response = client.post(
        "/api/ai-writer/outline/generate",
        json={"worldContext": "w", "characterContext": "c", "numChapters": 500, "messages": []},
    )

    assert response.status_code == 400
    assert "numChapters" in response.get_json()["error"]


def test_chat_streams_generator_output(monkeypatch, client, user):
    generator = DummyGenerator()
    monkeypatch.setattr(generation, "get_text_generator", lambda: generator)
    _login(client, user)
    messages = [{"role": "user", "content": "A drowned city"}]

    response = client.post("/api/ai-writer/world/chat", json={"messages": messages, "topic": "Tidewrack"})

    assert response.status_code == 200
    assert response.mimetype == "text/plain"
    assert response.headers["X-Used-Fallback"] == "false"
    assert response.get_data(as_text=True) == "The tide came in."
    assert generator.calls[0]["messages"] == messages


def test_chat_falls_back_without_generator(monkeypatch, client, user):
    monkeypatch.setattr(generation, "get_text_generator", lambda: None)
    _login(client, user)

    response = client.post(
        "/api/ai-writer/world/chat",
        json={"messages": [{"role": "user", "content": "Floating islands"}]},
    )

    assert response.status_code == 200
    assert response.headers["X-Used-Fallback"] == "true"
    assert "Floating islands" in response.get_data(as_text=True)


def test_generator_failure_before_first_chunk_returns_502(monkeypatch, client, user):
    monkeypatch.setattr(generation, "get_text_generator", lambda: BrokenGenerator())
    _login(client, user)

    response = client.post("/api/ai-writer/chapter/generate", json=CHAPTER_PAYLOAD)

    assert response.status_code == 502
    assert "CUDA out of memory" in response.get_json()["error"]


def test_chapter_generation_validates_before_calling_model(monkeypatch, client, user):
    calls = []
    monkeypatch.setattr(generation, "get_text_generator", lambda: calls.append(True))
    _login(client, user)

    payload = dict(CHAPTER_PAYLOAD)
    payload.pop("outlineContext")
    response = client.post("/api/ai-writer/chapter/generate", json=payload)

    assert response.status_code == 400
    assert response.get_json()["error"] == "Missing required context or chapter details for generation."
    assert calls == []


def test_chapter_generation_leaves_saved_chapter_alone(monkeypatch, client, user, story):
    save_chapter(story, 1, content="My own draft.", title="Arrival")
    monkeypatch.setattr(generation, "get_text_generator", lambda: DummyGenerator())
    _login(client, user)

    response = client.post("/api/ai-writer/chapter/generate", json=dict(CHAPTER_PAYLOAD, storyId=story.id))

    assert response.get_data(as_text=True) == "The tide came in."
    assert get_chapter(story, 1).content == "My own draft."


def test_chapter_generation_for_foreign_story_is_not_found(monkeypatch, client, story):
    intruder = User(email="intruder@example.com", display_name="Intruder")
    intruder.set_password("password123")
    db.session.add(intruder)
    db.session.commit()
    monkeypatch.setattr(generation, "get_text_generator", lambda: DummyGenerator())
    _login(client, intruder)

    response = client.post("/api/ai-writer/chapter/generate", json=dict(CHAPTER_PAYLOAD, storyId=story.id))

    assert response.status_code == 404
    assert get_chapter(story, 1) is None


def test_finalize_uses_stored_transcript_without_saving(monkeypatch, client, user, story):
    story.world_description = "Hand-written canals."
    db.session.commit()
    generator = DummyGenerator(chunks=["# World Setting\n\n", "Canals everywhere."])
    monkeypatch.setattr(generation, "get_text_generator", lambda: generator)
    save_transcript(story, "world", [{"role": "user", "content": "Canals instead of streets"}])
    _login(client, user)

    response = client.post("/api/ai-writer/world/finalize", json={"storyId": story.id, "topic": "Tidewrack"})

    assert response.get_data(as_text=True) == "# World Setting\n\nCanals everywhere."
    assert "User: Canals instead of streets" in generator.calls[0]["prompt"]
    assert db.session.get(Story, story.id).world_description == "Hand-written canals."


def test_outline_finalize_fallback_is_parseable_and_not_saved(monkeypatch, client, user, story):
    story.outline_text = "## Chapter 1: Mine\nhand-edited"
    db.session.commit()
    monkeypatch.setattr(generation, "get_text_generator", lambda: None)
    _login(client, user)

    response = client.post(
        "/api/ai-writer/outline/generate",
        json={"storyId": story.id, "worldContext": "w", "characterContext": "c", "numChapters": 3, "messages": []},
    )

    assert response.headers["X-Used-Fallback"] == "true"
    body = response.get_data(as_text=True)
    assert [chapter.chapter_number for chapter in parse_outline(body)] == [1, 2, 3]
    chapters = client.get(f"/api/stories/{story.id}/outline/chapters").get_json()["chapters"]
    assert [(chapter["chapterNumber"], chapter["title"]) for chapter in chapters] == [(1, "Mine")]


def test_scene_generation_streams(monkeypatch, client, user):
    generator = DummyGenerator(chunks=["Rain on ", "the pier."])
    monkeypatch.setattr(generation, "get_text_generator", lambda: generator)
    _login(client, user)

    response = client.post(
        "/api/ai-writer/scene/generate",
        json=dict(CHAPTER_PAYLOAD, sceneDescription="Mara meets Oren at the pier."),
    )

    assert response.get_data(as_text=True) == "Rain on the pier."
    assert "Start of the chapter." in generator.calls[0]["prompt"]


def test_mind_map_generation_returns_graph_without_saving(monkeypatch, client, user, story):
    story.mind_map_data = '{"nodes": [{"id": "keep", "data": {"label": "Keep"}}], "edges": []}'
    db.session.commit()
    generator = DummyGenerator(
        response='```json\n{"nodes": [{"id": "n1", "data": {"label": "Mara"}}, '
        '{"id": "n2", "data": {"label": "Oren"}}], '
        '"edges": [{"id": "e1", "source": "n1", "target": "n2", "label": "owes"}]}\n```'
    )
    monkeypatch.setattr(generation, "get_text_generator", lambda: generator)
    _login(client, user)

    response = client.post(
        "/api/ai-writer/mindmap/generate",
        json={
            "storyId": story.id,
            "worldContext": "w",
            "characterContext": "c",
            "outlineContext": "o",
        },
    )

    assert response.status_code == 200
    data = response.get_json()
    assert data["usedFallback"] is False
    assert [node["id"] for node in data["nodes"]] == ["n1", "n2"]
    assert all("position" in node for node in data["nodes"])
    stored = client.get(f"/api/stories/{story.id}/mindmap").get_json()["mindMapData"]
    assert [node["id"] for node in stored["nodes"]] == ["keep"]

    saved = client.put(
        f"/api/stories/{story.id}/mindmap",
        json={"mindMapData": {"nodes": data["nodes"], "edges": data["edges"]}},
    )
    assert saved.status_code == 200
    stored = client.get(f"/api/stories/{story.id}/mindmap").get_json()["mindMapData"]
    assert stored["nodes"] == data["nodes"]
    assert stored["edges"] == data["edges"]


def test_mind_map_generation_fallback(monkeypatch, client, user):
    monkeypatch.setattr(generation, "get_text_generator", lambda: None)
    _login(client, user)

    response = client.post(
        "/api/ai-writer/mindmap/generate",
        json={"worldContext": "w", "characterContext": "## Mara", "outlineContext": "## Chapter 1: Arrival"},
    )

    assert response.status_code == 200
    assert response.headers["X-Used-Fallback"] == "true"
    assert {node["id"] for node in response.get_json()["nodes"]} >= {"story", "chapter-1", "character-1"}


def test_mind_map_generation_rejects_malformed_output(monkeypatch, client, user, story):
    story.mind_map_data = '{"nodes": [{"id": "keep", "data": {"label": "Keep"}}], "edges": []}'
    db.session.commit()
    monkeypatch.setattr(generation, "get_text_generator", lambda: DummyGenerator(response="I cannot draw maps."))
    _login(client, user)

    response = client.post(
        "/api/ai-writer/mindmap/generate",
        json={"storyId": story.id, "worldContext": "w", "characterContext": "c", "outlineContext": "o"},
    )

    assert response.status_code == 502
    assert "malformed mind map" in response.get_json()["error"]
    stored = client.get(f"/api/stories/{story.id}/mindmap").get_json()["mindMapData"]
    assert [node["id"] for node in stored["nodes"]] == ["keep"]


def test_mind_map_generation_requires_context(client, user):
    _login(client, user)

    response = client.post("/api/ai-writer/mindmap/generate", json={"worldContext": "w"})

    assert response.status_code == 400
    assert "Missing required context" in response.get_json()["error"]
