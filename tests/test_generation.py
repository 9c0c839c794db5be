import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from shadowquill import create_app
from shadowquill.config import TestConfig
from shadowquill.services import generation, stage_generation
from shadowquill.services.generation import GenerationError, GenerationStream, normalize_messages
from shadowquill.services.mind_map_generation import (
    build_fallback_graph,
    generate_mind_map,
    parse_graph_response,
)
from shadowquill.services.mind_map_schema import MindMapSchemaError
from shadowquill.services.stage_generation import StageGenerationError, coerce_count


@pytest.fixture
def app_ctx():
    app = create_app(TestConfig)
    ctx = app.app_context()
    ctx.push()
    yield app
    ctx.pop()


class DummyGenerator:
    def __init__(self, chunks=None, response=""):
        self.chunks = chunks or ["Once ", "upon ", "a time."]
        self.response = response
        self.stream_calls = []
        self.prompts = []

    def stream_response(self, prompt, *, system_prompt=None, messages=None, **params):
        self.stream_calls.append({"prompt": prompt, "system_prompt": system_prompt, "messages": messages, "params": params})
        for chunk in self.chunks:
            yield chunk

    def generate_response(self, prompt, **_):
        self.prompts.append(prompt)
        return self.response


def test_stream_emits_chunks_then_single_completion():
    completed = []
    stream = GenerationStream(["a", "b", "c"], on_complete=completed.append)

    events = list(stream.events())

    assert [event.kind for event in events] == ["chunk", "chunk", "chunk", "complete"]
    assert events[-1].text == "abc"
    assert completed == ["abc"]
    assert list(stream.events()) == []


def test_stream_failure_ends_with_error_event():
    def _chunks():
        yield "partial"
        raise RuntimeError("connection reset")

    completed = []
    stream = GenerationStream(_chunks(), on_complete=completed.append)

    events = list(stream.events())

    assert [event.kind for event in events] == ["chunk", "error"]
    assert events[-1].text == "connection reset"
    assert stream.error == "connection reset"
    assert completed == []


def test_prime_reports_early_failure_without_losing_events():
    def _chunks():
        raise RuntimeError("model not loaded")
        yield  # pragma: no cover

    stream = GenerationStream(_chunks())

    first = stream.prime()

    assert first.kind == "error"
    assert [event.kind for event in stream.events()] == ["error"]


def test_prime_keeps_first_chunk_for_iteration():
    stream = GenerationStream(["x", "y"])

    assert stream.prime().text == "x"
    assert "".join(stream.iter_text()) == "xy"


def test_cancel_closes_source_and_suppresses_completion():
    closed = []

    def _chunks():
        try:
            yield "one"
            yield "two"
            yield "three"
        finally:
            closed.append(True)

    completed = []
    stream = GenerationStream(_chunks(), on_complete=completed.append)
    events = stream.events()
    assert next(events).text == "one"

    stream.cancel()

    assert list(events) == []
    assert closed == [True]
    assert completed == []
    assert stream.cancelled


def test_closing_text_iterator_cancels_stream():
    stream = GenerationStream(iter(["a", "b", "c"]))
    texts = stream.iter_text()

    assert next(texts) == "a"
    texts.close()

    assert stream.cancelled
    assert not stream.finished


def test_fallback_chunks_join_to_original_text():
    text = "First paragraph.\n\nSecond paragraph.\n\n\nThird."

    assert "".join(generation._fallback_chunks(text)) == text


def test_normalize_messages_drops_unknown_roles():
    messages = normalize_messages(
        [
            {"role": "system", "content": "ignore"},
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello"},
        ]
    )

    assert messages == [{"role": "user", "content": "Hi"}, {"role": "assistant", "content": "Hello"}]
    with pytest.raises(GenerationError):
        normalize_messages({"role": "user"})
    with pytest.raises(GenerationError):
        normalize_messages([{"role": "user", "content": 5}])


def test_coerce_count_bounds():
    assert coerce_count(None, default=10, maximum=100, label="numChapters") == 10
    assert coerce_count("", default=10, maximum=100, label="numChapters") == 10
    assert coerce_count("12", default=10, maximum=100, label="numChapters") == 12
    assert coerce_count(3.0, default=10, maximum=100, label="numChapters") == 3
    for bad in (0, 101, -1, True, 2.5, "many"):
        with pytest.raises(StageGenerationError):
            coerce_count(bad, default=10, maximum=100, label="numChapters")


def test_chat_uses_template_as_system_prompt(monkeypatch, app_ctx):
    generator = DummyGenerator()
    monkeypatch.setattr(generation, "get_text_generator", lambda: generator)
    history = [{"role": "user", "content": "A drowned city"}]

    stream = stage_generation.stream_world_chat(history, "Tidewrack")

    assert "".join(stream.iter_text()) == "Once upon a time."
    assert not stream.used_fallback
    call = generator.stream_calls[0]
    assert call["prompt"] is None
    assert "Tidewrack" in call["system_prompt"]
    assert call["messages"] == history
    assert "temperature" in call["params"]


def test_finalize_sends_history_inside_prompt(monkeypatch, app_ctx):
    generator = DummyGenerator()
    monkeypatch.setattr(generation, "get_text_generator", lambda: generator)
    history = [
        {"role": "user", "content": "Floating islands"},
        {"role": "assistant", "content": "Tell me about the wind."},
    ]

    stream = stage_generation.stream_world_finalize(history, "Skyreach")
    "".join(stream.iter_text())

    call = generator.stream_calls[0]
    assert call["messages"] is None
    assert "User: Floating islands" in call["prompt"]
    assert "Assistant: Tell me about the wind." in call["prompt"]


def test_chat_requires_a_user_message(app_ctx):
    with pytest.raises(StageGenerationError):
        stage_generation.stream_world_chat([], "topic")
    with pytest.raises(StageGenerationError):
        stage_generation.stream_world_chat([{"role": "assistant", "content": "Hi"}], "topic")
    with pytest.raises(StageGenerationError):
        stage_generation.stream_world_chat(None, "topic")


def test_fallback_stream_without_generator(monkeypatch, app_ctx):
    monkeypatch.setattr(generation, "get_text_generator", lambda: None)
    completed = []

    stream = stage_generation.stream_character_finalize(
        [{"role": "user", "content": "A retired smuggler"}],
        "A port city",
        2,
        on_complete=completed.append,
    )
    text = "".join(stream.iter_text())

    assert stream.used_fallback
    assert "## Character 1" in text
    assert "## Character 2" in text
    assert "## Character 3" not in text
    assert "A retired smuggler" in text
    assert completed == [text]


def test_chapter_generation_validates_payload(app_ctx):
    payload = {
        "worldContext": "w",
        "characterContext": "c",
        "outlineContext": "o",
        "chapterNumber": 1,
        "chapterTitle": "Start",
        "chapterOutline": "Hero wakes.",
    }
    for key in ("worldContext", "chapterTitle", "chapterOutline"):
        broken = dict(payload, **{key: "  "})
        with pytest.raises(StageGenerationError):
            stage_generation.stream_chapter(broken)
    with pytest.raises(StageGenerationError):
        stage_generation.stream_chapter(dict(payload, chapterNumber=0))


def test_chapter_prompt_defaults_optional_context(monkeypatch, app_ctx):
    generator = DummyGenerator()
    monkeypatch.setattr(generation, "get_text_generator", lambda: generator)

    stream = stage_generation.stream_chapter(
        {
            "worldContext": "A port city",
            "characterContext": "Mara, a smuggler",
            "outlineContext": "## Chapter 1: Start",
            "chapterNumber": "1",
            "chapterTitle": "Start",
            "chapterOutline": "Mara returns home.",
        }
    )
    "".join(stream.iter_text())

    prompt = generator.stream_calls[0]["prompt"]
    assert "This is the first chapter." in prompt
    assert "No pre-defined scenes." in prompt
    assert "No mind map provided." in prompt
    assert "{chapterScenes}" not in prompt


def test_parse_graph_response_strips_code_fences():
    raw = '```json\n{"nodes": [{"id": "n1", "data": {"label": "Hero"}}], "edges": []}\n```'

    data = parse_graph_response(raw)

    assert data["nodes"][0]["id"] == "n1"


def test_parse_graph_response_finds_object_inside_prose():
    raw = 'Here is your map: {"nodes": [], "edges": []} Enjoy!'

    assert parse_graph_response(raw) == {"nodes": [], "edges": []}


@pytest.mark.parametrize("raw", ["", "not json at all", '{"nodes": []}', '{"nodes": {}, "edges": []}'])
def test_parse_graph_response_rejects_malformed(raw):
    with pytest.raises(MindMapSchemaError):
        parse_graph_response(raw)


def test_fallback_graph_links_chapters_and_characters():
    outline = (
        "## Chapter 1: Arrival\n* **Themes Explored:** Belonging\n"
        "## Chapter 2: Storm\n"
    )
    characters = "## Mara Vell\nSmuggler\n## Captain Oren\nHarbourmaster\n"

    graph = build_fallback_graph(outline, characters, story_title="Tidewrack")

    labels = {node.id: node.data.label for node in graph.nodes}
    assert labels["story"] == "Tidewrack"
    assert labels["chapter-1"] == "Chapter 1: Arrival"
    assert labels["character-1"] == "Mara Vell"
    assert labels["character-2"] == "Captain Oren"
    assert labels["theme"] == "Theme: Belonging"
    edges = {(edge.source, edge.target): edge.label for edge in graph.edges}
    assert edges[("story", "chapter-1")] == "begins with"
    assert edges[("chapter-1", "chapter-2")] == "leads to"
    assert edges[("character-1", "story")] == "features in"
    assert graph.dangling_edges() == []


def test_generate_mind_map_uses_model_response(monkeypatch, app_ctx):
    generator = DummyGenerator(
        response='{"nodes": [{"id": "n1", "data": {"label": "Mara"}}], "edges": []}'
    )
    monkeypatch.setattr(generation, "get_text_generator", lambda: generator)

    result = generate_mind_map("world", "## Mara", "## Chapter 1: Start", story_title="Tidewrack")

    assert not result.used_fallback
    assert [node.id for node in result.graph.nodes] == ["n1"]
    assert "Tidewrack" in generator.prompts[0]


def test_generate_mind_map_falls_back_without_generator(monkeypatch, app_ctx):
    monkeypatch.setattr(generation, "get_text_generator", lambda: None)

    result = generate_mind_map("world", "## Mara", "## Chapter 1: Start")

    assert result.used_fallback
    assert {node.id for node in result.graph.nodes} == {"story", "chapter-1", "character-1", "theme"}
