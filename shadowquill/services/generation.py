"""Prompt configuration, text-generator selection and streamed completions."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional

from flask import current_app

LOGGER = logging.getLogger(__name__)

PROMPT_CACHE_KEY = "_PROMPT_CONFIG_CACHE"
GENERATOR_CACHE_KEY = "_TEXT_GENERATOR_INSTANCE"

CHAT_ROLES = ("user", "assistant")


class GenerationError(RuntimeError):
    """Raised when a completion cannot be produced."""


@dataclass
class StreamEvent:
    kind: str  # "chunk", "complete" or "error"
    text: str = ""


def load_prompt_entry(key: str) -> Dict[str, Any]:
    config = _load_prompt_config()
    try:
        entry = config[key]
    except KeyError as exc:
        raise GenerationError(f"Prompt configuration is missing the '{key}' entry.") from exc
    if not isinstance(entry, dict):
        raise GenerationError(f"Prompt configuration entry '{key}' must be a dictionary.")
    if not entry.get("prompt_template"):
        raise GenerationError(f"Prompt configuration entry '{key}' is missing the template text.")
    return entry


def _load_prompt_config() -> Dict[str, Any]:
    app = current_app
    cached = app.config.get(PROMPT_CACHE_KEY)
    if isinstance(cached, dict):
        return cached

    config_path = app.config.get("PROMPT_CONFIG_PATH")
    if not config_path:
        raise GenerationError("PROMPT_CONFIG_PATH is not configured.")

    path = Path(config_path)
    if not path.exists():
        raise GenerationError(f"Prompt configuration file not found at: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            data = json.load(fh)
        except json.JSONDecodeError as exc:  # pragma: no cover - malformed file should be obvious at runtime
            raise GenerationError(f"Unable to parse prompt configuration: {exc.msg}") from exc

    if not isinstance(data, dict):
        raise GenerationError("Prompt configuration must be a JSON object.")

    app.config[PROMPT_CACHE_KEY] = data
    return data


_GENERATION_PARAMETER_KEYS = {
    "max_new_tokens",
    "temperature",
    "top_p",
    "repetition_penalty",
    "presence_penalty",
    "frequency_penalty",
    "top_k",
}


def extract_generation_parameters(parameters: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Filter a raw parameters dictionary to generation kwargs supported by the LLM."""

    if not isinstance(parameters, dict):
        return {}

    kwargs: Dict[str, Any] = {}
    for key in _GENERATION_PARAMETER_KEYS:
        if key in parameters and parameters[key] is not None:
            kwargs[key] = parameters[key]
    return kwargs


def apply_template(template: str, **values: Any) -> str:
    result = template
    for key, raw in values.items():
        replacement = raw if isinstance(raw, str) else str(raw)
        result = result.replace(f"{{{key}}}", replacement)
    return result


def get_text_generator() -> Optional[Any]:  # pragma: no cover - integration point
    """Return the configured generator, or ``None`` to use fallback text.

    The hosted API wins when both ``OPENAI_API_KEY`` and ``OPENAI_MODEL`` are
    set; otherwise a local model is loaded from ``TEXT_GENERATOR_MODEL_PATH``.
    """

    app = current_app
    if GENERATOR_CACHE_KEY in app.config:
        return app.config[GENERATOR_CACHE_KEY]

    generator = None
    api_key = app.config.get("OPENAI_API_KEY")
    model_name = app.config.get("OPENAI_MODEL")
    model_path = app.config.get("TEXT_GENERATOR_MODEL_PATH")

    if api_key and model_name:
        try:
            from api_handler import OpenAIUnifiedGenerator

            app.logger.info("Using OpenAI model %s for generation.", model_name)
            generator = OpenAIUnifiedGenerator(model_name=model_name, api_key=api_key)
        except Exception as exc:
            app.logger.warning("Failed to initialise OpenAI generator for '%s': %s", model_name, exc)
    elif model_path:
        try:
            from text_generator import TextGenerator

            app.logger.info("Initialising text generator with model path: %s", model_path)
            generator = TextGenerator(model_path=model_path)
        except Exception as exc:
            app.logger.warning("Failed to initialise text generator at '%s': %s", model_path, exc)
    else:
        app.logger.info("No text generator configured; using fallback responses.")

    if generator is not None:
        app.logger.info("Text generator ready on %s.", generator.get_compute_device())
    app.config[GENERATOR_CACHE_KEY] = generator
    return generator


def normalize_messages(raw: Any) -> List[Dict[str, str]]:
    """Validate a chat transcript and keep only user/assistant turns."""

    if raw is None:
        return []
    if not isinstance(raw, list):
        raise GenerationError("Chat messages must be a list.")

    messages: List[Dict[str, str]] = []
    for item in raw:
        if not isinstance(item, Mapping):
            raise GenerationError("Each chat message must be an object with a role and content.")
        role = item.get("role")
        content = item.get("content")
        if not isinstance(role, str) or not isinstance(content, str):
            raise GenerationError("Each chat message must be an object with a role and content.")
        if role not in CHAT_ROLES:
            continue
        messages.append({"role": role, "content": content})
    return messages


def format_chat_history(messages: Iterable[Mapping[str, str]]) -> str:
    lines = []
    for message in messages:
        role = message.get("role")
        if role not in CHAT_ROLES:
            continue
        speaker = "User" if role == "user" else "Assistant"
        lines.append(f"{speaker}: {message.get('content', '')}")
    return "\n".join(lines)


class GenerationStream:
    """An incremental completion that ends in exactly one terminal event.

    Iterating :meth:`events` yields ``chunk`` events followed by a single
    ``complete`` (carrying the full text) or ``error`` event. :meth:`cancel`
    stops the stream early and closes the underlying chunk source; a cancelled
    stream emits no terminal event.
    """

    def __init__(
        self,
        chunks: Iterable[str],
        *,
        label: str = "completion",
        used_fallback: bool = False,
        on_complete: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.label = label
        self.used_fallback = used_fallback
        self._source = iter(chunks)
        self._on_complete = on_complete
        self._parts: List[str] = []
        self._primed: List[StreamEvent] = []
        self.cancelled = False
        self.finished = False
        self.error: Optional[str] = None

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def prime(self) -> Optional[StreamEvent]:
        """Pull the first event ahead of time so early failures can be reported."""

        if self._primed or self.finished:
            return self._primed[0] if self._primed else None
        event = self._next_event()
        if event is not None:
            self._primed.append(event)
        return event

    def events(self) -> Iterator[StreamEvent]:
        while self._primed:
            yield self._primed.pop(0)
        while not self.cancelled:
            event = self._next_event()
            if event is None:
                return
            yield event

    def iter_text(self) -> Iterator[str]:
        """Yield text chunks; closing this iterator cancels the stream."""

        try:
            for event in self.events():
                if event.kind == "chunk":
                    yield event.text
                elif event.kind == "error":
                    return
        finally:
            if not self.finished:
                self.cancel()

    def cancel(self) -> None:
        if self.cancelled or self.finished:
            return
        self.cancelled = True
        close = getattr(self._source, "close", None)
        if callable(close):
            close()
        LOGGER.info("%s stream cancelled after %d characters", self.label, len(self.text))

    def _next_event(self) -> Optional[StreamEvent]:
        if self.finished or self.cancelled:
            return None
        try:
            chunk = next(self._source)
        except StopIteration:
            self.finished = True
            full_text = self.text
            if self._on_complete is not None:
                self._on_complete(full_text)
            return StreamEvent("complete", full_text)
        except Exception as exc:
            self.finished = True
            self.error = str(exc) or exc.__class__.__name__
            LOGGER.warning("%s stream failed: %s", self.label, self.error)
            return StreamEvent("error", self.error)
        text = chunk if isinstance(chunk, str) else str(chunk or "")
        self._parts.append(text)
        return StreamEvent("chunk", text)


def stream_prompt(
    prompt_key: str,
    values: Mapping[str, Any],
    *,
    messages: Optional[List[Dict[str, str]]] = None,
    fallback: Callable[[], str],
    label: Optional[str] = None,
    on_complete: Optional[Callable[[str], None]] = None,
) -> GenerationStream:
    """Build the prompt for ``prompt_key`` and start streaming a completion.

    With ``messages`` the rendered template is sent as the system prompt of a
    chat; otherwise it is sent as a single prompt. Without a configured
    generator the ``fallback`` text is streamed instead.
    """

    entry = load_prompt_entry(prompt_key)
    prompt = apply_template(entry["prompt_template"], **values)
    parameters = extract_generation_parameters(entry.get("parameters"))
    stream_label = label or prompt_key

    generator = get_text_generator()
    if generator is None:
        return GenerationStream(
            _fallback_chunks(fallback()),
            label=stream_label,
            used_fallback=True,
            on_complete=on_complete,
        )

    if messages is not None:
        chunks = generator.stream_response(None, system_prompt=prompt, messages=messages, **parameters)
    else:
        chunks = generator.stream_response(prompt, **parameters)
    return GenerationStream(chunks, label=stream_label, on_complete=on_complete)


def complete_prompt(prompt_key: str, values: Mapping[str, Any]) -> Optional[str]:
    """Render ``prompt_key`` and return the full response, or ``None`` without a generator."""

    entry = load_prompt_entry(prompt_key)
    prompt = apply_template(entry["prompt_template"], **values)
    parameters = extract_generation_parameters(entry.get("parameters"))

    generator = get_text_generator()
    if generator is None:
        return None
    try:
        return generator.generate_response(prompt, **parameters)
    except Exception as exc:
        raise GenerationError(f"The text generator failed: {exc}") from exc


def _fallback_chunks(text: str) -> Iterator[str]:
    paragraphs = text.split("\n\n")
    last_index = len(paragraphs) - 1
    for index, paragraph in enumerate(paragraphs):
        yield paragraph if index == last_index else paragraph + "\n\n"


__all__ = [
    "GenerationError",
    "GenerationStream",
    "StreamEvent",
    "apply_template",
    "complete_prompt",
    "extract_generation_parameters",
    "format_chat_history",
    "get_text_generator",
    "load_prompt_entry",
    "normalize_messages",
    "stream_prompt",
]
