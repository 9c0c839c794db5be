# api_handler.py
from __future__ import annotations
from typing import Any, Dict, Iterator, List, Optional, Sequence

import openai


class OpenAIUnifiedGenerator:
    """
    Wrapper around the OpenAI SDK that picks the right endpoint for the model
    and exposes both one-shot and streamed completions.

    - GPT-5 / o3 / o4 / 4.1(x) → Responses API
    - GPT-4 / 4o / 3.5 (chatty models) → Chat Completions API
    - Very old text-* models → Legacy Completions API

    Chat transcripts (``messages``) are sent natively to the chat-style
    endpoints and flattened into a single prompt for legacy completions.
    """

    def __init__(self, model_name: str, api_key: str, default_max_tokens: int = 4096) -> None:
        self.model_name = (model_name or "").strip()
        self.api_key = (api_key or "").strip()
        self.default_max_tokens = int(default_max_tokens or 4096)
        if not self.model_name:
            raise ValueError("model_name is required.")
        self._client = openai.OpenAI(api_key=self.api_key)

    # ---------------- heuristics ----------------
    def _uses_responses_api(self) -> bool:
        name = self.model_name.lower()
        return name.startswith((
            "gpt-5", "o3", "o4", "gpt-4.1", "gpt-4o-reasoning"
        ))

    def _uses_chat_completions(self) -> bool:
        if self._uses_responses_api():
            return False
        name = self.model_name.lower()
        legacy_prefixes = ("text-", "code-", "ada", "babbage", "curie", "davinci")
        return not name.startswith(legacy_prefixes)

    # ---------------- public API ----------------
    def generate_response(
        self,
        prompt: str,
        *,
        max_new_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
        **_unsupported: Any,
    ) -> str:
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValueError("prompt must be a non-empty string.")
        max_tokens = self._max_tokens(max_new_tokens)
        conversation = [{"role": "user", "content": prompt}]

        if self._uses_responses_api():
            resp = self._client.responses.create(
                **self._responses_payload(None, conversation, max_tokens, temperature, top_p)
            )
            text = (getattr(resp, "output_text", None) or "").strip()
            if text:
                return text
            raise RuntimeError(f"Model returned no text content. Raw response (truncated): {self._shorten_debug(str(resp))}")

        if self._uses_chat_completions():
            resp = self._client.chat.completions.create(
                **self._chat_payload(None, conversation, max_tokens, temperature, top_p)
            )
            text = self._extract_text_from_chat(resp).strip()
            if text:
                return text
            raise RuntimeError(f"Chat completion returned no text. Raw response (truncated): {self._shorten_debug(str(resp))}")

        resp = self._client.completions.create(**self._legacy_payload(prompt, max_tokens, temperature, top_p))
        choices = getattr(resp, "choices", []) or []
        text = str(getattr(choices[0], "text", "") or "").strip() if choices else ""
        if text:
            return text
        raise RuntimeError(f"Legacy completion returned no text. Raw response (truncated): {self._shorten_debug(str(resp))}")

    def stream_response(
        self,
        prompt: Optional[str],
        *,
        system_prompt: Optional[str] = None,
        messages: Optional[Sequence[Dict[str, str]]] = None,
        max_new_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
        **_unsupported: Any,
    ) -> Iterator[str]:
        """Yield text deltas as the model produces them."""

        conversation: List[Dict[str, str]] = [dict(message) for message in (messages or [])]
        if prompt:
            conversation.append({"role": "user", "content": prompt})
        if not conversation and not system_prompt:
            raise ValueError("A prompt, system prompt or message history is required.")
        if not conversation:
            # Chat endpoints need at least one turn; the system prompt carries the task.
            conversation.append({"role": "user", "content": "Please begin."})
        max_tokens = self._max_tokens(max_new_tokens)

        if self._uses_responses_api():
            payload = self._responses_payload(system_prompt, conversation, max_tokens, temperature, top_p)
            with self._client.responses.create(stream=True, **payload) as stream:
                for event in stream:
                    event_type = getattr(event, "type", "")
                    if event_type == "response.output_text.delta":
                        delta = getattr(event, "delta", "")
                        if delta:
                            yield delta
                    elif event_type in ("response.failed", "error"):
                        raise RuntimeError(f"Streaming response failed: {self._shorten_debug(str(event))}")
            return

        if self._uses_chat_completions():
            payload = self._chat_payload(system_prompt, conversation, max_tokens, temperature, top_p)
            with self._client.chat.completions.create(stream=True, **payload) as stream:
                for chunk in stream:
                    choices = getattr(chunk, "choices", []) or []
                    if not choices:
                        continue
                    delta = getattr(choices[0], "delta", None)
                    content = getattr(delta, "content", None) if delta is not None else None
                    if content:
                        yield content
            return

        flattened = self._flatten(system_prompt, conversation)
        payload = self._legacy_payload(flattened, max_tokens, temperature, top_p)
        with self._client.completions.create(stream=True, **payload) as stream:
            for chunk in stream:
                choices = getattr(chunk, "choices", []) or []
                if choices and getattr(choices[0], "text", None):
                    yield choices[0].text

    def get_compute_device(self) -> str:
        return "OpenAI API"

    # ---------------- payload builders ----------------
    def _max_tokens(self, max_new_tokens: Optional[int]) -> int:
        max_tokens = int(max_new_tokens if max_new_tokens is not None else self.default_max_tokens)
        if max_tokens <= 0:
            raise ValueError("max_new_tokens must be positive.")
        return max_tokens

    def _responses_payload(
        self,
        system_prompt: Optional[str],
        conversation: List[Dict[str, str]],
        max_tokens: int,
        temperature: Optional[float],
        top_p: Optional[float],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model_name,
            "input": conversation,
            "max_output_tokens": max_tokens,
            "instructions": system_prompt,
            "temperature": float(temperature) if temperature is not None else None,
            "top_p": float(top_p) if top_p is not None else None,
        }
        return {key: value for key, value in payload.items() if value is not None}

    def _chat_payload(
        self,
        system_prompt: Optional[str],
        conversation: List[Dict[str, str]],
        max_tokens: int,
        temperature: Optional[float],
        top_p: Optional[float],
    ) -> Dict[str, Any]:
        chat_messages = list(conversation)
        if system_prompt:
            chat_messages.insert(0, {"role": "system", "content": system_prompt})
        kwargs: Dict[str, Any] = {
            "model": self.model_name,
            "messages": chat_messages,
            "max_tokens": max_tokens,
            "n": 1,
        }
        if temperature is not None:
            kwargs["temperature"] = float(temperature)
        if top_p is not None:
            kwargs["top_p"] = float(top_p)
        return kwargs

    def _legacy_payload(
        self,
        prompt: str,
        max_tokens: int,
        temperature: Optional[float],
        top_p: Optional[float],
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": self.model_name,
            "prompt": prompt,
            "max_tokens": max_tokens,
            "n": 1,
        }
        if temperature is not None:
            kwargs["temperature"] = float(temperature)
        if top_p is not None:
            kwargs["top_p"] = float(top_p)
        return kwargs

    @staticmethod
    def _flatten(system_prompt: Optional[str], conversation: Sequence[Dict[str, str]]) -> str:
        lines: List[str] = []
        if system_prompt:
            lines.extend([system_prompt, ""])
        for message in conversation:
            speaker = "User" if message.get("role") == "user" else "Assistant"
            lines.append(f"{speaker}: {message.get('content', '')}")
        lines.append("Assistant:")
        return "\n".join(lines)

    # ---------------- extractors ----------------
    def _extract_text_from_chat(self, resp: Any) -> str:
        choices = getattr(resp, "choices", []) or []
        if not choices:
            return ""
        first = choices[0]
        msg = getattr(first, "message", None)
        if isinstance(msg, dict):
            content = msg.get("content")
        else:
            content = getattr(msg, "content", None)
        if isinstance(content, list):
            parts: List[str] = []
            for p in content:
                if isinstance(p, dict) and p.get("type") == "text":
                    parts.append(str(p.get("text") or ""))
            return "\n".join([p for p in parts if p])
        return str(content or getattr(first, "text", "") or "")

    @staticmethod
    def _shorten_debug(s: str, limit: int = 1200) -> str:
        s = s.replace("\n", " ")
        return (s[:limit] + "…") if len(s) > limit else s
