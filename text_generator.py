"""Local Hugging Face model backend for the writing assistant.

:class:`TextGenerator` loads a causal language model once per process and
serves two kinds of request:

* :meth:`TextGenerator.generate_response` for one-shot completions such as the
  mind map JSON;
* :meth:`TextGenerator.stream_response` for the chat and drafting stages,
  where tokens are pushed to the browser while generation continues in a
  worker thread.

Chat transcripts are rendered with the tokenizer's chat template when the
model ships one, and flattened into ``User:`` / ``Assistant:`` lines otherwise.
4-bit loading is used when CUDA and ``bitsandbytes`` are available.
"""

from __future__ import annotations

import logging
from threading import Event, Thread
from typing import Any, Dict, Iterator, List, Optional, Sequence

import torch
from transformers import (
    AutoModelForCausalLM,
    AutoTokenizer,
    BitsAndBytesConfig,
    StoppingCriteria,
    StoppingCriteriaList,
    TextIteratorStreamer,
)


LOGGER = logging.getLogger(__name__)


class CancelledCriteria(StoppingCriteria):
    """Stops ``model.generate`` once ``event`` is set."""

    def __init__(self, event: Event) -> None:
        self.event = event

    def __call__(self, input_ids: torch.LongTensor, scores: torch.FloatTensor, **kwargs: Any) -> torch.BoolTensor:
        return torch.full((input_ids.shape[0],), self.event.is_set(), dtype=torch.bool, device=input_ids.device)


class TextGenerator:
    def __init__(
        self,
        model_path: str,
        *,
        temperature: Optional[float] = 0.8,
        top_p: Optional[float] = 0.95,
        max_new_tokens: int = 1024,
        seed: int = 42,
        device_map: str | Dict[str, Any] | None = "auto",
        use_4bit: bool = True,
        trust_remote_code: bool = False,
        stream_timeout: float = 120.0,
    ):
        self.temperature = temperature
        self.top_p = top_p
        self.max_new_tokens = max_new_tokens
        self.use_4bit = use_4bit
        self.stream_timeout = stream_timeout

        torch.manual_seed(seed)
        if torch.cuda.is_available():
            torch.cuda.manual_seed_all(seed)

        model_kwargs: Dict[str, Any] = {
            "device_map": device_map,
            "torch_dtype": "auto",
            "trust_remote_code": trust_remote_code,
        }
        quantization_config = self._build_quantization_config()
        if quantization_config is not None:
            model_kwargs["quantization_config"] = quantization_config

        self.model = AutoModelForCausalLM.from_pretrained(model_path, **model_kwargs)
        self.model.eval()

        self.tokenizer = AutoTokenizer.from_pretrained(
            model_path,
            trust_remote_code=trust_remote_code,
        )
        if self.tokenizer.pad_token is None:
            # Many causal models ship without a pad token; reuse EOS.
            self.tokenizer.pad_token = self.tokenizer.eos_token
        if self.tokenizer.padding_side != "left":
            self.tokenizer.padding_side = "left"

    def _build_quantization_config(self) -> Optional[BitsAndBytesConfig]:
        if not self.use_4bit:
            return None

        if not torch.cuda.is_available():
            LOGGER.info("CUDA is not available; skipping 4-bit quantisation.")
            return None

        try:
            import bitsandbytes  # type: ignore  # noqa: F401
        except ImportError:
            LOGGER.info("bitsandbytes not installed; using full precision model loading.")
            return None

        LOGGER.info("Loading model with 4-bit quantisation enabled.")
        return BitsAndBytesConfig(
            load_in_4bit=True,
            bnb_4bit_use_double_quant=True,
            bnb_4bit_quant_type="nf4",
            bnb_4bit_compute_dtype=torch.float16,
        )

    def _prepare_generation_kwargs(
        self,
        max_new_tokens: Optional[int],
        *,
        temperature: Optional[float],
        top_p: Optional[float],
        **extra_parameters: Any,
    ) -> Dict[str, Any]:
        tokens_to_generate = self.max_new_tokens if max_new_tokens is None else int(max_new_tokens)
        if tokens_to_generate <= 0:
            raise ValueError("max_new_tokens must be a positive integer")

        kwargs: Dict[str, Any] = {
            "max_new_tokens": tokens_to_generate,
            "temperature": self.temperature if temperature is None else temperature,
            "top_p": self.top_p if top_p is None else top_p,
            "do_sample": True,
            "pad_token_id": self.tokenizer.pad_token_id,
        }
        if kwargs["temperature"] is None:
            kwargs.pop("temperature")
        if kwargs["top_p"] is None:
            kwargs.pop("top_p")

        # presence/frequency penalties are API-only settings
        for key, value in extra_parameters.items():
            if value is not None and key not in ("presence_penalty", "frequency_penalty"):
                kwargs[key] = value
        return kwargs

    def _render_prompt(
        self,
        prompt: Optional[str],
        system_prompt: Optional[str],
        messages: Optional[Sequence[Dict[str, str]]],
    ) -> str:
        conversation: List[Dict[str, str]] = []
        if system_prompt:
            conversation.append({"role": "system", "content": system_prompt})
        conversation.extend(dict(message) for message in (messages or []))
        if prompt:
            conversation.append({"role": "user", "content": prompt})
        if not conversation:
            raise ValueError("A prompt, system prompt or message history is required.")

        if len(conversation) == 1 and prompt:
            return prompt

        if getattr(self.tokenizer, "chat_template", None):
            return self.tokenizer.apply_chat_template(conversation, tokenize=False, add_generation_prompt=True)

        lines = []
        for message in conversation:
            role = message.get("role")
            if role == "system":
                lines.extend([message.get("content", ""), ""])
            else:
                speaker = "User" if role == "user" else "Assistant"
                lines.append(f"{speaker}: {message.get('content', '')}")
        lines.append("Assistant:")
        return "\n".join(lines)

    def generate_response(
        self,
        prompt: str,
        *,
        max_new_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
        **extra_parameters: Any,
    ) -> str:
        """Generate a response to ``prompt`` without echoing it back."""

        generation_kwargs = self._prepare_generation_kwargs(
            max_new_tokens,
            temperature=temperature,
            top_p=top_p,
            **extra_parameters,
        )
        enc = self.tokenizer(prompt, return_tensors="pt").to(self.model.device)
        with torch.no_grad():
            out = self.model.generate(**enc, **generation_kwargs)
        prompt_len = enc["input_ids"].shape[-1]
        generated_ids = out[0, prompt_len:]
        if generated_ids.numel() == 0:
            return ""
        return self.tokenizer.decode(generated_ids, skip_special_tokens=True).strip()

    def stream_response(
        self,
        prompt: Optional[str],
        *,
        system_prompt: Optional[str] = None,
        messages: Optional[Sequence[Dict[str, str]]] = None,
        max_new_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
        **extra_parameters: Any,
    ) -> Iterator[str]:
        """Yield decoded text as tokens are produced by a background generation thread.

        Closing the returned iterator stops the worker at its next token and
        waits for it to exit.
        """

        rendered = self._render_prompt(prompt, system_prompt, messages)
        generation_kwargs = self._prepare_generation_kwargs(
            max_new_tokens,
            temperature=temperature,
            top_p=top_p,
            **extra_parameters,
        )
        enc = self.tokenizer(rendered, return_tensors="pt").to(self.model.device)
        streamer = TextIteratorStreamer(
            self.tokenizer,
            skip_prompt=True,
            skip_special_tokens=True,
            timeout=self.stream_timeout,
        )

        cancelled = Event()
        criteria = StoppingCriteriaList(generation_kwargs.pop("stopping_criteria", None) or [])
        criteria.append(CancelledCriteria(cancelled))

        def _run() -> None:
            with torch.no_grad():
                self.model.generate(**enc, streamer=streamer, stopping_criteria=criteria, **generation_kwargs)

        worker = Thread(target=_run, name="text-generator-stream", daemon=True)
        worker.start()
        try:
            for text in streamer:
                if text:
                    yield text
        finally:
            cancelled.set()
            worker.join()

    def get_compute_device(self) -> str:
        try:
            parameter = next(self.model.parameters())
        except StopIteration:  # pragma: no cover - defensive fallback
            device = getattr(self.model, "device", torch.device("cpu"))
        else:
            device = parameter.device

        device_str = str(device).lower()
        if any(token in device_str for token in ("cuda", "hip", "mps")):
            return "GPU"
        return "CPU"
