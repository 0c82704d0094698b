"""Model-call services: one streamed text response per turn.

Both backends yield plain text deltas. The bubble parser downstream does not
care how the text is chunked.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol, Sequence

import httpx

from bubbles.grammar import protocol_instruction
from bubbles.records import MessageRecord
from roster.manager import Persona

logger = logging.getLogger(__name__)


# -----------------------------
# Types & defaults
# -----------------------------

@dataclass
class GenerationConfig:
    max_new_tokens: int = 1024
    temperature: float = 1.0
    top_p: float = 0.95
    stop: Optional[List[str]] = None


@dataclass
class ModelRequest:
    system_instruction: str
    messages: List[Dict[str, str]] = field(default_factory=list)


class ModelService(Protocol):
    def stream(self, request: ModelRequest) -> Iterable[str]:
        """Lazily yield text deltas; raise on failure."""
        ...


# -----------------------------
# Prompt assembly
# -----------------------------

def build_system_instruction(
    personas: Sequence[Persona],
    *,
    system_name: str = "伴星",
    user_title: str = "念主",
) -> str:
    """System instruction carrying the active personas and the output protocol."""
    names = ", ".join(p.name for p in personas)
    directives = "\n".join(f"- {p.name} ({p.id}): {p.instruction}" for p in personas)
    return "\n".join(
        [
            f"You are orchestrating a group chat in the '{system_name}' system for '{user_title}' (the user).",
            f"Current active personas: {names}.",
            f"Personalities:\n{directives}",
            protocol_instruction(p.id for p in personas),
        ]
    )


def build_messages(window: Sequence[MessageRecord], user_text: str) -> List[Dict[str, str]]:
    """Rolling window plus the new user text, in chat-message form.

    Agent records are prefixed with their speaker id so the model can tell
    the personas apart.
    """
    msgs: List[Dict[str, str]] = []
    for rec in window:
        if rec.open:
            continue
        if rec.is_user:
            msgs.append({"role": "user", "content": rec.text})
        else:
            msgs.append({"role": "assistant", "content": f"[{rec.speaker}] {rec.text}"})
    msgs.append({"role": "user", "content": user_text})
    return msgs


def _bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(v)


def _generation_from_config(model_cfg: Dict[str, Any]) -> GenerationConfig:
    return GenerationConfig(
        max_new_tokens=int(model_cfg.get("max_new_tokens", 1024)),
        temperature=float(model_cfg.get("temperature", 1.0)),
        top_p=float(model_cfg.get("top_p", 0.95)),
        stop=list(model_cfg["stop"]) if model_cfg.get("stop") else None,
    )


# -----------------------------
# llama.cpp backend
# -----------------------------

class LlamaStreamService:
    """Local GGUF model via :mod:`llama_cpp`, streamed token by token."""

    def __init__(self, model_path: str, *, generation: Optional[GenerationConfig] = None, **kwargs: Any) -> None:
        """
        Parameters
        ----------
        model_path : str
            Path to .gguf weights.
        generation : GenerationConfig | None
            Sampling defaults.
        kwargs : Any
            Passed to llama_cpp.Llama:
              - n_threads: defaults to os.cpu_count()
              - n_gpu_layers: auto if gpu offload supported; else 0
              - use_mmap: default True, retried without mmap on OSError
        """
        # Lazy import so unit tests pass without the dep.
        from llama_cpp import Llama, llama_supports_gpu_offload  # type: ignore

        threads = kwargs.get("n_threads")
        if threads is None or int(threads) <= 0:
            kwargs["n_threads"] = os.cpu_count() or 1

        if kwargs.get("n_gpu_layers") is None:
            kwargs["n_gpu_layers"] = -1 if llama_supports_gpu_offload() else 0

        use_mmap = _bool(kwargs.get("use_mmap", True), True)
        kwargs["use_mmap"] = use_mmap
        kwargs.setdefault("verbose", False)

        try:
            self._llama = Llama(model_path=model_path, **kwargs)
        except OSError as e:
            if not use_mmap:
                raise
            # Network filesystems and some Windows setups refuse mmap.
            logger.warning("mmap load failed, retrying without mmap: %s", e)
            kwargs["use_mmap"] = False
            self._llama = Llama(model_path=model_path, **kwargs)

        self._supports_chat_template = hasattr(self._llama, "apply_chat_template")
        self.generation = generation or GenerationConfig()
        self._default_stops = ["</s>", "###", "User:"]

    def stream(self, request: ModelRequest) -> Iterator[str]:
        prompt = self._render_chat(request)
        cfg = self.generation
        parts = self._llama(
            prompt,
            max_tokens=cfg.max_new_tokens,
            temperature=cfg.temperature,
            top_p=cfg.top_p,
            stop=cfg.stop or self._default_stops,
            stream=True,
        )
        for part in parts:
            token = _completion_text(part)
            if token:
                yield token

    def _render_chat(self, request: ModelRequest) -> str:
        messages = [{"role": "system", "content": request.system_instruction}, *request.messages]
        if self._supports_chat_template:
            try:
                tpl = self._llama.apply_chat_template(messages, add_generation_prompt=True)
                return tpl.decode("utf-8", "ignore") if isinstance(tpl, (bytes, bytearray)) else str(tpl)
            except Exception as e:
                logger.debug("Chat template unavailable, using fallback: %s", e)

        # Generic instruct-style template
        lines: List[str] = ["### System\n" + request.system_instruction.strip() + "\n"]
        for m in request.messages:
            if m["role"] == "user":
                lines.append("### User\n" + m["content"].strip() + "\n")
            elif m["role"] == "assistant":
                lines.append("### Assistant\n" + m["content"].strip() + "\n")
        lines.append("### Assistant\n")
        return "\n".join(lines)


def _completion_text(part: Dict[str, Any]) -> str:
    choices = part.get("choices") or [{}]
    return choices[0].get("text") or ""


# -----------------------------
# OpenAI-compatible HTTP backend
# -----------------------------

class HTTPStreamService:
    """Streams ``/chat/completions`` server-sent events over httpx."""

    def __init__(
        self,
        base_url: str,
        model_name: str,
        *,
        api_key: Optional[str] = None,
        generation: Optional[GenerationConfig] = None,
        timeout: float = 60.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model_name = model_name
        self.generation = generation or GenerationConfig()
        headers = {"Accept": "text/event-stream"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout, connect=5.0),
            headers=headers,
        )
        if client is not None:
            self._client.headers.update(headers)

    def stream(self, request: ModelRequest) -> Iterator[str]:
        cfg = self.generation
        payload: Dict[str, Any] = {
            "model": self.model_name,
            "messages": [{"role": "system", "content": request.system_instruction}, *request.messages],
            "temperature": cfg.temperature,
            "top_p": cfg.top_p,
            "max_tokens": cfg.max_new_tokens,
            "stream": True,
        }
        if cfg.stop:
            payload["stop"] = cfg.stop

        with self._client.stream("POST", f"{self.base_url}/chat/completions", json=payload) as resp:
            resp.raise_for_status()
            for line in resp.iter_lines():
                text = _sse_delta(line)
                if text is None:
                    return
                if text:
                    yield text

    def close(self) -> None:
        self._client.close()


def _sse_delta(line: str) -> Optional[str]:
    """Text carried by one SSE line; "" for lines without text, None at [DONE]."""
    line = line.strip()
    if not line.startswith("data:"):
        return ""
    data = line[len("data:"):].strip()
    if data == "[DONE]":
        return None
    try:
        event = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON SSE payload: %.80s", data)
        return ""
    if "error" in event:
        raise RuntimeError(f"Model stream error: {event['error']}")
    choices = event.get("choices") or [{}]
    delta = choices[0].get("delta") or {}
    return delta.get("content") or ""


# -----------------------------
# Convenience factory
# -----------------------------

def create_from_config(cfg: Dict[str, Any]) -> ModelService:
    """Create the configured model service from a config dict."""
    model_cfg = (cfg or {}).get("model", {}) if isinstance(cfg, dict) else {}
    backend = str(model_cfg.get("backend", "llama")).lower()
    generation = _generation_from_config(model_cfg)

    if backend == "openai":
        key_env = model_cfg.get("api_key_env") or "OPENAI_API_KEY"
        return HTTPStreamService(
            base_url=str(model_cfg.get("base_url") or "http://127.0.0.1:8080/v1"),
            model_name=str(model_cfg.get("model_name") or "local-model"),
            api_key=os.environ.get(key_env),
            generation=generation,
            timeout=float(model_cfg.get("timeout", 60)),
        )

    if backend != "llama":
        raise ValueError(f"Unknown model backend: {backend!r}")

    model_dir = model_cfg.get("model_dir")
    model_path = model_cfg.get("model_path")
    if model_dir and model_path and not os.path.isabs(model_path):
        model_path = os.path.join(model_dir, model_path)

    if not model_path or not os.path.exists(model_path):
        raise FileNotFoundError(f"Model not found at: {model_path!r}")

    params = {
        "n_ctx": model_cfg.get("n_ctx", 4096),
        "n_threads": model_cfg.get("n_threads"),
        "n_gpu_layers": model_cfg.get("n_gpu_layers"),
        "use_mmap": model_cfg.get("use_mmap", True),
    }
    # llama.cpp is picky about None values
    params = {k: v for k, v in params.items() if v is not None}

    return LlamaStreamService(model_path=model_path, generation=generation, **params)
