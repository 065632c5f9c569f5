from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from .schemas.openai import (
    ChatCompletionChunk,
    ChatCompletionResponse,
    ChatMessage,
    Choice,
    ChunkChoice,
    Delta,
    ErrorResponse,
    ResponseMessage,
    Usage,
)


CANONICAL_MODELS = ("haiku", "sonnet", "opus")
DEFAULT_MODEL = "sonnet"
_VENDOR_PREFIXES = ("claude-", "claude_")

SSE_DONE = "data: [DONE]\n\n"


def normalize_model(model: Optional[str], default: str = DEFAULT_MODEL) -> str:
    """Map a client model name onto haiku/sonnet/opus.

    Versioned and vendor-prefixed names resolve by prefix ("claude-sonnet-4-5" -> "sonnet").
    Unknown names pass through lower-cased so the CLI can reject them itself; an empty name
    resolves to ``default``.
    """
    m = (model or "").strip().lower()
    for prefix in _VENDOR_PREFIXES:
        if m.startswith(prefix):
            m = m[len(prefix):]
            break
    for base in CANONICAL_MODELS:
        if m.startswith(base):
            return base
    if not m:
        return default
    return m


@dataclass(frozen=True)
class AssembledPrompt:
    system_text: str
    body_text: str

    def __len__(self) -> int:
        return len(self.system_text) + len(self.body_text)


def assemble_prompt(messages: Iterable[ChatMessage]) -> AssembledPrompt:
    """Flatten chat messages into the CLI's system prompt and single stdin turn.

    Prior assistant turns are kept inline as "[Previous response: ...]" so the
    conversation history survives, although the turn structure does not.
    """
    system_parts: List[str] = []
    body: List[str] = []
    for msg in messages:
        text = msg.text()
        if msg.role == "system":
            system_parts.append(text)
        elif msg.role == "user":
            body.append(text + "\n")
        elif msg.role == "assistant":
            body.append(f"[Previous response: {text}]\n")
    return AssembledPrompt(system_text="\n\n".join(system_parts), body_text="".join(body))


def now_unix() -> int:
    return int(time.time())


def new_completion_id() -> str:
    # Unique per process for interactive use; not a distributed id.
    return f"chatcmpl-{time.time_ns()}"


def estimate_usage(prompt: AssembledPrompt, completion: str) -> Usage:
    prompt_tokens = len(prompt) // 4
    completion_tokens = len(completion) // 4
    return Usage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
    )


def build_completion(model: str, content: str, prompt: AssembledPrompt) -> ChatCompletionResponse:
    return ChatCompletionResponse(
        id=new_completion_id(),
        created=now_unix(),
        model=model,
        choices=[Choice(index=0, message=ResponseMessage(content=content), finish_reason="stop")],
        usage=estimate_usage(prompt, content),
    )


def build_chunk(
    chat_id: str,
    created: int,
    model: str,
    *,
    role: Optional[str] = None,
    content: Optional[str] = None,
    finish_reason: Optional[str] = None,
) -> ChatCompletionChunk:
    return ChatCompletionChunk(
        id=chat_id,
        created=created,
        model=model,
        choices=[ChunkChoice(index=0, delta=Delta(role=role, content=content), finish_reason=finish_reason)],
    )


def error_payload(message: str) -> Dict[str, Any]:
    return ErrorResponse(error={"message": message, "type": "error"}).model_dump()


def sse_frame(data: Any) -> str:
    if hasattr(data, "model_dump"):
        data = data.model_dump()
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"
