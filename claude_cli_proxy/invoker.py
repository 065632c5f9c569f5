from __future__ import annotations

import sys
import time
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Union

from .backend import Backend, BackendProcess, LineTooLongError
from .config import Settings
from .errors import BackendInvocationError, err_cli_failed
from .schemas.claude_cli import AssistantEvent, ResultEvent, parse_stream_event
from .schemas.openai import ChatCompletionChunk, ChatCompletionResponse
from .transform import (
    SSE_DONE,
    AssembledPrompt,
    build_chunk,
    build_completion,
    error_payload,
    new_completion_id,
    now_unix,
    sse_frame,
)


DisconnectCheck = Callable[[], Awaitable[bool]]


class StreamState(Enum):
    AWAITING_ROLE = "awaiting_role"
    STREAMING = "streaming"
    DONE = "done"


class StreamTranslator:
    """Turns CLI stream events into chat.completion.chunk payloads.

    The first content-bearing chunk is always preceded by the assistant role, either
    as a separate role-only chunk (incremental text) or folded into the same chunk
    (result-only fallback). All chunks share one id and one created timestamp.
    """

    def __init__(self, model: str, chat_id: Optional[str] = None, created: Optional[int] = None) -> None:
        self.model = model
        self.chat_id = chat_id or new_completion_id()
        self.created = created if created is not None else now_unix()
        self.state = StreamState.AWAITING_ROLE

    def _chunk(self, **fields) -> ChatCompletionChunk:
        return build_chunk(self.chat_id, self.created, self.model, **fields)

    def feed(self, event: Union[AssistantEvent, ResultEvent]) -> List[ChatCompletionChunk]:
        if self.state is StreamState.DONE:
            raise RuntimeError("stream already finished")
        out: List[ChatCompletionChunk] = []
        if isinstance(event, AssistantEvent):
            for text in event.texts():
                if self.state is StreamState.AWAITING_ROLE:
                    out.append(self._chunk(role="assistant"))
                    self.state = StreamState.STREAMING
                out.append(self._chunk(content=text))
        elif isinstance(event, ResultEvent):
            # Fallback only: once any text has streamed the final result is not re-sent.
            if self.state is StreamState.AWAITING_ROLE and event.result:
                out.append(self._chunk(role="assistant", content=event.result))
                self.state = StreamState.STREAMING
        return out

    def finish(self) -> ChatCompletionChunk:
        self.state = StreamState.DONE
        return self._chunk(finish_reason="stop")


class ClaudeInvoker:
    def __init__(self, settings: Settings, backend: Backend) -> None:
        self.settings = settings
        self.backend = backend

    def build_args(self, model: str, prompt: AssembledPrompt, *, streaming: bool) -> List[str]:
        args = [self.settings.claude_bin, "--print", "--model", model]
        if streaming:
            args += ["--output-format", "stream-json", "--verbose"]
        if prompt.system_text:
            args += ["--system-prompt", prompt.system_text]
        return args

    def _trace_args(self, args: List[str]) -> None:
        if self.settings.debug:
            # The system prompt can be long; keep the trace to one line.
            shown = [a if len(a) <= 80 else a[:77] + "..." for a in args]
            print(f"[proxy] argv: {shown}", file=sys.stderr)

    async def complete(self, prompt: AssembledPrompt, model: str) -> ChatCompletionResponse:
        args = self.build_args(model, prompt, streaming=False)
        self._trace_args(args)
        print(f"[proxy] Processing request (model: {model}, {len(prompt)} chars)", file=sys.stderr)
        start = time.monotonic()
        try:
            result = await self.backend.run(args, prompt.body_text)
        except BackendInvocationError as e:
            print(f"[proxy] Claude CLI error: {e.message}", file=sys.stderr)
            raise
        if result.returncode != 0:
            print(f"[proxy] Claude CLI error: exit status {result.returncode}", file=sys.stderr)
            if result.stderr.strip():
                print(f"[proxy] Stderr: {result.stderr.strip()}", file=sys.stderr)
            raise err_cli_failed(f"exit status {result.returncode}", result.stderr)
        content = result.stdout.strip()
        print(
            f"[proxy] Response received in {time.monotonic() - start:.2f}s ({len(content)} chars)",
            file=sys.stderr,
        )
        return build_completion(model, content, prompt)

    async def stream(
        self,
        prompt: AssembledPrompt,
        model: str,
        is_disconnected: Optional[DisconnectCheck] = None,
    ) -> AsyncIterator[str]:
        """Yield SSE frames for one streamed completion, ending with ``data: [DONE]``."""
        args = self.build_args(model, prompt, streaming=True)
        self._trace_args(args)
        print(f"[proxy] Processing streaming request (model: {model}, {len(prompt)} chars)", file=sys.stderr)
        start = time.monotonic()
        try:
            proc = await self.backend.spawn(args, prompt.body_text)
        except BackendInvocationError as e:
            print(f"[proxy] Failed to start Claude CLI: {e.message}", file=sys.stderr)
            yield sse_frame(error_payload("Failed to start Claude CLI"))
            yield SSE_DONE
            return

        translator = StreamTranslator(model)
        reaped = False
        try:
            try:
                async for line in proc.lines():
                    if is_disconnected is not None and await is_disconnected():
                        print("[proxy] Client disconnected during streaming", file=sys.stderr)
                        return
                    if self.settings.debug:
                        print(f"[proxy] Received stream line: {line[:100]}", file=sys.stderr)
                    event = parse_stream_event(line)
                    if event is None:
                        continue
                    if isinstance(event, ResultEvent) and event.is_error:
                        print(f"[proxy] CLI reported error result ({event.subtype or 'error'})", file=sys.stderr)
                    for chunk in translator.feed(event):
                        yield sse_frame(chunk)
            except LineTooLongError as e:
                print(f"[proxy] Stream line over limit, ending stream: {e}", file=sys.stderr)

            yield sse_frame(translator.finish())
            yield SSE_DONE

            await self._reap(proc)
            reaped = True
            print(f"[proxy] Streaming response completed in {time.monotonic() - start:.2f}s", file=sys.stderr)
        finally:
            if not reaped:
                await proc.kill()

    async def _reap(self, proc: BackendProcess) -> None:
        # Output is already committed to the client; a failed exit is only logged.
        rc = await proc.wait()
        if rc != 0:
            print(f"[proxy] Claude CLI exited with status {rc} after streaming", file=sys.stderr)
            if proc.stderr.strip():
                print(f"[proxy] Stderr: {proc.stderr.strip()}", file=sys.stderr)
