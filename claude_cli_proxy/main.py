from __future__ import annotations

import json
import secrets
import sys
from typing import Optional

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import ValidationError
from starlette.requests import ClientDisconnect

from .backend import Backend, SubprocessBackend
from .config import ConfigError, Settings
from .errors import (
    ProxyError,
    RequestParseError,
    err_invalid_api_key,
    err_method_not_allowed,
)
from .invoker import ClaudeInvoker
from .schemas.openai import ChatCompletionRequest
from .transform import assemble_prompt, normalize_model


# Both routes take every method: /health answers any of them, chat maps non-POST to the JSON 405.
_ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE", "CONNECT"]

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
}


def _check_auth(settings: Settings, authorization: str | None) -> None:
    expected = f"Bearer {settings.api_key}"
    if not authorization or not secrets.compare_digest(authorization.encode(), expected.encode()):
        raise err_invalid_api_key()


def _describe_validation_error(e: ValidationError) -> str:
    # First error only, without the input echo or docs link pydantic appends.
    errors = e.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    loc = ".".join(str(p) for p in first.get("loc", ()))
    msg = first.get("msg", "invalid value")
    return f"Invalid request body: {loc}: {msg}" if loc else f"Invalid request body: {msg}"


async def _parse_chat_request(request: Request) -> ChatCompletionRequest:
    try:
        raw = await request.body()
    except (ClientDisconnect, OSError) as e:
        raise RequestParseError("Failed to read request") from e
    try:
        body = json.loads(raw)
    except ValueError as e:
        raise RequestParseError("Invalid JSON") from e
    if body is None:
        body = {}
    try:
        return ChatCompletionRequest.model_validate(body)
    except ValidationError as e:
        raise RequestParseError(_describe_validation_error(e)) from e


def create_app(settings: Optional[Settings] = None, backend: Optional[Backend] = None) -> FastAPI:
    """Build the proxy app; with no arguments settings come from the environment.

    Usable as a uvicorn factory: ``uvicorn claude_cli_proxy.main:create_app --factory``.
    """
    if settings is None:
        settings = Settings.from_env()
    if backend is None:
        backend = SubprocessBackend(line_limit=settings.stream_line_limit)
    invoker = ClaudeInvoker(settings, backend)

    app = FastAPI(title="Claude Code CLI Proxy")

    @app.exception_handler(ProxyError)
    async def _proxy_error(request: Request, exc: ProxyError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.payload())

    @app.api_route("/health", methods=_ALL_METHODS)
    async def health():
        return PlainTextResponse("ok")

    @app.api_route("/v1/chat/completions", methods=_ALL_METHODS)
    async def chat_completions(
        request: Request,
        authorization: str | None = Header(default=None, alias="authorization"),
    ):
        # Auth precedes the method check.
        _check_auth(settings, authorization)
        if request.method != "POST":
            raise err_method_not_allowed()

        parsed = await _parse_chat_request(request)
        model = normalize_model(parsed.model, settings.default_model)
        prompt = assemble_prompt(parsed.messages)

        if parsed.stream:
            return StreamingResponse(
                invoker.stream(prompt, model, request.is_disconnected),
                media_type="text/event-stream",
                headers=STREAM_HEADERS,
            )
        completion = await invoker.complete(prompt, model)
        return JSONResponse(content=completion.model_dump())

    return app


def main() -> None:  # pragma: no cover
    import uvicorn

    try:
        settings = Settings.from_env()
    except ConfigError as e:
        print(f"[proxy] {e}", file=sys.stderr)
        raise SystemExit(1)
    print(
        f"[proxy] Claude Code proxy starting on {settings.host}:{settings.port} "
        f"(default model: {settings.default_model}, streaming: enabled)",
        file=sys.stderr,
    )
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":  # pragma: no cover
    main()
