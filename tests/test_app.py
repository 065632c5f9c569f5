import json
from typing import Any, List

from fastapi.testclient import TestClient

from claude_cli_proxy.backend import InMemoryBackend
from claude_cli_proxy.config import Settings
from claude_cli_proxy.main import create_app


AUTH = {"Authorization": "Bearer test-secret"}


def _client(backend: InMemoryBackend, **overrides: Any) -> TestClient:
    settings = Settings(api_key="test-secret", **overrides)
    return TestClient(create_app(settings, backend))


def _sse_payloads(text: str) -> List[Any]:
    out: List[Any] = []
    for frame in text.split("\n\n"):
        if not frame:
            continue
        assert frame.startswith("data: ")
        body = frame[len("data: "):]
        out.append(body if body == "[DONE]" else json.loads(body))
    return out


def test_health_needs_no_auth():
    client = _client(InMemoryBackend(start_error="missing"))
    r = client.get("/health")
    assert r.status_code == 200
    assert r.text == "ok"

    assert client.head("/health").status_code == 200
    r = client.post("/health", json={"ping": 1})
    assert r.status_code == 200
    assert r.text == "ok"


def test_missing_or_wrong_bearer_is_rejected_without_invoking_backend():
    backend = InMemoryBackend("never")
    client = _client(backend)
    body = {"model": "sonnet", "messages": [{"role": "user", "content": "hi"}]}

    for headers in (
        {},
        {"Authorization": "test-secret"},
        {"Authorization": "Bearer wrong"},
        {"Authorization": "bearer test-secret"},
        {"Authorization": "Basic dGVzdC1zZWNyZXQ="},
    ):
        r = client.post("/v1/chat/completions", json=body, headers=headers)
        assert r.status_code == 401
        assert r.json() == {"error": {"message": "Invalid API key", "type": "error"}}
    assert backend.calls == []


def test_non_post_is_405():
    client = _client(InMemoryBackend())
    r = client.get("/v1/chat/completions", headers=AUTH)
    assert r.status_code == 405
    assert r.json() == {"error": {"message": "Method not allowed", "type": "error"}}
    assert client.put("/v1/chat/completions", headers=AUTH, json={}).status_code == 405

    r = client.request("TRACE", "/v1/chat/completions", headers=AUTH)
    assert r.status_code == 405
    assert r.json() == {"error": {"message": "Method not allowed", "type": "error"}}


def test_unauthenticated_non_post_is_401():
    client = _client(InMemoryBackend())
    assert client.get("/v1/chat/completions").status_code == 401
    assert client.request("TRACE", "/v1/chat/completions").status_code == 401


def test_invalid_json_is_400():
    backend = InMemoryBackend("never")
    client = _client(backend)
    r = client.post(
        "/v1/chat/completions",
        content=b"{not json",
        headers={**AUTH, "Content-Type": "application/json"},
    )
    assert r.status_code == 400
    assert r.json() == {"error": {"message": "Invalid JSON", "type": "error"}}

    r = client.post("/v1/chat/completions", content=b"", headers=AUTH)
    assert r.status_code == 400

    r = client.post("/v1/chat/completions", json={"messages": "not a list"}, headers=AUTH)
    assert r.status_code == 400
    assert r.json() == {"error": {"message": "Invalid request body: messages: Input should be a valid list", "type": "error"}}

    r = client.post("/v1/chat/completions", json=[1, 2], headers=AUTH)
    assert r.status_code == 400
    message = r.json()["error"]["message"]
    assert message.startswith("Invalid request body: ")
    assert "pydantic.dev" not in message
    assert "input_value" not in message
    assert backend.calls == []


def test_non_streaming_completion():
    backend = InMemoryBackend("Paris is the capital of France.\n")
    client = _client(backend)
    r = client.post(
        "/v1/chat/completions",
        json={
            "model": "claude-sonnet-4-5-20241022",
            "temperature": 0.2,
            "messages": [
                {"role": "system", "content": "Answer briefly."},
                {"role": "user", "content": "Capital of France?"},
            ],
            "stream": False,
        },
        headers=AUTH,
    )
    assert r.status_code == 200
    data = r.json()
    assert data["object"] == "chat.completion"
    assert data["id"]
    assert data["model"] == "sonnet"
    assert len(data["choices"]) == 1
    assert data["choices"][0]["finish_reason"] == "stop"
    assert data["choices"][0]["message"] == {"role": "assistant", "content": "Paris is the capital of France."}
    assert set(data["usage"]) == {"prompt_tokens", "completion_tokens", "total_tokens"}

    argv, stdin = backend.calls[0]
    assert argv[argv.index("--model") + 1] == "sonnet"
    assert argv[argv.index("--system-prompt") + 1] == "Answer briefly."
    assert stdin == "Capital of France?\n"


def test_missing_model_uses_configured_default():
    backend = InMemoryBackend("ok")
    client = _client(backend, default_model="haiku")
    r = client.post(
        "/v1/chat/completions",
        json={"messages": [{"role": "user", "content": "hi"}]},
        headers=AUTH,
    )
    assert r.status_code == 200
    assert r.json()["model"] == "haiku"
    assert backend.calls[0][0][:4] == ["claude", "--print", "--model", "haiku"]


def test_null_body_and_roleless_messages_are_accepted():
    backend = InMemoryBackend("ok")
    client = _client(backend, default_model="opus")

    r = client.post(
        "/v1/chat/completions",
        content=b"null",
        headers={**AUTH, "Content-Type": "application/json"},
    )
    assert r.status_code == 200
    assert r.json()["model"] == "opus"
    assert backend.calls[0][1] == ""

    r = client.post(
        "/v1/chat/completions",
        json={"messages": [{"content": "dropped"}, {"role": "user", "content": "kept"}]},
        headers=AUTH,
    )
    assert r.status_code == 200
    assert backend.calls[1][1] == "kept\n"


def test_backend_failure_is_500_envelope():
    backend = InMemoryBackend("", returncode=1, stderr="secret diagnostics")
    client = _client(backend)
    r = client.post(
        "/v1/chat/completions",
        json={"model": "opus", "messages": [{"role": "user", "content": "hi"}]},
        headers=AUTH,
    )
    assert r.status_code == 500
    assert r.json() == {"error": {"message": "Claude CLI failed: exit status 1", "type": "error"}}
    assert "secret diagnostics" not in r.text


def test_launch_failure_is_500_envelope():
    client = _client(InMemoryBackend(start_error="[Errno 2] No such file or directory: 'claude'"))
    r = client.post(
        "/v1/chat/completions",
        json={"model": "opus", "messages": [{"role": "user", "content": "hi"}]},
        headers=AUTH,
    )
    assert r.status_code == 500
    assert r.json()["error"]["message"].startswith("Claude CLI failed: ")


def test_streaming_completion():
    backend = InMemoryBackend(
        lines=[
            '{"type":"system","subtype":"init"}',
            '{"type":"assistant","message":{"content":[{"type":"text","text":"Hel"}]}}',
            '{"type":"assistant","message":{"content":[{"type":"text","text":"lo"}]}}',
            '{"type":"result","subtype":"success","is_error":false,"result":"Hello"}',
        ]
    )
    client = _client(backend)
    r = client.post(
        "/v1/chat/completions",
        json={"model": "Haiku", "messages": [{"role": "user", "content": "greet"}], "stream": True},
        headers=AUTH,
    )
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    assert r.headers["cache-control"] == "no-cache"
    assert r.headers["connection"] == "keep-alive"
    assert r.headers["access-control-allow-origin"] == "*"
    assert r.text.endswith("data: [DONE]\n\n")

    payloads = _sse_payloads(r.text)
    chunks = payloads[:-1]
    assert [c["choices"][0]["delta"] for c in chunks] == [
        {"role": "assistant"},
        {"content": "Hel"},
        {"content": "lo"},
        {},
    ]
    stops = [c for c in chunks if c["choices"][0]["finish_reason"] == "stop"]
    assert len(stops) == 1 and stops[0] is chunks[-1]
    assert {c["id"] for c in chunks} == {chunks[0]["id"]}
    assert all(c["model"] == "haiku" for c in chunks)
    assert "--output-format" in backend.calls[0][0]


def test_streaming_start_failure_is_in_band():
    client = _client(InMemoryBackend(start_error="missing"))
    r = client.post(
        "/v1/chat/completions",
        json={"messages": [{"role": "user", "content": "hi"}], "stream": True},
        headers=AUTH,
    )
    assert r.status_code == 200
    assert _sse_payloads(r.text) == [
        {"error": {"message": "Failed to start Claude CLI", "type": "error"}},
        "[DONE]",
    ]
