from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .transform import DEFAULT_MODEL, normalize_model


class ConfigError(RuntimeError):
    ...


def _flag(raw: Optional[str]) -> bool:
    return (raw or "").strip().lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class Settings:
    api_key: str
    port: int = 8080
    host: str = "0.0.0.0"
    default_model: str = DEFAULT_MODEL
    claude_bin: str = "claude"
    # Longest single stream-json line accepted from the CLI (bytes).
    stream_line_limit: int = 16 * 1024 * 1024
    debug: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        api_key = env.get("PROXY_API_KEY", "")
        if not api_key:
            raise ConfigError("PROXY_API_KEY environment variable required")
        try:
            port = int(env.get("PORT") or "8080")
        except ValueError:
            port = 8080
        try:
            line_limit = max(64 * 1024, int(env.get("PROXY_STREAM_LINE_LIMIT") or str(16 * 1024 * 1024)))
        except ValueError:
            line_limit = 16 * 1024 * 1024
        # The default model goes through the same normalizer as request models.
        default_model = normalize_model(env.get("CLAUDE_MODEL") or DEFAULT_MODEL, DEFAULT_MODEL)
        return cls(
            api_key=api_key,
            port=port,
            host=env.get("HOST") or "0.0.0.0",
            default_model=default_model,
            claude_bin=env.get("CLAUDE_BIN") or "claude",
            stream_line_limit=line_limit,
            debug=_flag(env.get("DEBUG_PROXY")),
        )
