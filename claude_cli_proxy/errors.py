from __future__ import annotations

from typing import Any, Dict, Optional

from .transform import error_payload


class ProxyError(Exception):
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def payload(self) -> Dict[str, Any]:
        return error_payload(self.message)


class AuthError(ProxyError):
    status_code = 401


class MethodError(ProxyError):
    status_code = 405


class RequestParseError(ProxyError):
    status_code = 400


class BackendInvocationError(ProxyError):
    """The CLI could not be launched or exited non-zero.

    ``stderr`` is kept for the operator log only; it never reaches the payload.
    """

    status_code = 500

    def __init__(self, message: str, stderr: Optional[str] = None) -> None:
        super().__init__(message)
        self.stderr = stderr or ""


class BackendStartError(BackendInvocationError):
    ...


def err_invalid_api_key() -> AuthError:
    return AuthError("Invalid API key")


def err_method_not_allowed() -> MethodError:
    return MethodError("Method not allowed")


def err_cli_failed(reason: str, stderr: Optional[str] = None) -> BackendInvocationError:
    return BackendInvocationError(f"Claude CLI failed: {reason}", stderr)
