from __future__ import annotations

TERMINAL_ERROR_MARKERS = (
    "credit",
    "billing",
    "invalid x-api-key",
    "invalid api key",
    "authentication_error",
    "permission_error",
)


class BridgeError(Exception):
    """Base class for errors raised by the translation and invocation engine."""

    error_type = "internal_error"
    status_code = 500

    def __init__(self, message: str, *, invoker: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.invoker = invoker


class ValidationError(BridgeError):
    """The request is semantically unusable (e.g. no messages)."""

    error_type = "invalid_request_error"
    status_code = 400


class TransportError(BridgeError):
    """Network, process, parse or timeout failure; eligible for one fallback hop."""

    error_type = "backend_unavailable"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        invoker: str | None = None,
        is_timeout: bool = False,
    ) -> None:
        super().__init__(message, invoker=invoker)
        self.is_timeout = is_timeout


class TerminalBackendError(BridgeError):
    """Account-level failure (credentials, billing) that no other transport can fix."""

    error_type = "backend_error"
    status_code = 502


def is_terminal_message(message: str | None) -> bool:
    if not message:
        return False
    lowered = message.lower()
    return any(marker in lowered for marker in TERMINAL_ERROR_MARKERS)


def classify_backend_error(message: str, *, invoker: str | None = None) -> BridgeError:
    if is_terminal_message(message):
        return TerminalBackendError(message, invoker=invoker)
    return TransportError(message, invoker=invoker)


def openai_error_body(
    message: str,
    error_type: str = "invalid_request_error",
    param: str | None = None,
    code: str | None = None,
) -> dict[str, dict[str, str | None]]:
    return {
        "error": {
            "message": message,
            "type": error_type,
            "param": param,
            "code": code,
        }
    }
