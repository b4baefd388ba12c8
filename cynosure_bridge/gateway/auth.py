from __future__ import annotations

import hmac

from fastapi import Request, status
from fastapi.responses import JSONResponse

from cynosure_bridge.errors import openai_error_body
from cynosure_bridge.settings import Settings


class AuthConfigurationError(RuntimeError):
    """Raised when ingress auth is required but no API keys are configured."""


class Authenticator:
    def __init__(self, settings: Settings):
        self.required = settings.ingress_auth_required
        self.api_keys = tuple(settings.ingress_api_keys_list)

        if self.required and not self.api_keys:
            raise AuthConfigurationError(
                "Ingress auth is required, but INGRESS_API_KEYS is empty.",
            )

    def is_valid_key(self, token: str) -> bool:
        return any(hmac.compare_digest(token, key) for key in self.api_keys)

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        if not self.required:
            return None

        auth_header = request.headers.get("authorization", "")
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return _unauthorized("Missing Bearer token.")

        if not self.is_valid_key(token.strip()):
            return _unauthorized("Invalid API key.")

        return None


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        headers={"WWW-Authenticate": "Bearer"},
        content=openai_error_body(
            message, error_type="authentication_error", code="invalid_api_key"
        ),
    )
