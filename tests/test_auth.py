from __future__ import annotations

import asyncio
from typing import Any

import pytest
from fastapi import Request

from cynosure_bridge.gateway.auth import AuthConfigurationError, Authenticator
from cynosure_bridge.settings import Settings
from tests.client_test_utils import build_test_client


def test_v1_models_allows_when_auth_disabled(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch, INGRESS_AUTH_REQUIRED="false") as client:
        response = client.get("/v1/models")
        assert response.status_code == 200


def test_v1_rejects_without_token_when_auth_required(monkeypatch: Any) -> None:
    with build_test_client(
        monkeypatch,
        INGRESS_AUTH_REQUIRED="true",
        INGRESS_API_KEYS="bridge-key-1",
    ) as client:
        response = client.get("/v1/models")
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"
        error = response.json()["error"]
        assert error["type"] == "authentication_error"
        assert error["code"] == "invalid_api_key"


def test_v1_rejects_unknown_key(monkeypatch: Any) -> None:
    with build_test_client(
        monkeypatch,
        INGRESS_AUTH_REQUIRED="true",
        INGRESS_API_KEYS="bridge-key-1",
    ) as client:
        response = client.post(
            "/v1/chat/completions",
            headers={"Authorization": "Bearer wrong"},
            json={"model": "gpt-4", "messages": [{"role": "user", "content": "hi"}]},
        )
        assert response.status_code == 401


def test_v1_accepts_valid_api_key(monkeypatch: Any) -> None:
    with build_test_client(
        monkeypatch,
        INGRESS_AUTH_REQUIRED="true",
        INGRESS_API_KEYS="bridge-key-1, bridge-key-2",
    ) as client:
        response = client.get(
            "/v1/models", headers={"Authorization": "Bearer bridge-key-2"}
        )
        assert response.status_code == 200


def test_health_is_not_behind_auth(monkeypatch: Any) -> None:
    with build_test_client(
        monkeypatch,
        INGRESS_AUTH_REQUIRED="true",
        INGRESS_API_KEYS="bridge-key-1",
    ) as client:
        assert client.get("/health").status_code == 200


def test_auth_required_without_keys_is_a_configuration_error() -> None:
    with pytest.raises(AuthConfigurationError):
        Authenticator(Settings(ingress_auth_required=True, ingress_api_keys=""))


def test_valid_key_passes_without_touching_request_state() -> None:
    authenticator = Authenticator(
        Settings(ingress_auth_required=True, ingress_api_keys="bridge-key-1")
    )
    request = Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/v1/models",
            "query_string": b"",
            "headers": [(b"authorization", b"Bearer bridge-key-1")],
        }
    )

    assert asyncio.run(authenticator.authenticate_request(request)) is None
    assert not hasattr(request.state, "principal")
