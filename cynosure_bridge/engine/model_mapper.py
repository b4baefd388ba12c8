from __future__ import annotations

from pathlib import Path
from typing import Any

from cynosure_bridge.utils.yaml_utils import coerce_string_map, load_yaml_dict

DEFAULT_BACKEND_MODEL = "claude-3-5-sonnet-20241022"
DEFAULT_OPENAI_MODEL = "gpt-4-turbo"

MODEL_MAPPING: dict[str, str] = {
    "gpt-4": "claude-3-opus-20240229",
    "gpt-4-turbo": "claude-3-5-sonnet-20241022",
    "gpt-4-turbo-preview": "claude-3-5-sonnet-20241022",
    "gpt-4-0125-preview": "claude-3-5-sonnet-20241022",
    "gpt-4-1106-preview": "claude-3-5-sonnet-20241022",
    "gpt-3.5-turbo": "claude-3-haiku-20240307",
    "gpt-3.5-turbo-0125": "claude-3-haiku-20240307",
    "gpt-3.5-turbo-1106": "claude-3-haiku-20240307",
    "gpt-4o": "claude-3-5-sonnet-20241022",
    "gpt-4o-2024-05-13": "claude-3-5-sonnet-20241022",
    "gpt-4o-2024-08-06": "claude-3-5-sonnet-20241022",
    "gpt-4o-mini": "claude-3-5-haiku-20241022",
    "gpt-4o-mini-2024-07-18": "claude-3-5-haiku-20241022",
}

# Several OpenAI ids share one backend model; the reverse direction names the
# canonical one explicitly.
REVERSE_MODEL_MAPPING: dict[str, str] = {
    "claude-3-opus-20240229": "gpt-4",
    "claude-3-5-sonnet-20241022": "gpt-4o",
    "claude-3-haiku-20240307": "gpt-3.5-turbo",
    "claude-3-5-haiku-20241022": "gpt-4o-mini",
}

BACKEND_MODEL_PREFIX = "claude-"


class ModelMapper:
    def __init__(
        self,
        mapping: dict[str, str] | None = None,
        reverse_mapping: dict[str, str] | None = None,
        default_backend_model: str = DEFAULT_BACKEND_MODEL,
        default_openai_model: str = DEFAULT_OPENAI_MODEL,
    ) -> None:
        self._mapping = dict(MODEL_MAPPING if mapping is None else mapping)
        self._reverse = dict(
            REVERSE_MODEL_MAPPING if reverse_mapping is None else reverse_mapping
        )
        self.default_backend_model = default_backend_model
        self.default_openai_model = default_openai_model

    @classmethod
    def from_yaml(cls, path: str | Path) -> ModelMapper:
        """Build a mapper whose YAML entries extend and override the built-ins.

        Expected shape::

            models:
              gpt-4: claude-3-opus-20240229
            reverse:
              claude-3-opus-20240229: gpt-4
            default_backend_model: claude-3-5-sonnet-20241022
        """
        payload = load_yaml_dict(
            path, error_message=f"Model map '{path}' must be a YAML object."
        )
        return cls.from_payload(payload)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ModelMapper:
        mapping = {
            **MODEL_MAPPING,
            **coerce_string_map(payload.get("models"), field_name="models"),
        }
        reverse = {
            **REVERSE_MODEL_MAPPING,
            **coerce_string_map(payload.get("reverse"), field_name="reverse"),
        }
        default_backend = payload.get("default_backend_model")
        default_openai = payload.get("default_openai_model")
        return cls(
            mapping=mapping,
            reverse_mapping=reverse,
            default_backend_model=(
                default_backend.strip()
                if isinstance(default_backend, str) and default_backend.strip()
                else DEFAULT_BACKEND_MODEL
            ),
            default_openai_model=(
                default_openai.strip()
                if isinstance(default_openai, str) and default_openai.strip()
                else DEFAULT_OPENAI_MODEL
            ),
        )

    def to_backend(self, openai_model: str | None) -> str:
        normalized = (openai_model or "").strip()
        if not normalized:
            return self.default_backend_model
        mapped = self._mapping.get(normalized)
        if mapped:
            return mapped
        if normalized.startswith(BACKEND_MODEL_PREFIX):
            return normalized
        return self.default_backend_model

    def to_openai(self, backend_model: str | None) -> str:
        normalized = (backend_model or "").strip()
        return self._reverse.get(normalized, self.default_openai_model)

    def chat_models(self) -> dict[str, str]:
        return dict(self._mapping)


_default_mapper = ModelMapper()


def map_openai_to_backend(openai_model: str | None) -> str:
    return _default_mapper.to_backend(openai_model)


def map_backend_to_openai(backend_model: str | None) -> str:
    return _default_mapper.to_openai(backend_model)
