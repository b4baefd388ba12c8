from __future__ import annotations

import hashlib
from typing import Any

from cynosure_bridge.utils.token_utils import estimate_token_count

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_EMBEDDING_DIMENSIONS = 1536
EMBEDDING_MODELS: dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

_UINT16_MAX = 0xFFFF


def embedding_dimensions(model_id: str | None) -> int:
    return EMBEDDING_MODELS.get(model_id or "", DEFAULT_EMBEDDING_DIMENSIONS)


def embed(text: str, model_id: str | None = DEFAULT_EMBEDDING_MODEL) -> list[float]:
    """Synthetic, deterministic vector for ``(text, model_id)``.

    Not a semantic embedding: each component is a 16-bit slice of a SHAKE-256
    digest scaled into [-1, 1].
    """
    dimensions = embedding_dimensions(model_id)
    seed = f"{model_id or DEFAULT_EMBEDDING_MODEL}\x00{text}".encode("utf-8")
    digest = hashlib.shake_256(seed).digest(dimensions * 2)
    return [
        round(int.from_bytes(digest[offset : offset + 2], "big") / _UINT16_MAX * 2 - 1, 6)
        for offset in range(0, dimensions * 2, 2)
    ]


def build_embeddings_response(texts: list[str], model_id: str) -> dict[str, Any]:
    prompt_tokens = sum(estimate_token_count(text) for text in texts)
    return {
        "object": "list",
        "data": [
            {"object": "embedding", "index": index, "embedding": embed(text, model_id)}
            for index, text in enumerate(texts)
        ],
        "model": model_id,
        "usage": {"prompt_tokens": prompt_tokens, "total_tokens": prompt_tokens},
    }
