from __future__ import annotations

import math

from cynosure_bridge.engine.types import Usage

CHARS_PER_TOKEN = 4
# Share of the completion estimate attributed to the prompt when the prompt
# text is unknown. Approximate only; not derived from any tokenizer.
PROMPT_TO_COMPLETION_RATIO = 0.7


def estimate_token_count(text: str | None) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_usage(completion_text: str, prompt_text: str | None = None) -> Usage:
    completion_tokens = estimate_token_count(completion_text)
    if prompt_text is not None:
        prompt_tokens = estimate_token_count(prompt_text)
    else:
        prompt_tokens = math.floor(completion_tokens * PROMPT_TO_COMPLETION_RATIO)
    return Usage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
    )
