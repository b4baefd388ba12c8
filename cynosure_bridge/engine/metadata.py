"""Recovery of session, cost, duration and token counts from the CLI banner.

The CLI prints a free-text, human-readable banner on stderr. Every field is
matched independently and failures leave the field unset, so a change in the
banner format only ever loses information instead of breaking a request.
"""

from __future__ import annotations

import re

from cynosure_bridge.engine.types import Metadata

SESSION_ID_PATTERN = re.compile(r"Session ID:\s*([\w-]+)", re.IGNORECASE)
COST_PATTERN = re.compile(r"Cost:\s*\$?\s*(\d+(?:\.\d+)?|\.\d+)", re.IGNORECASE)
DURATION_PATTERN = re.compile(r"Duration:\s*(\d+(?:\.\d+)?)\s*s", re.IGNORECASE)
TOKENS_PATTERN = re.compile(
    r"(\d[\d,]*)\s+prompt\s*\+\s*(\d[\d,]*)\s+completion\s*=\s*(\d[\d,]*)\s+tokens",
    re.IGNORECASE,
)


def _parse_float(raw: str) -> float | None:
    try:
        return float(raw)
    except ValueError:
        return None


def _parse_int(raw: str) -> int | None:
    try:
        return int(raw.replace(",", ""))
    except ValueError:
        return None


def extract_metadata(stderr: str | None) -> Metadata:
    metadata = Metadata()
    if not stderr:
        return metadata

    session_match = SESSION_ID_PATTERN.search(stderr)
    if session_match:
        metadata.session_id = session_match.group(1)

    cost_match = COST_PATTERN.search(stderr)
    if cost_match:
        metadata.cost = _parse_float(cost_match.group(1))

    duration_match = DURATION_PATTERN.search(stderr)
    if duration_match:
        metadata.duration_seconds = _parse_float(duration_match.group(1))

    tokens_match = TOKENS_PATTERN.search(stderr)
    if tokens_match:
        prompt, completion, total = (
            _parse_int(value) for value in tokens_match.groups()
        )
        # The triple is only trusted as a whole.
        if prompt is not None and completion is not None and total is not None:
            metadata.prompt_tokens = prompt
            metadata.completion_tokens = completion
            metadata.total_tokens = total

    return metadata
