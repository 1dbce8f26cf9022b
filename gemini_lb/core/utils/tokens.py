from __future__ import annotations

import json
import math
from typing import Any

_CHARS_PER_TOKEN = 4
_FALLBACK_ESTIMATE = 100


def estimate_tokens(contents: Any) -> int:
    """Rough token estimate (~4 chars per token) used for reservations before the provider reports usage."""
    if contents is None:
        return 0
    items = contents if isinstance(contents, (list, tuple)) else [contents]
    try:
        text = " ".join(item if isinstance(item, str) else json.dumps(item, ensure_ascii=False) for item in items)
    except (TypeError, ValueError):
        return _FALLBACK_ESTIMATE
    return math.ceil(len(text) / _CHARS_PER_TOKEN)
