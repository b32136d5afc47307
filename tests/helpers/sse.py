"""Server-Sent Events helpers."""

import json
from typing import Any


def parse_sse(body: str) -> list[dict[str, Any]]:
    """Decode the {event, data} parts of an SSE response body."""
    return [
        json.loads(line[len("data:"):].strip())
        for line in body.splitlines()
        if line.startswith("data:")
    ]
