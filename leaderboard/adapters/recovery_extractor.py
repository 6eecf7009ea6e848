"""Best-effort recovery score extraction from loosely shaped payloads.

Recovery payloads are not uniform across response variants: the score may
sit at the top level as ``score``, nested as ``recovery.score``, under
``score.recovery_score``, as a 0-1 fraction or as a 0-100 percentage.

The walk is bounded: the root object and up to ``MAX_DEPTH`` nested levels
below it are inspected (lists count as a level). A numeric field is a
candidate when its key contains "recovery" or equals "score"
(case-insensitive). Candidates in [0, 1] are scaled by 100; anything outside
[0, 100] afterwards is discarded. The largest survivor wins.

Picking the maximum is inherited behaviour, not a provider contract: a
payload carrying two different legitimate recovery-like numbers would
silently resolve to the larger one.
"""

import math
from typing import Any

MAX_DEPTH = 4


def normalize_recovery(value: float) -> float | None:
    """Scale a 0-1 fraction to percent; None when the result is outside 0-100."""
    scaled = value * 100 if 0 <= value <= 1 else value
    scaled = round(scaled, 2)
    if 0 <= scaled <= 100:
        return scaled
    return None


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _is_candidate_key(key: Any) -> bool:
    name = str(key).lower()
    return "recovery" in name or name == "score"


def collect_candidates(payload: Any, max_depth: int = MAX_DEPTH) -> list[float]:
    """Every normalized recovery-like value reachable within ``max_depth`` levels."""
    candidates: list[float] = []
    stack: list[tuple[Any, int]] = [(payload, 0)]

    while stack:
        node, depth = stack.pop()
        if isinstance(node, dict):
            items = node.items()
        elif isinstance(node, list):
            items = enumerate(node)
        else:
            continue

        for key, value in items:
            if _is_number(value):
                if _is_candidate_key(key):
                    normalized = normalize_recovery(float(value))
                    if normalized is not None:
                        candidates.append(normalized)
            elif isinstance(value, (dict, list)) and depth < max_depth:
                stack.append((value, depth + 1))

    return candidates


def extract_recovery_score(payload: Any, max_depth: int = MAX_DEPTH) -> float | None:
    """Return a plausible 0-100 recovery score, or None when nothing qualifies."""
    candidates = collect_candidates(payload, max_depth)
    if not candidates:
        return None
    # Highest plausible reading wins; distinct legitimate fields would be conflated
    return max(candidates)
