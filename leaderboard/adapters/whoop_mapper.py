"""WHOOP payload → daily metric values.

Inbound anti-corruption layer: the WHOOP API returns collections as
``{"records": [...]}``, occasionally as bare lists, and single resources as
plain objects. Field names also drift between response variants, so every
lookup walks a short list of known spellings.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from leaderboard.adapters.recovery_extractor import extract_recovery_score, normalize_recovery
from leaderboard.domain.models import ProviderProfile


@dataclass
class SleepSummary:
    total_sec: int | None = None
    perf_pct: float | None = None
    consistency_pct: float | None = None


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _dig(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _first_number(obj: Any, *paths: tuple[str, ...]) -> float | None:
    for path in paths:
        number = _number(_dig(obj, *path))
        if number is not None:
            return number
    return None


def records_of(payload: Any) -> list[dict]:
    """The record list of a collection response."""
    if isinstance(payload, dict) and isinstance(payload.get("records"), list):
        records = payload["records"]
    elif isinstance(payload, list):
        records = payload
    else:
        return []
    return [r for r in records if isinstance(r, dict)]


def first_record(payload: Any) -> dict | None:
    """The first record of a collection, or the payload itself if it is a single object."""
    records = records_of(payload)
    if records:
        return records[0]
    if isinstance(payload, dict) and "records" not in payload and payload:
        return payload
    return None


# --- Sleep ---


def _parse_iso(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _sleep_score(record: dict) -> dict:
    score = record.get("score") or _dig(record, "sleep", "score")
    return score if isinstance(score, dict) else {}


def _sleep_minutes(record: dict) -> float:
    """Slept minutes for one record: stage sum, else in-bed minus awake, else end - start."""
    score = _sleep_score(record)

    stage_minutes = sum(
        _number(score.get(key)) or 0
        for key in ("slow_wave_sleep_minutes", "rem_sleep_minutes", "light_sleep_minutes")
    )
    if stage_minutes <= 0:
        stage_milli = sum(
            _number(_dig(score, "stage_summary", key)) or 0
            for key in (
                "total_slow_wave_sleep_time_milli",
                "total_rem_sleep_time_milli",
                "total_light_sleep_time_milli",
            )
        )
        stage_minutes = stage_milli / 60000
    if stage_minutes > 0:
        return stage_minutes

    in_bed = _number(score.get("in_bed_duration_minutes"))
    if in_bed is not None:
        return max(0.0, in_bed - (_number(score.get("awake_time_minutes")) or 0))

    start, end = _parse_iso(record.get("start")), _parse_iso(record.get("end"))
    if start and end:
        return max(0.0, round((end - start).total_seconds() / 60))
    return 0.0


def summarize_sleep(payload: Any) -> SleepSummary:
    """Combine all of a day's sleep records: summed duration, best performance and consistency."""
    total_minutes = 0.0
    best_perf: float | None = None
    best_consistency: float | None = None

    for record in records_of(payload):
        score = _sleep_score(record)
        perf = _number(score.get("sleep_performance_percentage"))
        if perf is not None:
            best_perf = perf if best_perf is None else max(best_perf, perf)
        consistency = _number(score.get("sleep_consistency_percentage"))
        if consistency is not None:
            best_consistency = (
                consistency if best_consistency is None else max(best_consistency, consistency)
            )
        total_minutes += _sleep_minutes(record)

    return SleepSummary(
        total_sec=int(round(total_minutes * 60)) if total_minutes > 0 else None,
        perf_pct=round(best_perf) if best_perf is not None else None,
        consistency_pct=round(best_consistency) if best_consistency is not None else None,
    )


# --- Recovery ---


def recovery_from_record(record: Any) -> float | None:
    """Recovery score from a recovery record; known fields first, then the extractor."""
    direct = _first_number(record, ("score",), ("recovery_score",), ("recovery", "score"))
    if direct is not None:
        normalized = normalize_recovery(direct)
        if normalized is not None:
            return normalized
    return extract_recovery_score(record)


def recovery_from_cycle(cycle: dict) -> float | None:
    """Recovery score embedded directly on a cycle record, if any."""
    value = _first_number(
        cycle, ("score", "recovery_score"), ("recovery_score",), ("recovery", "score")
    )
    return normalize_recovery(value) if value is not None else None


def cycle_id(cycle: dict) -> str | None:
    for key in ("id", "cycle_id", "cycleId"):
        value = cycle.get(key)
        if value is not None and not isinstance(value, bool):
            return str(value)
    return None


# --- Strain ---


def strain_from_cycle(cycle: dict) -> float | None:
    strain = _first_number(
        cycle, ("score", "strain"), ("strain",), ("score_strain",), ("cycle", "strain")
    )
    if strain is None or strain < 0:
        return None
    return strain


# --- Profile ---


def parse_profile(payload: Any) -> ProviderProfile | None:
    if not isinstance(payload, dict):
        return None
    raw_id = payload.get("user_id", payload.get("id"))
    if raw_id is None or str(raw_id) == "":
        return None

    first = payload.get("first_name") or payload.get("firstName") or ""
    last = payload.get("last_name") or payload.get("lastName") or ""
    composed = f"{first} {last}".strip()
    display_name = composed or str(payload.get("name") or payload.get("full_name") or "Member")

    return ProviderProfile(
        whoop_user_id=str(raw_id),
        display_name=display_name,
        avatar_url=payload.get("avatar_url") or payload.get("profile_picture_url"),
    )
