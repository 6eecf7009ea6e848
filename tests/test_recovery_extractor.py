"""Tests for the bounded recovery-score extraction walk."""

import pytest

from leaderboard.adapters.recovery_extractor import (
    MAX_DEPTH,
    collect_candidates,
    extract_recovery_score,
    normalize_recovery,
)


class TestNormalizeRecovery:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (0.82, 82.0),
            (1, 100.0),
            (0, 0.0),
            (55, 55.0),
            (100, 100.0),
            (0.005, 0.5),
            (101, None),
            (-3, None),
        ],
    )
    def test_normalization(self, value, expected):
        assert normalize_recovery(value) == expected


class TestExtractRecoveryScore:
    def test_nested_fraction_is_scaled(self):
        assert extract_recovery_score({"recovery": {"score": 0.82}}) == 82.0

    def test_top_level_percentage(self):
        assert extract_recovery_score({"score": 55}) == 55.0

    def test_no_matching_keys_is_unknown_not_zero(self):
        result = extract_recovery_score({"strain": 12.4, "hrv": 64, "name": "Ada"})
        assert result is None

    def test_recovery_substring_is_case_insensitive(self):
        assert extract_recovery_score({"score": {"Recovery_Score": 71}}) == 71.0

    def test_out_of_range_values_are_discarded(self):
        assert extract_recovery_score({"score": 250, "recovery_pct": 64}) == 64.0
        assert extract_recovery_score({"score": -1}) is None

    def test_maximum_candidate_wins(self):
        payload = {"score": 40, "recovery": {"score": 0.66}}
        assert extract_recovery_score(payload) == 66.0

    def test_booleans_and_strings_are_ignored(self):
        assert extract_recovery_score({"score": True, "recovery": "82"}) is None

    def test_non_finite_numbers_are_ignored(self):
        assert extract_recovery_score({"score": float("nan"), "recovery": float("inf")}) is None

    def test_lists_are_walked(self):
        payload = {"records": [{"cycle_id": 1, "score": {"recovery_score": 48}}]}
        assert extract_recovery_score(payload) == 48.0

    def test_non_container_payload(self):
        assert extract_recovery_score(None) is None
        assert extract_recovery_score(82) is None


class TestDepthBound:
    def _nested(self, levels: int) -> dict:
        node: dict = {"score": 77}
        for _ in range(levels):
            node = {"wrapper": node}
        return node

    def test_value_at_depth_limit_is_found(self):
        assert extract_recovery_score(self._nested(MAX_DEPTH)) == 77.0

    def test_value_below_depth_limit_is_not_visited(self):
        assert extract_recovery_score(self._nested(MAX_DEPTH + 1)) is None

    def test_custom_depth(self):
        payload = self._nested(2)
        assert collect_candidates(payload, max_depth=1) == []
        assert collect_candidates(payload, max_depth=2) == [77.0]
