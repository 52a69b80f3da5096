"""Tests for CycleReconstructor — segmenting day scores into bleeding cycles."""

from __future__ import annotations

from datetime import date, timedelta

import pytest

from endo.domains.bleeding.domain_logic.cycles import CycleReconstructor, entry_day_score
from endo.domains.bleeding.domain_logic.pbac import PbacRules


def _entry(iso: str, score) -> dict:
    return {"date": iso, "pbac": {"dayScore": score}}


def _daily(start: str, scores: list) -> list[dict]:
    first = date.fromisoformat(start)
    return [_entry((first + timedelta(days=i)).isoformat(), s) for i, s in enumerate(scores)]


@pytest.fixture
def reconstructor() -> CycleReconstructor:
    return CycleReconstructor()


class TestSegmentation:
    def test_two_cycles_with_leading_spotting(self, reconstructor):
        entries = _daily("2026-10-01", [0, 0, 4, 8, 5, 0, 0, 7])
        flags = reconstructor.period_flags(entries)

        assert len(flags.cycles) == 2
        first, second = flags.cycles
        assert (first.start, first.end) == ("2026-10-03", "2026-10-05")
        assert [d.date for d in first.days] == ["2026-10-03", "2026-10-04", "2026-10-05"]
        assert first.days[0].spotting
        assert first.pbac_sum == 13
        assert (second.start, second.end) == ("2026-10-08", "2026-10-08")

        assert flags.start_set == {"2026-10-04", "2026-10-08"}
        assert "2026-10-03" not in flags.period_set
        assert "2026-10-03" in flags.spotting_set
        assert flags.period_set == {"2026-10-04", "2026-10-05", "2026-10-08"}

    def test_single_zero_blip_reopens_cycle(self, reconstructor):
        cycles = reconstructor.reconstruct(_daily("2026-01-01", [10, 0, 6]))
        assert len(cycles) == 1
        assert cycles[0].end == "2026-01-03"
        assert cycles[0].pbac_sum == 16
        assert [d.date for d in cycles[0].days] == ["2026-01-01", "2026-01-03"]

    def test_two_zero_days_split(self, reconstructor):
        cycles = reconstructor.reconstruct(_daily("2026-01-01", [10, 0, 0, 6]))
        assert [c.start for c in cycles] == ["2026-01-01", "2026-01-04"]

    def test_spotting_after_bleeding_extends_cycle(self, reconstructor):
        cycles = reconstructor.reconstruct(_daily("2026-01-01", [12, 5, 2, 1]))
        assert len(cycles) == 1
        assert cycles[0].end == "2026-01-04"
        assert cycles[0].pbac_sum == 17
        assert [d.spotting for d in cycles[0].days] == [False, False, True, True]

    def test_spotting_before_reopen_is_kept(self, reconstructor):
        cycles = reconstructor.reconstruct(_daily("2026-01-01", [8, 0, 3, 8]))
        assert len(cycles) == 1
        assert [d.date for d in cycles[0].days] == [
            "2026-01-01", "2026-01-03", "2026-01-04",
        ]

    def test_isolated_spotting_is_not_a_cycle(self, reconstructor):
        entries = _daily("2026-01-01", [0, 0, 3, 0, 0])
        flags = reconstructor.period_flags(entries)
        assert flags.cycles == []
        assert flags.spotting_set == {"2026-01-03"}
        assert flags.start_set == set()

    def test_first_bleeding_day_opens_without_prior_zeros(self, reconstructor):
        cycles = reconstructor.reconstruct(_daily("2026-01-01", [9, 9]))
        assert len(cycles) == 1
        assert cycles[0].start == "2026-01-01"

    def test_at_most_one_open_cycle(self, reconstructor):
        cycles = reconstructor.reconstruct(
            _daily("2026-01-01", [6, 0, 0, 6, 0, 6, 0, 0, 0, 6])
        )
        assert [c.start for c in cycles] == ["2026-01-01", "2026-01-04", "2026-01-10"]
        assert cycles[1].end == "2026-01-06"

    def test_empty_input(self, reconstructor):
        assert reconstructor.reconstruct([]) == []


class TestDateHandling:
    def test_unsorted_input_is_sorted(self, reconstructor):
        entries = _daily("2026-10-01", [0, 0, 4, 8, 5, 0, 0, 7])
        shuffled = entries[::2] + entries[1::2]
        assert [c.to_dict() for c in reconstructor.reconstruct(shuffled)] == [
            c.to_dict() for c in reconstructor.reconstruct(entries)
        ]

    def test_missing_days_count_as_zeros(self, reconstructor):
        entries = [_entry("2026-01-01", 10), _entry("2026-01-04", 10)]
        assert len(reconstructor.reconstruct(entries)) == 2

    def test_one_missing_day_reopens(self, reconstructor):
        entries = [_entry("2026-01-01", 10), _entry("2026-01-03", 10)]
        assert len(reconstructor.reconstruct(entries)) == 1

    @pytest.mark.parametrize(
        "before, after, expected",
        [
            ("2026-01-31", "2026-02-02", 1),  # one missing day across a month end
            ("2026-01-31", "2026-02-03", 2),
            ("2026-02-27", "2026-03-02", 2),  # non-leap February
            ("2028-02-28", "2028-03-01", 1),  # leap day missing
            ("2026-12-31", "2027-01-02", 1),
            ("2026-12-30", "2027-01-02", 2),
        ],
    )
    def test_gaps_across_month_and_year_boundaries(self, reconstructor, before, after, expected):
        entries = [_entry(before, 10), _entry(after, 10)]
        assert len(reconstructor.reconstruct(entries)) == expected

    def test_unscored_days_are_skipped(self, reconstructor):
        entries = _daily("2026-01-01", [10, None, 10])
        assert len(reconstructor.reconstruct(entries)) == 1
        assert reconstructor.reconstruct(entries)[0].pbac_sum == 20

    def test_bad_dates_are_ignored(self, reconstructor):
        entries = [_entry("2026-01-01", 10), _entry("not-a-date", 10), {"pbac": {"dayScore": 5}}]
        assert len(reconstructor.reconstruct(entries)) == 1


class TestScoreExtraction:
    @pytest.mark.parametrize(
        "pbac, expected",
        [
            ({"dayScore": 7}, 7),
            ({"dayScore": "12"}, 12.0),
            ({"dayScore": -3}, 0),
            ({"dayScore": None}, None),
            ({"dayScore": True}, None),
            ({"dayScore": "n/a"}, None),
            ({"dayScore": float("nan")}, None),
            ({}, None),
            ("broken", None),
        ],
    )
    def test_entry_day_score(self, pbac, expected):
        assert entry_day_score({"date": "2026-01-01", "pbac": pbac}) == expected

    def test_negative_score_acts_as_zero(self, reconstructor):
        cycles = reconstructor.reconstruct(_daily("2026-01-01", [10, -1, -1, 10]))
        assert len(cycles) == 2

    def test_scores_between_thresholds_are_ignored(self, reconstructor):
        cycles = reconstructor.reconstruct(_daily("2026-01-01", [10, 4.5, 10]))
        assert len(cycles) == 1
        assert [d.pbac for d in cycles[0].days] == [10, 10]


class TestCustomRules:
    def test_longer_minimum_gap(self):
        reconstructor = CycleReconstructor(PbacRules(min_zeros_before_new_bleed=3))
        assert len(reconstructor.reconstruct(_daily("2026-01-01", [10, 0, 0, 10]))) == 1
        assert len(reconstructor.reconstruct(_daily("2026-01-01", [10, 0, 0, 0, 10]))) == 2

    def test_to_dict(self):
        cycle = CycleReconstructor().reconstruct(_daily("2026-01-01", [6]))[0]
        assert cycle.to_dict() == {
            "start": "2026-01-01",
            "end": "2026-01-01",
            "days": [{"date": "2026-01-01", "pbac": 6, "spotting": False}],
            "pbacSum": 6,
        }
