"""
Tests for the human pattern table: lookup, next active window and file loading.
"""

import json
from datetime import UTC, datetime
from zoneinfo import ZoneInfo

import pytest
from pydantic import ValidationError

from crm_enricher.features.enrichment.domain import DayFilter, HumanPattern
from crm_enricher.features.enrichment.services.human_patterns import (
    DEFAULT_FALLBACK,
    DEFAULT_PATTERNS,
    HumanPatternTable,
    PatternConfigError,
    load_patterns,
)


def at(day: int, hour: int, minute: int = 0) -> datetime:
    # January 2025: the 15th is a Wednesday, the 18th a Saturday
    return datetime(2025, 1, day, hour, minute, tzinfo=UTC)


@pytest.mark.parametrize(
    "moment, expected",
    [
        (at(15, 8, 30), "morning_warmup"),
        (at(15, 11), "focused_morning"),
        (at(15, 12, 15), "lunch_break"),
        (at(15, 14), "afternoon_work"),
        (at(15, 20, 59), "evening_wind_down"),
        (at(15, 23), "night_rest"),
        (at(16, 3), "night_rest"),
        (at(18, 11), "weekend_light"),
        (at(18, 9), "off_hours"),
    ],
)
def test_current_pattern(pattern_table, moment, expected):
    assert pattern_table.current_pattern(moment).name == expected


def test_first_listed_pattern_wins_on_overlap():
    first = HumanPattern(name="first", hour_start=9, hour_end=17)
    second = HumanPattern(name="second", hour_start=10, hour_end=12)
    table = HumanPatternTable([first, second], DEFAULT_FALLBACK, ZoneInfo("UTC"))

    assert table.current_pattern(at(15, 11)).name == "first"


def test_pattern_evaluated_in_configured_timezone():
    table = HumanPatternTable(DEFAULT_PATTERNS, DEFAULT_FALLBACK, ZoneInfo("Asia/Baku"))

    # 10:00 UTC is 14:00 in Baku
    assert table.current_pattern(at(15, 10)).name == "afternoon_work"
    assert table.day_key(at(15, 22)) == "2025-01-16"
    assert table.hour_key(at(15, 22)) == "2025-01-16-02"


def test_next_active_start_after_lunch(pattern_table):
    assert pattern_table.next_active_start(at(15, 12, 20)) == at(15, 13)


def test_next_active_start_skips_night_and_weekend_gap(pattern_table):
    # Friday night -> Saturday 08:00 and 09:00 match nothing -> weekend_light at 10:00
    found = pattern_table.next_active_pattern(at(17, 22))

    assert found is not None
    pattern, start = found
    assert pattern.name == "weekend_light"
    assert start == at(18, 10)


def test_next_active_start_is_none_when_everything_pauses():
    table = HumanPatternTable([], DEFAULT_FALLBACK, ZoneInfo("UTC"))

    assert table.next_active_start(at(15, 14)) is None
    assert table.next_active_pattern(at(15, 14)) is None


def test_window_end_and_next_midnight(pattern_table):
    assert pattern_table.window_end(at(15, 14, 10)) == at(15, 17)
    assert pattern_table.next_midnight(at(15, 14, 10)) == at(16, 0)


def test_pattern_rejects_equal_hours():
    with pytest.raises(ValidationError):
        HumanPattern(name="broken", hour_start=9, hour_end=9)


def test_pattern_rejects_inverted_delays():
    with pytest.raises(ValidationError):
        HumanPattern(name="broken", hour_start=9, hour_end=10, min_delay=30, max_delay=10)


def test_wrapping_pattern_matches_both_sides_of_midnight():
    night = HumanPattern(name="night", hour_start=22, hour_end=6, pause=True)

    assert night.matches(at(15, 23))
    assert night.matches(at(16, 5))
    assert not night.matches(at(16, 6))


def test_load_patterns_accepts_day_flags(tmp_path):
    path = tmp_path / "patterns.json"
    path.write_text(
        json.dumps(
            [
                {
                    "name": "office",
                    "hourStart": 9,
                    "hourEnd": 17,
                    "weekdayOnly": True,
                    "maxItemsPerOccurrence": 20,
                    "minDelay": 30,
                    "maxDelay": 90,
                },
                {"name": "weekend", "hourStart": 11, "hourEnd": 15, "weekendOnly": True},
            ]
        )
    )

    patterns = load_patterns(path)

    assert [p.name for p in patterns] == ["office", "weekend"]
    assert patterns[0].days == DayFilter.WEEKDAY
    assert patterns[0].max_items_per_occurrence == 20
    assert patterns[1].days == DayFilter.WEEKEND


@pytest.mark.parametrize(
    "content",
    [
        [],
        [{"name": "a", "hourStart": 1, "hourEnd": 2}, {"name": "a", "hourStart": 3, "hourEnd": 4}],
        [{"name": "both", "hourStart": 1, "hourEnd": 2, "weekdayOnly": True, "weekendOnly": True}],
        [{"name": "half", "hourStart": 1}],
    ],
)
def test_load_patterns_rejects_invalid_tables(tmp_path, content):
    path = tmp_path / "patterns.json"
    path.write_text(json.dumps(content))

    with pytest.raises(PatternConfigError):
        load_patterns(path)


def test_load_patterns_missing_file(tmp_path):
    with pytest.raises(PatternConfigError):
        load_patterns(tmp_path / "missing.json")
