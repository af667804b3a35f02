"""Tests for ovmfbench.phases."""
from __future__ import annotations

import random

import pytest

from ovmfbench.capture import EventLogEntry
from ovmfbench.common import TICK_ROLLOVER, ExtractionError
from ovmfbench.phases import (
    KEYPOINTS, PhaseInterval, check_keypoints, extract_phases,
    format_phase_table, missing_keypoints, parse_keypoints,
)

THREE = ["SecCoreStartupWithStack", "Platform PEIM Loaded", "Loading DXE CORE"]


def _log(*pairs):
    return [EventLogEntry(m, t) for m, t in pairs]


# ── extract_phases ───────────────────────────────────────────────────────────

def test_boot_scenario():
    entries = _log(("SecCoreStartupWithStack", 10), ("noise", 20),
                   ("Platform PEIM Loaded", 150), ("Loading DXE CORE", 9000))
    assert extract_phases(entries, THREE) == [
        PhaseInterval("SecCoreStartupWithStack", 0, 10),
        PhaseInterval("Platform PEIM Loaded", 10, 150),
        PhaseInterval("Loading DXE CORE", 150, 9000),
    ]


def test_missing_keypoint_gives_shorter_list():
    entries = _log(("SecCoreStartupWithStack", 10), ("noise", 20),
                   ("Platform PEIM Loaded", 150))
    intervals = extract_phases(entries, THREE)
    assert len(intervals) == 2
    assert missing_keypoints(intervals, THREE) == ["Loading DXE CORE"]


def test_empty_log():
    assert extract_phases([], THREE) == []


def test_substring_match():
    entries = _log(("Loading DXE CORE at 0x0007EA4F000 EntryPoint=0x7EA50E1A", 42))
    assert extract_phases(entries, THREE) == [
        PhaseInterval("Loading DXE CORE", 0, 42)]


def test_rollover_correction():
    entries = _log(("SecCoreStartupWithStack", 16_777_000),
                   ("Platform PEIM Loaded", 500))
    intervals = extract_phases(entries, THREE)
    assert intervals[1] == PhaseInterval(
        "Platform PEIM Loaded", 16_777_000, 500 + TICK_ROLLOVER)
    assert intervals[1].end == 16_777_715


def test_equal_tick_is_not_a_rollover():
    entries = _log(("SecCoreStartupWithStack", 100), ("Platform PEIM Loaded", 100))
    assert extract_phases(entries, THREE)[1] == PhaseInterval(
        "Platform PEIM Loaded", 100, 100)


def test_second_wrap_is_clamped():
    # Cursor already past one wrap; a raw tick that is still behind after one
    # correction is held at the cursor instead of going backwards.
    entries = _log(("SecCoreStartupWithStack", 16_777_000),
                   ("Platform PEIM Loaded", 500),
                   ("Loading DXE CORE", 100))
    intervals = extract_phases(entries, THREE)
    assert intervals[2] == PhaseInterval(
        "Loading DXE CORE", 16_777_715, 16_777_715)


def test_first_match_wins():
    entries = _log(("SecCoreStartupWithStack then Platform PEIM Loaded", 10),
                   ("Platform PEIM Loaded", 30))
    intervals = extract_phases(entries, THREE)
    assert intervals == [
        PhaseInterval("SecCoreStartupWithStack", 0, 10),
        PhaseInterval("Platform PEIM Loaded", 10, 30),
    ]


def test_keypoint_matches_once():
    entries = _log(("SecCoreStartupWithStack", 10),
                   ("SecCoreStartupWithStack", 20),
                   ("Platform PEIM Loaded", 30))
    intervals = extract_phases(entries, THREE)
    assert [iv.label for iv in intervals] == THREE[:2]
    assert intervals[1].start == 10


def test_consumed_keypoint_does_not_shadow_later_one():
    entries = _log(("SecCoreStartupWithStack", 10),
                   ("SecCoreStartupWithStack / Platform PEIM Loaded", 25))
    intervals = extract_phases(entries, THREE)
    assert intervals[1] == PhaseInterval("Platform PEIM Loaded", 10, 25)


def test_out_of_order_keypoints_follow_log_order():
    entries = _log(("Platform PEIM Loaded", 5), ("SecCoreStartupWithStack", 8))
    intervals = extract_phases(entries, THREE)
    assert [iv.label for iv in intervals] == [
        "Platform PEIM Loaded", "SecCoreStartupWithStack"]


def test_extraction_is_idempotent():
    entries = tuple(_log(("SecCoreStartupWithStack", 10),
                         ("Platform PEIM Loaded", 150),
                         ("Loading DXE CORE", 90)))
    assert extract_phases(entries, THREE) == extract_phases(entries, THREE)


def test_random_logs_keep_invariants():
    rng = random.Random(1234)
    words = list(KEYPOINTS) + ["noise", "ProtectUefiImage", "InstallProtocol"]
    for _ in range(200):
        entries = [EventLogEntry(rng.choice(words), rng.randint(0, TICK_ROLLOVER))
                   for _ in range(rng.randint(0, 30))]
        intervals = extract_phases(entries, KEYPOINTS)
        assert len(intervals) <= len(KEYPOINTS)
        assert len({iv.label for iv in intervals}) == len(intervals)
        prev_end = 0
        for iv in intervals:
            assert iv.start == prev_end
            assert iv.start <= iv.end
            prev_end = iv.end


# ── keypoint validation ──────────────────────────────────────────────────────

def test_duplicate_keypoints_rejected():
    with pytest.raises(ExtractionError):
        extract_phases([], ["A", "B", "A"])


def test_empty_keypoints_rejected():
    with pytest.raises(ExtractionError):
        check_keypoints([])


def test_parse_keypoints():
    assert parse_keypoints(" A , B,,C ") == ("A", "B", "C")


# ── format_phase_table ───────────────────────────────────────────────────────

def test_phase_table():
    table = format_phase_table([PhaseInterval("SEC", 0, 25),
                                PhaseInterval("PEI", 25, 100)])
    assert "SEC" in table and "PEI" in table
    assert "25.0%" in table
    assert "75.0%" in table
    assert "TOTAL" in table


def test_phase_table_empty():
    assert "no phases" in format_phase_table([])
