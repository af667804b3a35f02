# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This software may be used and distributed according to the terms of the
# GNU General Public License version 2.

"""
Boot-phase extraction from a captured debug log.

A keypoint is a substring that marks a phase boundary. Walking the log in
arrival order, each keypoint is matched at most once; the tick of the
matching line closes the phase that started at the previous match.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

import numpy as np

from .capture import EventLogEntry
from .common import TICK_ROLLOVER, ExtractionError, log


# Chronological order matters: each one closes the phase opened by the
# previous.
KEYPOINTS = (
    "SecCoreStartupWithStack",  # start of the log
    "Platform PEIM Loaded",     # start of PEI
    "Loading DXE CORE",         # start of DXE
    "EekDxeMain3",              # end of DXE
    "EekBds2",                  # late in BDS
)


@dataclass(frozen=True)
class PhaseInterval:
    label: str
    start: int
    end: int

    @property
    def duration(self) -> int:
        return self.end - self.start


def parse_keypoints(text: str) -> tuple[str, ...]:
    return check_keypoints(s.strip() for s in text.split(",") if s.strip())


def check_keypoints(keypoints: Iterable[str]) -> tuple[str, ...]:
    """Validate a keypoint list: non-empty, no blank or repeated patterns."""
    keypoints = tuple(keypoints)
    if not keypoints:
        raise ExtractionError("no keypoints given")
    seen = set()
    for kp in keypoints:
        if not kp:
            raise ExtractionError("empty keypoint pattern")
        if kp in seen:
            raise ExtractionError(f"duplicate keypoint '{kp}'")
        seen.add(kp)
    return keypoints


def extract_phases(entries: Iterable[EventLogEntry],
                   keypoints: Sequence[str] = KEYPOINTS,
                   rollover: int = TICK_ROLLOVER) -> list[PhaseInterval]:
    """Map log entries onto keypoint-delimited intervals.

    Each entry is attributed to the first keypoint (in keypoint order) that
    it contains and that has not matched yet. A tick lower than the cursor
    is taken to have wrapped once and gets `rollover` added. Keypoints that
    never match produce no interval.
    """
    keypoints = check_keypoints(keypoints)
    intervals = []
    matched = set()
    cursor = 0

    for entry in entries:
        for keypoint in keypoints:
            if keypoint in matched or keypoint not in entry.message:
                continue

            tick = entry.tick
            # fixup rollover
            if tick < cursor:
                tick += rollover
            if tick < cursor:
                log.warning(f"'{keypoint}' at tick {entry.tick} is behind the "
                            f"cursor ({cursor}) even after rollover "
                            "correction, clamping")
                tick = cursor

            intervals.append(PhaseInterval(keypoint, cursor, tick))
            matched.add(keypoint)
            cursor = tick
            log.info(f"{tick} - {keypoint}")
            break

    return intervals


def missing_keypoints(intervals: Sequence[PhaseInterval],
                      keypoints: Sequence[str] = KEYPOINTS) -> list[str]:
    found = {iv.label for iv in intervals}
    return [kp for kp in keypoints if kp not in found]


def format_phase_table(intervals: Sequence[PhaseInterval]) -> str:
    """Human-readable per-phase table with each phase's share of the boot."""
    if not intervals:
        return "  (no phases matched)"

    durations = np.array([iv.duration for iv in intervals], dtype=np.int64)
    total = int(durations.sum())
    shares = durations / total * 100 if total else np.zeros(len(durations))
    width = max(len(iv.label) for iv in intervals)

    lines = [f"  {'PHASE':<{width}}  {'START':>10}  {'END':>10}  "
             f"{'TICKS':>10}  {'SHARE':>6}"]
    for iv, share in zip(intervals, shares):
        lines.append(f"  {iv.label:<{width}}  {iv.start:>10}  {iv.end:>10}  "
                     f"{iv.duration:>10}  {share:>5.1f}%")
    lines.append(f"  {'TOTAL':<{width}}  {'':>10}  {intervals[-1].end:>10}  "
                 f"{total:>10}")
    return "\n".join(lines)
