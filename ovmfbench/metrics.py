# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This software may be used and distributed according to the terms of the
# GNU General Public License version 2.

"""OpenMetrics textfile export of one run's phase boundaries."""

from collections.abc import Sequence
from pathlib import Path

from prometheus_client import CollectorRegistry, Gauge, write_to_textfile

from .common import RenderError, log
from .phases import PhaseInterval


def build_registry(guest: str, intervals: Sequence[PhaseInterval],
                   events: int) -> CollectorRegistry:
    registry = CollectorRegistry()
    end = Gauge("ovmfbench_phase_end_ticks",
                "Rollover-corrected tick at which the phase ended",
                ["guest", "phase"], registry=registry)
    duration = Gauge("ovmfbench_phase_duration_ticks",
                     "Ticks spent in the phase",
                     ["guest", "phase"], registry=registry)
    captured = Gauge("ovmfbench_events_captured",
                     "Debug-console lines captured during the run",
                     ["guest"], registry=registry)

    for iv in intervals:
        end.labels(guest, iv.label).set(iv.end)
        duration.labels(guest, iv.label).set(iv.duration)
    captured.labels(guest).set(events)
    return registry


def write_phase_metrics(path: Path, guest: str,
                        intervals: Sequence[PhaseInterval],
                        events: int) -> Path:
    """Write (or overwrite) `path` with the run's gauges."""
    path = Path(path)
    registry = build_registry(guest, intervals, events)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        write_to_textfile(str(path), registry)
    except OSError as e:
        raise RenderError(f"cannot write metrics {path}: {e}")
    log.info(f"Metrics written to: {path}")
    return path
