# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This software may be used and distributed according to the terms of the
# GNU General Public License version 2.

"""
Run orchestration: one guest boot per configuration, strictly in sequence.

    Idle -> Listening -> Running -> Observing -> Terminating
         -> Extracting -> Rendering -> Done

Every step can fail with a BenchError; the run stops where it failed and
the sweep moves on to the next guest. Channel and event log are created
fresh for every run, so nothing carries over from a failed one.
"""

import os
import signal
import subprocess
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .capture import CaptureChannel, CaptureRoutine, EventLog, EventLogEntry
from .chart import render_timeline
from .common import (
    ACCEPT_TIMEOUT_SECS, DEBUG_SOCKET, DRAIN_TIMEOUT_SECS, OBSERVATION_SECS,
    OUTPUT_DIR, BenchError, CaptureError, SetupError, log,
)
from .guest import (
    GUEST_PROFILES, GuestProfile, GuestType, HypervisorPaths, guest_command,
)
from .metrics import write_phase_metrics
from .phases import (
    KEYPOINTS, PhaseInterval, check_keypoints, extract_phases,
    format_phase_table, missing_keypoints,
)


class RunState(Enum):
    IDLE = "idle"
    LISTENING = "listening"
    RUNNING = "running"
    OBSERVING = "observing"
    TERMINATING = "terminating"
    EXTRACTING = "extracting"
    RENDERING = "rendering"
    DONE = "done"


@dataclass
class BenchConfig:
    """Per-invocation settings; defaults come from ovmfbench.common."""

    paths: HypervisorPaths = field(default_factory=HypervisorPaths.from_env)
    debug_socket: Path = DEBUG_SOCKET
    output_dir: Path = OUTPUT_DIR
    prom_dir: Path | None = None
    keypoints: tuple[str, ...] = KEYPOINTS
    observe_secs: float = OBSERVATION_SECS
    drain_timeout: float = DRAIN_TIMEOUT_SECS
    accept_timeout: float | None = ACCEPT_TIMEOUT_SECS
    sudo: bool = True
    dump_log: bool = False
    profiles: dict[GuestType, GuestProfile] = field(
        default_factory=lambda: dict(GUEST_PROFILES))


@dataclass
class RunResult:
    """Outcome of one guest run."""

    guest: GuestType
    state: RunState = RunState.IDLE
    intervals: list[PhaseInterval] = field(default_factory=list)
    events: int = 0
    chart_path: Path | None = None
    metrics_path: Path | None = None
    error: BenchError | None = None
    wall_time_sec: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and self.state is RunState.DONE

    def summary(self) -> str:
        if self.ok:
            return (f"[ok] {self.guest.value}: {len(self.intervals)} phase(s), "
                    f"{self.events} event(s), {self.wall_time_sec:.1f}s "
                    f"-> {self.chart_path}")
        phase = self.error.phase if self.error else "?"
        return (f"[failed:{phase}] {self.guest.value} in state "
                f"{self.state.value} after {self.events} event(s): {self.error}")


# GUEST PROCESS MANAGEMENT

class GuestProcess:
    """Guard for a running guest hypervisor in its own process group."""

    def __init__(self, proc: subprocess.Popen, name: str):
        self.proc = proc
        self.name = name
        # setpgrp makes the child its own group leader.
        self.pgid = proc.pid

    @classmethod
    def start(cls, cmd: list[str], name: str) -> "GuestProcess":
        log.info(f"Starting guest {name}")
        log.debug(f">>> {' '.join(str(c) for c in cmd)}")
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                preexec_fn=os.setpgrp,
            )
        except OSError as e:
            raise SetupError(f"cannot start {cmd[0]}: {e}")
        return cls(proc, name)

    def alive(self) -> bool:
        return self.proc.poll() is None

    def terminate(self) -> None:
        """Ask the guest to exit. Does not wait for it."""
        if self.proc.poll() is not None:
            return
        # SIGTERM rather than SIGKILL: sudo relays it to QEMU.
        try:
            os.killpg(self.pgid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            log.warning(f"cannot signal {self.name}: {e}")

    def reap(self, timeout: float = 3.0) -> int | None:
        """Collect the exit status, escalating to SIGKILL after `timeout`."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.proc.poll() is not None:
                return self.proc.returncode
            time.sleep(0.05)
        log.warning(f"{self.name} still running {timeout:.0f}s after SIGTERM, killing")
        try:
            os.killpg(self.pgid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
        try:
            return self.proc.wait(timeout)
        except subprocess.TimeoutExpired:
            log.error(f"{self.name} (pid {self.proc.pid}) did not exit")
            return None


# RUN CONTROLLER

class RunController:
    """Drives one guest boot through capture, extraction and rendering.

    `command_factory` maps a guest type to the argv that launches it; the
    default builds the QEMU command line from the config.
    """

    def __init__(self, config: BenchConfig,
                 command_factory: Callable[[GuestType], list[str]] | None = None):
        self.config = config
        self.command_factory = command_factory or self._qemu_command

    def _qemu_command(self, guest: GuestType) -> list[str]:
        return guest_command(guest, self.config.paths,
                             debug_socket=self.config.debug_socket,
                             sudo=self.config.sudo)

    def _transition(self, result: RunResult, state: RunState) -> None:
        log.debug(f"{result.guest.value}: {result.state.value} -> {state.value}")
        result.state = state

    def run(self, guest: GuestType) -> RunResult:
        result = RunResult(guest)
        start = time.monotonic()
        try:
            self._run(guest, result)
        except BenchError as e:
            e.guest = guest.value
            result.error = e
            log.error(f"Run failed: {e}")
        except Exception as e:
            err = BenchError(f"{type(e).__name__}: {e}", guest=guest.value)
            err.phase = result.state.value
            err.__cause__ = e
            result.error = err
            log.exception(f"Run failed: {err}")
        result.wall_time_sec = time.monotonic() - start
        return result

    def run_all(self, guests: Sequence[GuestType]) -> list[RunResult]:
        """Run each guest in order; a failed run does not stop the sweep."""
        results = []
        for i, guest in enumerate(guests, 1):
            log.info("=" * 60)
            log.info(f"Run {i}/{len(guests)}: {guest.value}")
            log.info("=" * 60)
            results.append(self.run(guest))
        return results

    def _run(self, guest: GuestType, result: RunResult) -> None:
        cfg = self.config
        profile = cfg.profiles[guest]
        keypoints = check_keypoints(cfg.keypoints)

        entries = self._capture(guest, result)

        self._transition(result, RunState.EXTRACTING)
        result.events = len(entries)
        if cfg.dump_log:
            for entry in entries:
                print(f"{entry.tick} - {entry.message}")
        result.intervals = extract_phases(entries, keypoints)
        missing = missing_keypoints(result.intervals, keypoints)
        if missing:
            log.warning(f"{guest.value}: keypoint(s) never seen: {', '.join(missing)}")

        self._transition(result, RunState.RENDERING)
        result.chart_path = render_timeline(
            result.intervals, profile, profile.output_path(cfg.output_dir))
        if cfg.prom_dir is not None:
            result.metrics_path = write_phase_metrics(
                Path(cfg.prom_dir) / f"{guest.value}.prom", guest.value,
                result.intervals, result.events)

        self._transition(result, RunState.DONE)

    def _capture(self, guest: GuestType,
                 result: RunResult) -> tuple[EventLogEntry, ...]:
        """Boot the guest and return its sealed debug log."""
        cfg = self.config
        channel = CaptureChannel(cfg.debug_socket)
        guard = None

        self._transition(result, RunState.LISTENING)
        channel.open()
        try:
            self._transition(result, RunState.RUNNING)
            guard = GuestProcess.start(self.command_factory(guest), guest.value)
            conn = channel.accept_once(cfg.accept_timeout, alive=guard.alive)

            routine = CaptureRoutine(conn, EventLog())
            routine.start()
            self._transition(result, RunState.OBSERVING)
            if routine.wait(cfg.observe_secs):
                log.warning(f"{guest.value}: debug stream ended before the "
                            f"{cfg.observe_secs:.0f}s window elapsed")

            self._transition(result, RunState.TERMINATING)
            guard.terminate()
            try:
                entries = routine.join(cfg.drain_timeout)
            except CaptureError:
                result.events = len(routine.event_log)
                raise
            log.info(f"Captured {len(entries)} debug event(s)")
            return entries
        finally:
            if guard is not None:
                guard.terminate()
                guard.reap()
            channel.close()


# REPORT

def format_report(results: Sequence[RunResult]) -> str:
    lines = ["", "=" * 60, "OVMF boot phases", "=" * 60]
    for r in results:
        lines.append(r.summary())
        if r.ok:
            lines.append(format_phase_table(r.intervals))
    failed = sum(1 for r in results if not r.ok)
    lines.append("")
    lines.append(f"{len(results) - failed}/{len(results)} run(s) succeeded")
    return "\n".join(lines)
