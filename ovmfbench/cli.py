# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This software may be used and distributed according to the terms of the
# GNU General Public License version 2.

"""
OVMF boot-phase benchmark.

Boots one guest per configuration, captures the firmware debug console,
and charts the time spent in each boot phase.

Usage:
    ovmfbench run                               # nosev,sev,seves,snp
    ovmfbench run --guests nosev,snp --duration 15
    ovmfbench run --no-sudo --qemu ./build/qemu-system-x86_64
    ovmfbench replay debug.log --guest sev      # chart a saved log
"""

import argparse
import sys
from pathlib import Path

from .capture import load_event_file
from .chart import render_timeline
from .common import (
    ACCEPT_TIMEOUT_SECS, DEBUG_SOCKET, DRAIN_TIMEOUT_SECS, LOG_DIR,
    OBSERVATION_SECS, OUTPUT_DIR, BenchError, log, setup_logging,
)
from .guest import GUEST_PROFILES, GuestType, HypervisorPaths, parse_guest_list
from .metrics import write_phase_metrics
from .phases import (
    KEYPOINTS, extract_phases, format_phase_table, missing_keypoints,
    parse_keypoints,
)
from .runner import BenchConfig, RunController, format_report


DEFAULT_GUESTS = ",".join(g.value for g in GuestType)


def cmd_run(args) -> int:
    paths = HypervisorPaths.from_env()
    if args.qemu:
        paths.qemu = args.qemu
    if args.kernel:
        paths.kernel = args.kernel
    if args.initrd:
        paths.initrd = args.initrd
    if args.firmware:
        paths.firmware = args.firmware

    config = BenchConfig(
        paths=paths,
        debug_socket=args.socket,
        output_dir=args.output_dir,
        prom_dir=args.prom_dir,
        keypoints=args.keypoints,
        observe_secs=args.duration,
        drain_timeout=args.drain_timeout,
        accept_timeout=args.accept_timeout,
        sudo=not args.no_sudo,
        dump_log=args.dump_log,
    )

    log.info(f"Guests: {', '.join(g.value for g in args.guests)}")
    log.info(f"Keypoints: {', '.join(config.keypoints)}")
    log.info(f"Observation window: {config.observe_secs:.1f}s")
    log.info(f"Output: {config.output_dir}")

    results = RunController(config).run_all(args.guests)
    print(format_report(results))
    return 0 if all(r.ok for r in results) else 1


def cmd_replay(args) -> int:
    guest = args.guest
    profile = GUEST_PROFILES[guest]
    try:
        entries = load_event_file(args.file)
        log.info(f"Loaded {len(entries)} event(s) from {args.file}")
        if args.dump_log:
            for entry in entries:
                print(f"{entry.tick} - {entry.message}")
        intervals = extract_phases(entries, args.keypoints)
        missing = missing_keypoints(intervals, args.keypoints)
        if missing:
            log.warning(f"keypoint(s) never seen: {', '.join(missing)}")
        render_timeline(intervals, profile, profile.output_path(args.output_dir))
        if args.prom_dir is not None:
            write_phase_metrics(args.prom_dir / f"{guest.value}.prom",
                                guest.value, intervals, len(entries))
    except OSError as e:
        log.error(f"cannot read {args.file}: {e}")
        return 1
    except BenchError as e:
        e.guest = guest.value
        log.error(f"Replay failed: {e}")
        return 1

    print(format_phase_table(intervals))
    return 0


def _guest_list(text: str) -> list[GuestType]:
    try:
        guests = parse_guest_list(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))
    if not guests:
        raise argparse.ArgumentTypeError("no guests given")
    return guests


def _keypoint_list(text: str) -> tuple[str, ...]:
    try:
        return parse_keypoints(text)
    except BenchError as e:
        raise argparse.ArgumentTypeError(e.message)


def _add_common_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--output-dir", type=Path, default=OUTPUT_DIR,
                   help="Directory for chart images (default: %(default)s)")
    p.add_argument("--prom-dir", type=Path, default=None,
                   help="Also write OpenMetrics .prom files here")
    p.add_argument("--keypoints", type=_keypoint_list, default=KEYPOINTS,
                   help="Comma-separated phase boundary patterns, in boot order")
    p.add_argument("--dump-log", action="store_true",
                   help="Print every captured debug event")
    p.add_argument("--log-dir", type=Path, default=LOG_DIR,
                   help="Directory for the run log (default: %(default)s)")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Debug output on the console")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="ovmfbench",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Boot guests and chart their OVMF phases")
    run.add_argument("--guests", type=_guest_list,
                     default=_guest_list(DEFAULT_GUESTS),
                     help=f"Comma-separated guest types in run order "
                          f"(default: {DEFAULT_GUESTS})")
    run.add_argument("--duration", type=float, default=OBSERVATION_SECS,
                     help="Seconds each guest runs before it is terminated "
                          "(default: %(default)s)")
    run.add_argument("--drain-timeout", type=float, default=DRAIN_TIMEOUT_SECS,
                     help="Seconds to wait for the debug stream to close "
                          "after termination (default: %(default)s)")
    run.add_argument("--accept-timeout", type=float, default=ACCEPT_TIMEOUT_SECS,
                     help="Seconds to wait for the guest to connect "
                          "(default: %(default)s)")
    run.add_argument("--socket", type=Path, default=DEBUG_SOCKET,
                     help="Debug console socket path (default: %(default)s)")
    run.add_argument("--qemu", type=str, default=None, help="QEMU binary")
    run.add_argument("--kernel", type=str, default=None, help="Guest kernel")
    run.add_argument("--initrd", type=str, default=None, help="Guest initrd")
    run.add_argument("--firmware", type=str, default=None, help="OVMF image")
    run.add_argument("--no-sudo", action="store_true",
                     help="Launch QEMU without sudo")
    _add_common_args(run)

    replay = sub.add_parser("replay",
                            help="Chart a saved debug-console log")
    replay.add_argument("file", type=Path, help="Debug-console text file")
    replay.add_argument("--guest", type=GuestType, default=GuestType.NOSEV,
                        choices=list(GuestType),
                        help="Guest type whose title/filename to use")
    _add_common_args(replay)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    log_path = setup_logging(args.log_dir, args.verbose)
    log.debug(f"Log file: {log_path}")

    if args.command == "run":
        return cmd_run(args)
    if args.command == "replay":
        return cmd_replay(args)

    log.error(f"Unknown command: {args.command}")
    return 1


def run_main() -> None:
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted by user.")
        sys.exit(130)
