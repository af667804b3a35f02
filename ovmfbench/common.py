# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This software may be used and distributed according to the terms of the
# GNU General Public License version 2.

"""
Shared infrastructure for the ovmfbench capture/extract/render pipeline.

Used by the run controller, the CLI and the replay path.
"""

import logging
from datetime import datetime
from pathlib import Path


# =============================================================================
# CONFIGURATION
# =============================================================================

DEBUG_SOCKET = Path("/tmp/ovmf_output.sock")
QMP_SOCKET = Path("/tmp/ovmf_qmp.sock")
CHARDEV_SOCKET = Path("/tmp/chardev.sock")

OUTPUT_DIR = Path("output")
LOG_DIR = Path("/tmp/ovmfbench")

# Firmware appends " TICKS=<n>" to every debug-console line.
TICK_DELIMITER = " TICKS="
# The performance counter is 24 bits wide.
TICK_ROLLOVER = 16_777_215

# Seconds the guest is left running before it is terminated.
OBSERVATION_SECS = 10.0
# Seconds to wait for the guest to close the debug connection after
# termination before the controller shuts it down itself.
DRAIN_TIMEOUT_SECS = 5.0
# Seconds to wait for the guest to connect to the debug socket.
ACCEPT_TIMEOUT_SECS = 60.0


# =============================================================================
# LOGGING
# =============================================================================

log: logging.Logger = logging.getLogger("ovmfbench")


def setup_logging(log_dir: Path = LOG_DIR, verbose: bool = False) -> Path:
    """Set up logging to both console and a timestamped file."""
    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y-%m-%d_%H%M%S")
    log_path = log_dir / f"ovmfbench_{timestamp}.log"

    log.setLevel(logging.DEBUG)
    for handler in list(log.handlers):
        log.removeHandler(handler)
        handler.close()

    # File handler - detailed
    file_handler = logging.FileHandler(log_path)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(threadName)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    ))
    log.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(logging.Formatter(
        "[%(asctime)s] [%(levelname)s] %(message)s", datefmt="%H:%M:%S"
    ))
    log.addHandler(console_handler)

    return log_path


# =============================================================================
# ERRORS
# =============================================================================

class BenchError(Exception):
    """A failure that aborts one run.

    `phase` names the pipeline step that failed; `guest` is filled in by
    the run controller so a multi-guest sweep can report which run died.
    """

    phase = "run"

    def __init__(self, message: str, guest: str | None = None):
        super().__init__(message)
        self.message = message
        self.guest = guest

    def __str__(self) -> str:
        where = f"{self.guest}/{self.phase}" if self.guest else self.phase
        return f"[{where}] {self.message}"


class SetupError(BenchError):
    phase = "setup"


class CaptureError(BenchError):
    """A debug-console line that does not follow `<message> TICKS=<n>`."""

    phase = "capture"

    def __init__(self, message: str, lineno: int = 0, line: str = "",
                 guest: str | None = None):
        super().__init__(message, guest)
        self.lineno = lineno
        self.line = line


class ExtractionError(BenchError):
    phase = "extraction"


class RenderError(BenchError):
    phase = "render"
