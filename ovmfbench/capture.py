# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This software may be used and distributed according to the terms of the
# GNU General Public License version 2.

"""
Debug-console capture.

The firmware writes one line per debug message to QEMU's isa-debugcon
device, which QEMU forwards to a Unix socket:

    <free-text message> TICKS=<decimal tick count>

CaptureChannel owns that socket and hands out exactly one connection per
run. CaptureRoutine drains the connection on a background thread into an
EventLog, which is sealed when the routine is joined so the extractor only
ever sees an immutable snapshot.
"""

import socket
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .common import DEBUG_SOCKET, TICK_DELIMITER, CaptureError, SetupError, log


# Granularity of the liveness check while waiting for the guest to connect.
ACCEPT_POLL_SECS = 0.5


@dataclass(frozen=True)
class EventLogEntry:
    message: str
    tick: int


def parse_event_line(line: str, lineno: int = 0) -> EventLogEntry:
    """Split one debug-console line into message and tick.

    The tick follows the last delimiter on the line. Only the line
    terminator is stripped; any other whitespace around the tick is an error.
    """
    text = line.rstrip("\r\n")
    message, sep, tick_text = text.rpartition(TICK_DELIMITER)
    if not sep:
        raise CaptureError(
            f"line {lineno}: missing '{TICK_DELIMITER.strip()}' delimiter: {text!r}",
            lineno, text)
    if not (tick_text.isascii() and tick_text.isdigit()):
        raise CaptureError(
            f"line {lineno}: tick is not a decimal integer: {tick_text!r}",
            lineno, text)
    return EventLogEntry(message, int(tick_text))


def load_event_file(path: Path) -> tuple[EventLogEntry, ...]:
    """Parse a saved debug-console log with the same rules as live capture."""
    entries = []
    with open(path, "rb") as f:
        for lineno, raw in enumerate(f, 1):
            entries.append(parse_event_line(
                raw.decode("utf-8", errors="replace"), lineno))
    return tuple(entries)


class EventLog:
    """Append-only event list with a single writer and a post-join reader.

    Appends are serialized by one lock. seal() hands the entries over as a
    tuple and rejects any later append.
    """

    def __init__(self):
        self._entries: list[EventLogEntry] = []
        self._lock = threading.Lock()
        self._sealed = False

    def append(self, entry: EventLogEntry) -> None:
        with self._lock:
            if self._sealed:
                raise RuntimeError("event log is sealed")
            self._entries.append(entry)

    def seal(self) -> tuple[EventLogEntry, ...]:
        with self._lock:
            self._sealed = True
            return tuple(self._entries)

    @property
    def sealed(self) -> bool:
        return self._sealed

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class CaptureChannel:
    """Listening Unix socket that accepts a single connection."""

    def __init__(self, path: Path = DEBUG_SOCKET):
        self.path = Path(path)
        self.sock: socket.socket | None = None
        self.conn: socket.socket | None = None

    def open(self) -> None:
        try:
            self.path.unlink()
            log.debug(f"removed stale socket {self.path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            raise SetupError(f"cannot remove stale socket {self.path}: {e}")

        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(str(self.path))
            sock.listen(1)
        except OSError as e:
            sock.close()
            raise SetupError(f"cannot listen on {self.path}: {e}")
        self.sock = sock
        log.debug(f"listening on {self.path}")

    def accept_once(self, timeout: float | None = None,
                    alive: Callable[[], bool] | None = None) -> socket.socket:
        """Wait for the guest to connect, then stop listening.

        `alive`, if given, is polled while waiting; the wait is abandoned
        as soon as it returns False. The listener is closed and unlinked
        as soon as one connection is accepted, so a second connect attempt
        is refused outright.
        """
        if self.sock is None:
            raise SetupError(f"channel {self.path} is not open")
        deadline = None if timeout is None else time.monotonic() + timeout
        try:
            while True:
                wait = ACCEPT_POLL_SECS
                if deadline is not None:
                    wait = min(wait, max(deadline - time.monotonic(), 0.01))
                self.sock.settimeout(wait)
                try:
                    conn, _ = self.sock.accept()
                    break
                except TimeoutError:
                    pass
                if alive is not None and not alive():
                    raise SetupError(
                        f"source exited before connecting to {self.path}")
                if deadline is not None and time.monotonic() >= deadline:
                    raise SetupError(
                        f"no connection on {self.path} within {timeout:.0f}s")
        except OSError as e:
            raise SetupError(f"accept on {self.path} failed: {e}")
        finally:
            self._close_listener()
        conn.setblocking(True)
        self.conn = conn
        log.info(f"Debug console connected on {self.path}")
        return conn

    def _close_listener(self) -> None:
        if self.sock is None:
            return
        self.sock.close()
        self.sock = None
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning(f"could not remove {self.path}: {e}")

    def close(self) -> None:
        self._close_listener()
        if self.conn is not None:
            try:
                self.conn.close()
            except OSError:
                pass
            self.conn = None

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *exc):
        self.close()


class CaptureRoutine:
    """Background thread reading the debug connection into an EventLog."""

    def __init__(self, conn: socket.socket, event_log: EventLog):
        self.conn = conn
        self.event_log = event_log
        self.error: CaptureError | None = None
        self.lines = 0
        self._thread: threading.Thread | None = None
        self._done = threading.Event()

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._reader, name="ovmf-capture", daemon=True)
        self._thread.start()

    def _reader(self) -> None:
        try:
            with self.conn.makefile("rb") as stream:
                for lineno, raw in enumerate(stream, 1):
                    self.lines = lineno
                    entry = parse_event_line(
                        raw.decode("utf-8", errors="replace"), lineno)
                    self.event_log.append(entry)
        except CaptureError as e:
            self.error = e
            log.error(f"capture aborted: {e.message}")
        except (ValueError, OSError) as e:
            # Connection torn down while blocked in read.
            log.debug(f"debug stream closed: {e}")
        finally:
            try:
                self.conn.close()
            except OSError:
                pass
            self._done.set()
        log.debug(f"capture finished after {self.lines} line(s)")

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block up to `timeout` seconds; True once the stream has ended."""
        return self._done.wait(timeout)

    def abort(self) -> None:
        """Unblock the reader by shutting the connection down from our side."""
        try:
            self.conn.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass

    def join(self, drain_timeout: float | None = None) -> tuple[EventLogEntry, ...]:
        """Wait for the reader to exit and take ownership of the log.

        If the stream is still open after `drain_timeout` seconds the
        connection is shut down so the read returns. Raises the reader's
        CaptureError, if it hit one.
        """
        if self._thread is None:
            raise RuntimeError("capture routine was never started")
        self._thread.join(drain_timeout)
        if self._thread.is_alive():
            log.warning(f"debug stream still open {drain_timeout:.1f}s after "
                        "termination, closing it")
            self.abort()
            self._thread.join()
        entries = self.event_log.seal()
        if self.error is not None:
            raise self.error
        return entries
