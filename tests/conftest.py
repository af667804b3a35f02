"""Shared fixtures: short socket paths and a fake firmware debug console."""
from __future__ import annotations

import shutil
import sys
import tempfile
from pathlib import Path

import pytest

# Connects to the debug socket like QEMU's isa-debugcon chardev, writes the
# payload, optionally tries a second connection, then lingers until killed.
FAKE_SOURCE = """
import socket, sys, time
path, payload, linger, second = sys.argv[1], sys.argv[2], float(sys.argv[3]), sys.argv[4]
s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
for _ in range(200):
    try:
        s.connect(path)
        break
    except OSError:
        time.sleep(0.05)
s.sendall(payload.encode())
if second == "1":
    s2 = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        s2.connect(path)
        s2.sendall(b"duplicate TICKS=1\\n")
    except OSError:
        pass
time.sleep(linger)
"""


def fake_source_cmd(sock_path: Path, payload: str, linger: float = 30.0,
                    second: bool = False) -> list[str]:
    return [sys.executable, "-c", FAKE_SOURCE, str(sock_path), payload,
            str(linger), "1" if second else "0"]


@pytest.fixture
def sock_path():
    # AF_UNIX paths are limited to ~108 bytes; pytest's tmp_path can exceed it.
    d = tempfile.mkdtemp(prefix="ob-", dir="/tmp")
    yield Path(d) / "dbg.sock"
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def boot_lines():
    return (
        "SecCoreStartupWithStack(0xFFFCC000, 0x820000) TICKS=10\n"
        "Register PPI Notify: DCD0BE23 TICKS=20\n"
        "Platform PEIM Loaded TICKS=150\n"
        "Loading DXE CORE at 0x0007EA4F000 TICKS=9000\n"
    )


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    from ovmfbench.common import log
    for handler in list(log.handlers):
        log.removeHandler(handler)
        handler.close()
