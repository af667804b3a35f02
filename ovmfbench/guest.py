# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This software may be used and distributed according to the terms of the
# GNU General Public License version 2.

"""
Guest configurations: QEMU command lines and chart identity per guest type.

Everything here is static data. The run controller asks for a command,
the renderer asks for a profile.
"""

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .common import CHARDEV_SOCKET, DEBUG_SOCKET, QMP_SOCKET


# CONFIGURATION

DEFAULT_QEMU = "/usr/local/bin/qemu-system-x86_64"
DEFAULT_KERNEL = "/opt/kata/share/kata-containers/vmlinuz-confidential.container"
DEFAULT_INITRD = "/opt/kata/share/kata-containers/kata-containers-initrd.img"
DEFAULT_FIRMWARE = "/usr/share/ovmf/OVMF.fd"

# Time-axis bound shared by every chart so images compare side by side.
AXIS_MAX = 20_000_000

SEV_MACHINE = ("q35,accel=kvm,nvdimm=on,kernel_irqchip=split,"
               "confidential-guest-support=sev0")
PLAIN_MACHINE = "q35,accel=kvm,nvdimm=on,kernel_irqchip=split"


class GuestType(Enum):
    NOSEV = "nosev"
    SEV = "sev"
    SEVES = "seves"
    SNP = "snp"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class GuestProfile:
    """Chart identity for one guest type."""

    title: str
    filename: str
    axis_max: int = AXIS_MAX

    def output_path(self, output_dir: Path) -> Path:
        return Path(output_dir) / self.filename


GUEST_PROFILES = {
    GuestType.NOSEV: GuestProfile("OVMF Phases without SEV", "nosev.png"),
    GuestType.SEV: GuestProfile("OVMF Phases with SEV", "sev.png"),
    GuestType.SEVES: GuestProfile("OVMF Phases with SEV-ES", "seves.png"),
    GuestType.SNP: GuestProfile("OVMF Phases with SNP", "snp.png"),
}


def parse_guest_list(text: str) -> list[GuestType]:
    """Parse a comma-separated guest list, keeping the given order."""
    guests = []
    for name in (s.strip().lower() for s in text.split(",")):
        if not name:
            continue
        try:
            guests.append(GuestType(name))
        except ValueError:
            known = ", ".join(g.value for g in GuestType)
            raise ValueError(f"unknown guest type '{name}' (known: {known})")
    return guests


@dataclass
class HypervisorPaths:
    """Locations of the hypervisor binary and boot artefacts."""

    qemu: str = DEFAULT_QEMU
    kernel: str = DEFAULT_KERNEL
    initrd: str = DEFAULT_INITRD
    firmware: str = DEFAULT_FIRMWARE

    @classmethod
    def from_env(cls) -> "HypervisorPaths":
        env = os.environ
        return cls(
            qemu=env.get("OVMFBENCH_QEMU", DEFAULT_QEMU),
            kernel=env.get("OVMFBENCH_KERNEL", DEFAULT_KERNEL),
            initrd=env.get("OVMFBENCH_INITRD", DEFAULT_INITRD),
            firmware=env.get("OVMFBENCH_FIRMWARE", DEFAULT_FIRMWARE),
        )


# COMMAND FRAGMENTS

def basic_guest_args(guest: GuestType, paths: HypervisorPaths) -> list[str]:
    """Hypervisor, confidential-computing mode, CPU/memory and artefacts."""
    args = [paths.qemu]

    match guest:
        case GuestType.SNP:
            args += ["-name", "direct-snp"]
            args += ["-machine", SEV_MACHINE]
            args += ["-object", "sev-snp-guest,id=sev0,policy=0x30000,"
                     "kernel-hashes=off,reduced-phys-bits=5,cbitpos=51"]
        case GuestType.NOSEV:
            args += ["-name", "direct-nosev"]
            args += ["-machine", PLAIN_MACHINE]
        case GuestType.SEV:
            args += ["-name", "direct-sev"]
            args += ["-machine", SEV_MACHINE]
            args += ["-object", "sev-guest,id=sev0,cbitpos=51,"
                     "reduced-phys-bits=1,policy=0x1"]
        case GuestType.SEVES:
            args += ["-name", "direct-seves"]
            args += ["-machine", SEV_MACHINE]
            args += ["-object", "sev-guest,id=sev0,cbitpos=51,"
                     "reduced-phys-bits=1,policy=0x5"]

    args.append("-enable-kvm")
    args += ["-cpu", "EPYC-v4"]
    args += ["-smp", "2"]
    args += ["-m", "512M,slots=10,maxmem=257720M"]

    args += ["-initrd", paths.initrd]
    args += ["-kernel", paths.kernel]
    args += ["-append", "console=ttyS0"]
    args += ["-drive", f"if=pflash,format=raw,readonly=on,file={paths.firmware}"]

    args.append("-nographic")
    return args


def kata_guest_args(guest: GuestType, paths: HypervisorPaths,
                    debug_socket: Path = DEBUG_SOCKET,
                    qmp_socket: Path = QMP_SOCKET,
                    chardev_socket: Path = CHARDEV_SOCKET) -> list[str]:
    """Basic guest plus the device topology a Kata sandbox boots with.

    The firmware's debug console (I/O port 0x402) is wired to
    `debug_socket`, which is where the capture channel listens.
    """
    args = basic_guest_args(guest, paths)

    args += ["-device", "virtio-scsi-pci,id=scsi,disable-modern=false"]
    args += ["-chardev", "file,id=char0,path=serial-output.txt"]
    args += ["-serial", "chardev:char0"]

    args += ["-chardev", f"socket,path={debug_socket},id=fwdbg"]
    args += ["-device", "isa-debugcon,iobase=0x402,chardev=fwdbg"]

    args += ["-device", "pci-bridge,bus=pcie.0,id=pci-bridge-0,chassis_nr=1,"
             "shpc=off,addr=4,io-reserve=4k,mem-reserve=1m,pref64-reserve=1m"]
    args += ["-device", "virtio-serial-pci,disable-modern=false,id=serial0"]
    args += ["-object", "rng-random,id=rng0,filename=/dev/urandom"]
    args += ["-device", "virtio-rng-pci,rng=rng0"]
    args += ["-global", "kvm-pit.lost_tick_policy=discard"]

    # Slows down non-SEV boots; kept to match the Kata runtime.
    args += ["-qmp", f"unix:{qmp_socket},server=on,wait=off"]
    args += ["-rtc", "base=utc,driftfix=slew,clock=host"]

    args += ["-netdev", "tap,id=network-0,script=qemu-ifup,downscript=no,"
             "ifname=tap0,vhost=on"]
    args += ["-device", "driver=virtio-net-pci,netdev=network-0,"
             "mac=ba:2f:08:16:18:aa,disable-modern=false,mq=on,vectors=4"]

    args += ["-object", "memory-backend-file,id=dimm1,size=512M,"
             "mem-path=/dev/shm,share=on"]
    args += ["-numa", "node,memdev=dimm1"]

    args += ["-device", "virtconsole,chardev=charconsole0,id=console0"]
    args += ["-chardev", f"socket,id=charconsole0,path={chardev_socket},"
             "server=on,wait=off"]
    return args


def guest_command(guest: GuestType, paths: HypervisorPaths,
                  debug_socket: Path = DEBUG_SOCKET,
                  sudo: bool = True) -> list[str]:
    """Full argv for launching `guest`."""
    args = kata_guest_args(guest, paths, debug_socket=debug_socket)
    return (["sudo"] + args) if sudo else args
