# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This software may be used and distributed according to the terms of the
# GNU General Public License version 2.

"""Boot-phase timing for OVMF guests launched under QEMU."""

__version__ = "0.1.0"
