# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This software may be used and distributed according to the terms of the
# GNU General Public License version 2.

"""Timeline chart: one bar segment per boot phase on a shared tick axis."""

from collections.abc import Sequence
from pathlib import Path

from .common import RenderError, log
from .guest import GuestProfile
from .phases import PhaseInterval


# 900x300 px at 100 dpi.
FIGSIZE = (9, 3)
DPI = 100
Y_MAX = 2
BAR_HEIGHT = 1

PALETTE = ("cyan", "green", "magenta", "red", "yellow", "black")


def palette_color(index: int) -> str:
    return PALETTE[index % len(PALETTE)]


def plain_text(text: str) -> str:
    """Escape `$` so matplotlib does not parse firmware text as mathtext."""
    return text.replace("$", r"\$")


def render_timeline(intervals: Sequence[PhaseInterval], profile: GuestProfile,
                    output_path: Path) -> Path:
    """Draw `intervals` on the profile's axis and write the image.

    An existing file at `output_path` is overwritten.
    """
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    output_path = Path(output_path)
    fig, ax = plt.subplots(figsize=FIGSIZE, dpi=DPI)
    try:
        for i, iv in enumerate(intervals):
            ax.barh(
                0,
                iv.end - iv.start,
                left=iv.start,
                height=BAR_HEIGHT,
                align="edge",
                color=palette_color(i),
                label=plain_text(iv.label),
            )

        ax.set_title(plain_text(profile.title), fontsize=14)
        ax.set_xlim(0, profile.axis_max)
        ax.set_ylim(0, Y_MAX)
        ax.set_xlabel("Ticks")
        ax.grid(True, alpha=0.3)
        if intervals:
            ax.legend(loc="upper right", fontsize=8)

        try:
            plt.tight_layout()
            output_path.parent.mkdir(parents=True, exist_ok=True)
            fig.savefig(output_path, dpi=DPI)
        except OSError as e:
            raise RenderError(f"cannot write {output_path}: {e}")
        except (ValueError, RuntimeError) as e:
            raise RenderError(f"cannot draw {output_path.name}: {e}")
    finally:
        plt.close(fig)

    log.info(f"Chart saved to: {output_path}")
    return output_path
