"""
Diagnostics for terrain generation runs.

Two kinds of output:

- an ordered DiagnosticLog fed by a logging.Handler, so every message any
  module logs during a run can be inspected afterwards and split into info,
  warning, error and detail (debug) streams
- debug images written with matplotlib: a per-material before/after overlay
  and a road network overlay with splines and junctions
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

import matplotlib

matplotlib.use("Agg")  # Non-interactive backend

import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiagnosticRecord:
    """One log line of a run."""

    level: str
    message: str
    source: str = ""
    created: float = field(default_factory=time.time)

    def __str__(self) -> str:
        return f"[{self.level.upper()}] {self.message}"


class DiagnosticLog:
    """Ordered record of everything logged during one run."""

    LEVELS = ("detail", "info", "warning", "error")

    def __init__(self):
        self.records: List[DiagnosticRecord] = []

    def add(self, level: str, message: str, source: str = "") -> DiagnosticRecord:
        if level not in self.LEVELS:
            raise ValueError(f"Unknown diagnostic level '{level}'")
        record = DiagnosticRecord(level, message, source)
        self.records.append(record)
        return record

    def _messages(self, level: str) -> List[str]:
        return [r.message for r in self.records if r.level == level]

    @property
    def info(self) -> List[str]:
        return self._messages("info")

    @property
    def warnings(self) -> List[str]:
        return self._messages("warning")

    @property
    def errors(self) -> List[str]:
        return self._messages("error")

    @property
    def details(self) -> List[str]:
        return self._messages("detail")

    def to_lines(self, include_details: bool = False) -> List[str]:
        return [str(r) for r in self.records if include_details or r.level != "detail"]

    def clear(self) -> None:
        self.records.clear()

    def __len__(self) -> int:
        return len(self.records)


class DiagnosticLogHandler(logging.Handler):
    """
    logging.Handler that appends records to a DiagnosticLog.

    Example:
        >>> log = DiagnosticLog()
        >>> handler = DiagnosticLogHandler(log)
        >>> logging.getLogger("src.roadterrain").addHandler(handler)
    """

    def __init__(self, log: Optional[DiagnosticLog] = None, level: int = logging.DEBUG):
        super().__init__(level)
        self.log = log if log is not None else DiagnosticLog()

    def emit(self, record: logging.LogRecord) -> None:
        if record.levelno >= logging.ERROR:
            level = "error"
        elif record.levelno >= logging.WARNING:
            level = "warning"
        elif record.levelno >= logging.INFO:
            level = "info"
        else:
            level = "detail"
        self.log.add(level, record.getMessage(), record.name)


def export_material_debug_image(
    before: np.ndarray,
    after: np.ndarray,
    layer: Optional[np.ndarray],
    material_name: str,
    output_path: Path,
    cmap: str = "terrain",
) -> Path:
    """
    Save a three-panel view of one material pass.

    Panels: terrain before with the layer overlaid, terrain after, and the
    elevation change.

    Args:
        before: Heightmap before the material was applied
        after: Heightmap after the material was applied
        layer: Material layer mask (0-255), may be None
        material_name: Used in the title
        output_path: PNG path
        cmap: Colormap for elevation

    Returns:
        Path to the saved image
    """
    import matplotlib.pyplot as plt
    from matplotlib.colors import TwoSlopeNorm

    vmin = min(np.nanmin(before), np.nanmin(after))
    vmax = max(np.nanmax(before), np.nanmax(after))
    difference = after - before

    fig, axes = plt.subplots(1, 3, figsize=(18, 6))
    fig.suptitle(f"Material '{material_name}'", fontsize=14, fontweight="bold")

    ax1 = axes[0]
    im1 = ax1.imshow(before, cmap=cmap, vmin=vmin, vmax=vmax)
    if layer is not None:
        overlay = np.ma.masked_where(layer <= 127, layer)
        ax1.imshow(overlay, cmap="autumn", alpha=0.5)
    ax1.set_title("Before (layer overlay)")
    plt.colorbar(im1, ax=ax1, label="Elevation (m)", shrink=0.8)

    ax2 = axes[1]
    im2 = ax2.imshow(after, cmap=cmap, vmin=vmin, vmax=vmax)
    ax2.set_title("After")
    plt.colorbar(im2, ax=ax2, label="Elevation (m)", shrink=0.8)

    ax3 = axes[2]
    diff_range = float(np.nanmax(np.abs(difference)))
    norm = TwoSlopeNorm(vmin=-diff_range, vcenter=0, vmax=diff_range) if diff_range > 0 else None
    im3 = ax3.imshow(difference, cmap="RdBu_r", norm=norm)
    ax3.set_title(f"Change (max |Δ|={diff_range:.2f} m)")
    plt.colorbar(im3, ax=ax3, label="Δ Elevation (m)", shrink=0.8)

    for ax in axes:
        ax.set_xlabel("Column")
        ax.set_ylabel("Row")

    plt.tight_layout()

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=150, bbox_inches="tight")
    plt.close(fig)

    logger.info(f"Saved material debug image to {output_path}")
    return output_path


def export_network_debug_image(
    heightmap: np.ndarray,
    networks: Sequence,
    junctions: Sequence,
    output_path: Path,
    cmap: str = "gray",
) -> Path:
    """
    Save the road networks drawn over the heightmap.

    Cross-section centers are plotted per path (one color per material),
    junctions as circles and excluded junctions as red crosses.

    Args:
        heightmap: Terrain to draw under the roads
        networks: RoadNetwork instances
        junctions: JunctionSite instances
        output_path: PNG path
        cmap: Colormap for the terrain

    Returns:
        Path to the saved image
    """
    import matplotlib.pyplot as plt

    fig, ax = plt.subplots(figsize=(10, 10))
    ax.imshow(heightmap, cmap=cmap)
    colors = plt.cm.tab10.colors

    for network in networks:
        color = colors[network.material_index % len(colors)]
        first = True
        for path in network.paths:
            if not path.sections:
                continue
            centers = np.array([s.center for s in path.sections])
            ax.plot(
                centers[:, 0], centers[:, 1], "-", color=color, linewidth=1.5,
                label=network.material_name if first else None,
            )
            ax.plot(centers[0, 0], centers[0, 1], "o", color=color, markersize=3)
            first = False

    active = [j for j in junctions if not j.is_excluded]
    excluded = [j for j in junctions if j.is_excluded]
    if active:
        pos = np.array([j.position for j in active])
        ax.scatter(pos[:, 0], pos[:, 1], s=60, facecolors="none", edgecolors="yellow", label="Junction")
    if excluded:
        pos = np.array([j.position for j in excluded])
        ax.scatter(pos[:, 0], pos[:, 1], s=60, marker="x", color="red", label="Excluded")

    ax.set_title(f"Road networks ({len(junctions)} junctions)")
    ax.set_xlabel("Column")
    ax.set_ylabel("Row")
    if networks or junctions:
        handles, _ = ax.get_legend_handles_labels()
        if handles:
            ax.legend(loc="upper right", fontsize=8)

    plt.tight_layout()

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=150, bbox_inches="tight")
    plt.close(fig)

    logger.info(f"Saved network debug image to {output_path}")
    return output_path
