from __future__ import annotations

import math
import warnings
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd
from matplotlib.backends.backend_agg import FigureCanvasAgg
from matplotlib.figure import Figure

from plot_harness.core.palettes import CUSTOM_PALETTES, resolve_colors
from plot_harness.core.types import ItemSpec


VERSION = "1.0.0"

DEFAULTS: dict[str, Any] = {
    "value_column": "mass",
    "year_column": "year",
    "group_column": "generation",
    "bin_years": 6,
    "value_min": 0,
    "value_max": 10000,
    "scale": 1.0,
    "line_height": 1.0,
    "alpha": 0.7,
    "grid_points": 512,
    "dpi": 300,
    "width": 10,
    "height": 6,
    "file_format": "png",
}

# (palette name, display label), in catalog order.
PALETTES: list[tuple[str, str]] = [
    ("plasma", "Plasma"),
    ("viridis", "Viridis"),
    ("magma", "Magma"),
    ("inferno", "Inferno"),
    ("cividis", "Cividis"),
    ("rocket", "Rocket"),
    ("mako", "Mako"),
    ("turbo", "Turbo"),
    ("Set2", "Set2"),
    ("Dark2", "Dark2"),
    ("hawkO_natural", "HawkO Natural"),
    ("hawkO_vivid", "HawkO Vivid"),
    ("hawk_natural", "Hawk Natural"),
    ("hawk_vivid", "Hawk Vivid"),
]

# group -> (scale, line_height)
LAYOUTS: dict[str, tuple[float, float]] = {
    "compact": (0.85, 0.85),
    "expanded": (2.25, 1.0),
}


def build_variants() -> list[ItemSpec]:
    items: list[ItemSpec] = []
    for group, (scale, line_height) in LAYOUTS.items():
        for idx, (palette, label) in enumerate(PALETTES, start=1):
            items.append(
                ItemSpec(
                    id=f"{group}_{idx:02d}",
                    label=f"{group.capitalize()} + {label}",
                    params={"scale": scale, "line_height": line_height},
                    palette=palette,
                    colors=CUSTOM_PALETTES.get(palette, ()),
                    tags=(group, palette),
                )
            )
    return items


def prepare_data(data: pd.DataFrame, config: dict[str, Any]) -> pd.DataFrame:
    """Return (group, value) rows ready for density estimation.

    Without a group column, years are binned into `bin_years` periods.
    """

    if not isinstance(data, pd.DataFrame):
        raise TypeError("Ridgeline data must be a pandas DataFrame")
    group_col = config["group_column"]
    value_col = config["value_column"]
    year_col = config["year_column"]
    df = data.copy()
    if group_col not in df.columns:
        if year_col not in df.columns:
            raise ValueError(f"Data must have either '{group_col}' or '{year_col}' column")
        years = pd.to_numeric(df[year_col], errors="coerce")
        width = int(config["bin_years"])
        start = (years // width) * width
        df[group_col] = [
            f"{int(lo)}-{int(lo) + width - 1}" if not math.isnan(lo) else None for lo in start
        ]
    if value_col not in df.columns:
        raise ValueError(f"Missing value column: {value_col}")
    df = df[df[group_col].notna()]
    values = pd.to_numeric(df[value_col], errors="coerce")
    keep = values.notna() & (values > config["value_min"]) & (values < config["value_max"])
    out = pd.DataFrame({"group": df[group_col].astype(str), "value": values})[keep]
    if out.empty:
        raise ValueError("No valid data for plotting")
    return out.reset_index(drop=True)


def gaussian_kde(values: np.ndarray, grid: np.ndarray) -> np.ndarray:
    n = len(values)
    std = float(np.std(values, ddof=1)) if n > 1 else 0.0
    bandwidth = 1.06 * std * n ** (-0.2) if std > 0 else max(abs(float(np.mean(values))) * 0.05, 1.0)
    z = (grid[:, None] - values[None, :]) / bandwidth
    return np.exp(-0.5 * z * z).sum(axis=1) / (n * bandwidth * math.sqrt(2 * math.pi))


def render(prepared: pd.DataFrame, config: dict[str, Any]) -> Figure:
    groups = sorted(prepared["group"].unique())
    fill = resolve_colors(len(groups), config.get("palette"), config.get("colors"))
    outline = resolve_colors(len(groups), config.get("palette"), config.get("outline_colors") or fill)

    lo, hi = float(prepared["value"].min()), float(prepared["value"].max())
    pad = max((hi - lo) * 0.1, 1.0)
    grid = np.linspace(lo - pad, hi + pad, int(config["grid_points"]))
    densities = []
    for group in groups:
        values = prepared.loc[prepared["group"] == group, "value"].to_numpy(dtype=float)
        if len(values) < 2:
            warnings.warn(f"Group {group} has fewer than 2 values; density is a single kernel")
        densities.append(gaussian_kde(values, grid))
    peak = max(float(d.max()) for d in densities) or 1.0

    fig = Figure(figsize=(float(config["width"]), float(config["height"])))
    FigureCanvasAgg(fig)
    ax = fig.add_subplot(1, 1, 1)
    spacing = float(config["line_height"])
    scale = float(config["scale"])
    for idx, (group, density) in enumerate(zip(groups, densities)):
        base = idx * spacing
        top = base + density / peak * scale * spacing
        # Lower ridges are drawn over the ones above them.
        zorder = len(groups) - idx
        ax.fill_between(
            grid,
            base,
            top,
            facecolor=fill[idx],
            edgecolor=outline[idx],
            alpha=float(config["alpha"]),
            linewidth=0.8,
            zorder=zorder,
        )
    ax.set_yticks([idx * spacing for idx in range(len(groups))])
    ax.set_yticklabels(groups)
    value_col = config["value_column"]
    ax.set_xlabel("Mass (grams)" if value_col == "mass" else value_col)
    ax.set_ylabel("Period")
    ax.set_title(f"{config['title']}\nn={len(prepared)}, scale={scale:.2f}", loc="left")
    for side in ("top", "right"):
        ax.spines[side].set_visible(False)
    fig.tight_layout()
    return fig


class Plugin:
    def __init__(self) -> None:
        self._variants = build_variants()

    def metadata(self) -> dict[str, Any]:
        return {
            "name": "ridgeline",
            "version": VERSION,
            "description": "Density distributions across generational periods",
            "items": len(self._variants),
            "groups": sorted(LAYOUTS),
        }

    def catalog(self) -> list[ItemSpec]:
        return list(self._variants)

    def generate(self, data: Any, item: ItemSpec, config: dict[str, Any]) -> Figure:
        settings = {**DEFAULTS, "title": item.label, **config}
        return render(prepare_data(data, settings), settings)

    def generate_batch(
        self, data: Any, items: list[ItemSpec], config: dict[str, Any]
    ) -> dict[str, Figure]:
        """Render several variants from one prepared frame.

        Item parameters and colors override the shared `config`.
        """

        base = {**DEFAULTS, **config}
        prepared = prepare_data(data, base)
        figures: dict[str, Figure] = {}
        for item in items:
            merged = {"title": item.label, **base}
            merged.update(item.params)
            if item.colors:
                merged["colors"] = list(item.colors)
            elif item.palette:
                merged["palette"] = item.palette
            figures[item.id] = render(prepared, merged)
        return figures

    def save(self, artifact: Figure, path: Path, config: dict[str, Any]) -> None:
        artifact.savefig(
            path,
            dpi=int(config.get("dpi", 300)),
            format=str(config.get("file_format", "png")),
            bbox_inches="tight",
        )
