from __future__ import annotations

from typing import Sequence

import matplotlib
from matplotlib.colors import LinearSegmentedColormap, to_hex


# Project palettes that are not shipped with matplotlib.
CUSTOM_PALETTES: dict[str, tuple[str, ...]] = {
    "hawkO_natural": ("#1F2A3A", "#56677F", "#8C6A54", "#C98C63", "#EAD7B8", "#EF8C27"),
    "hawkO_vivid": ("#142033", "#4A5E78", "#7A6456", "#B9734F", "#EAD7B8", "#FF8C00"),
    "hawk_natural": ("#1F2A3A", "#56677F", "#8C6A54", "#C98C63", "#F1E6D2"),
    "hawk_vivid": ("#142033", "#4A5E78", "#7A6456", "#B9734F", "#EFE3C6"),
}

# Continuous maps that ship with seaborn rather than matplotlib.
CUSTOM_COLORMAPS: dict[str, tuple[str, ...]] = {
    "rocket": ("#03051A", "#4C1D4B", "#A11A5B", "#E83F3F", "#F69C73", "#FAEBDD"),
    "mako": ("#0B0405", "#382A54", "#395D9C", "#3497A9", "#60CEAC", "#DEF5E5"),
}

# Qualitative colormaps are sampled by index instead of by position.
_QUALITATIVE = {"Set1", "Set2", "Set3", "Dark2", "Pastel1", "Pastel2", "Paired", "Accent", "tab10", "tab20"}


def available_palettes() -> list[str]:
    return sorted(set(CUSTOM_PALETTES) | set(CUSTOM_COLORMAPS) | set(matplotlib.colormaps))


def is_known_palette(name: str) -> bool:
    return name in CUSTOM_PALETTES or name in CUSTOM_COLORMAPS or name in matplotlib.colormaps


def _interpolate(colors: Sequence[str], n: int) -> list[str]:
    if n <= len(colors):
        return [to_hex(c) for c in colors[:n]]
    cmap = LinearSegmentedColormap.from_list("explicit", list(colors))
    if n == 1:
        return [to_hex(cmap(0.0))]
    return [to_hex(cmap(i / (n - 1))) for i in range(n)]


def palette_colors(name: str, n: int) -> list[str]:
    """Return `n` hex colors from a named palette."""

    if n <= 0:
        return []
    if name in CUSTOM_PALETTES:
        return _interpolate(CUSTOM_PALETTES[name], n)
    if name in CUSTOM_COLORMAPS:
        cmap = LinearSegmentedColormap.from_list(name, list(CUSTOM_COLORMAPS[name]))
    elif name in matplotlib.colormaps:
        cmap = matplotlib.colormaps[name]
    else:
        raise KeyError(f"Unknown palette: {name}")
    if name in _QUALITATIVE:
        size = getattr(cmap, "N", 8)
        return [to_hex(cmap(i % size)) for i in range(n)]
    if n == 1:
        return [to_hex(cmap(0.5))]
    # Stay away from the extremes, which are near-black/near-white on most maps.
    return [to_hex(cmap(0.1 + 0.8 * i / (n - 1))) for i in range(n)]


def resolve_colors(
    n: int,
    palette: str | None = None,
    colors: Sequence[str] | None = None,
    default: str = "viridis",
) -> list[str]:
    """An explicit color list always wins over a named palette."""

    if colors:
        return _interpolate(list(colors), n)
    return palette_colors(palette or default, n)
