from __future__ import annotations

from typing import Any

import pandas as pd


ARTIFACT_TYPES = [
    "raw_data",
    "checkpoint",
    "processed_data",
    "ridgeline_plots",
    "summary_stats",
    "plot_objects",
    "report",
    "release_bundle",
    "validation_report",
]

DISPERSED_VALUES = ("Y", "N", "Yes", "No", "Unknown")

# Fallback lookup for cached results written before a registry existed.
RESULT_PATTERNS = {
    "summary": r"^(summary_data|summary)_.*\.json$",
    "plots": r"^(plot_results|plot_objects|ridgeline)_.*\.json$",
}


class Plugin:
    def __init__(self) -> None:
        self.settings: dict[str, Any] = {}

    def init(self, config: dict[str, Any]) -> dict[str, Any]:
        self.settings = {
            "raw_data_name": "dispersal_data",
            "mass_range": [100, 700],
            "year_range": [1900, 2100],
        }
        self.settings.update(config or {})
        return {
            "artifact_types": self.artifact_types(),
            "data_schema": self.data_schema(),
            "raw_data_name": self.settings["raw_data_name"],
            "result_patterns": dict(RESULT_PATTERNS),
        }

    def artifact_types(self) -> list[str]:
        return list(ARTIFACT_TYPES)

    def data_schema(self) -> dict[str, Any]:
        return {
            "required_columns": ["mass", "year", "dispersed"],
            "numeric_columns": ["mass", "year"],
            "non_negative_columns": ["mass"],
            "min_rows": 10,
        }

    def check_ranges(self, df: pd.DataFrame) -> list[str]:
        """Out-of-range values are reported, never dropped."""

        issues: list[str] = []
        lo, hi = self.settings.get("mass_range", [100, 700])
        if "mass" in df.columns:
            outside = int(((df["mass"] < lo) | (df["mass"] > hi)).sum())
            if outside:
                issues.append(f"{outside} mass value(s) outside [{lo}, {hi}] grams")
        lo, hi = self.settings.get("year_range", [1900, 2100])
        if "year" in df.columns:
            outside = int(((df["year"] < lo) | (df["year"] > hi)).sum())
            if outside:
                issues.append(f"{outside} year value(s) outside [{lo}, {hi}]")
        if "dispersed" in df.columns:
            unknown = int((~df["dispersed"].isin(DISPERSED_VALUES) & df["dispersed"].notna()).sum())
            if unknown:
                issues.append(f"{unknown} unrecognised dispersed value(s)")
        return issues
