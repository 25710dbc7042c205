from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd
import pytest
import yaml


REPO_ROOT = Path(__file__).resolve().parents[1]
PLUGINS_DIR = REPO_ROOT / "plugins"


FULL_PLOT_SOURCE = """
import json
import warnings


class Plugin:
    def metadata(self):
        return {"name": "alpha"}

    def catalog(self):
        return [
            {"id": "one", "label": "One", "params": {"scale": 1.0}, "palette": "viridis"},
            {"id": "two", "label": "Two", "params": {"scale": 2.0}, "colors": ["#000000", "#ffffff"]},
            {"id": "boom"},
            {"id": "noisy"},
        ]

    def generate(self, data, item, config):
        if item.id == "boom":
            raise ValueError("cannot render")
        if item.id == "noisy":
            warnings.warn("sparse group")
        payload = {"item": item.id, "config": config, "rows": len(data)}
        return json.dumps(payload, sort_keys=True).encode("utf-8")

    def generate_batch(self, data, items, config):
        return {item.id: self.generate(data, item, config) for item in items}
"""


MINIMAL_PLOT_SOURCE = """
def generate(data, item_id, config):
    return ("legacy:" + item_id).encode("utf-8")
"""


def write_module(
    root: Path,
    name: str,
    source: str,
    module_type: str = "plot",
    entrypoint: str = "plugin.py:Plugin",
    **manifest: Any,
) -> Path:
    module_dir = root / name
    module_dir.mkdir(parents=True, exist_ok=True)
    payload: dict[str, Any] = {"id": name, "type": module_type, "entrypoint": entrypoint}
    payload.update(manifest)
    (module_dir / "plugin.yaml").write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
    (module_dir / entrypoint.split(":", 1)[0]).write_text(textwrap.dedent(source), encoding="utf-8")
    return module_dir


@pytest.fixture()
def modules_root(tmp_path: Path) -> Path:
    root = tmp_path / "modules"
    root.mkdir()
    return root


def make_dispersal_frame(rows: int = 60, seed: int = 7) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    return pd.DataFrame(
        {
            "mass": rng.uniform(250, 600, rows).round(1),
            "year": 1990 + (np.arange(rows) % 24),
            "dispersed": np.where(np.arange(rows) % 3 == 0, "Y", "N"),
        }
    )


@pytest.fixture()
def dispersal_frame() -> pd.DataFrame:
    return make_dispersal_frame()


@pytest.fixture()
def dispersal_csv(tmp_path: Path, dispersal_frame: pd.DataFrame) -> Path:
    path = tmp_path / "data.csv"
    dispersal_frame.to_csv(path, index=False)
    return path


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "PLOT_HARNESS_APPDATA",
        "PLOT_HARNESS_MODULES_DIR",
        "PLOT_HARNESS_REGISTRY",
        "PLOT_HARNESS_CONTINUE_ON_ERROR",
    ):
        monkeypatch.delenv(name, raising=False)
