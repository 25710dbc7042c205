from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml
from jsonschema import ValidationError, validate

from .errors import ConfigurationError
from .plugin_manager import SCHEMAS_DIR, apply_schema_defaults
from .utils import env_flag, get_appdata_dir, read_json


ENV_MODULES_DIR = "PLOT_HARNESS_MODULES_DIR"
ENV_REGISTRY = "PLOT_HARNESS_REGISTRY"
ENV_CONTINUE_ON_ERROR = "PLOT_HARNESS_CONTINUE_ON_ERROR"


@dataclass
class ReleaseSettings:
    enabled: bool = False
    name: str | None = None
    include_types: list[str] = field(default_factory=lambda: ["raw_data", "ridgeline_plots", "report"])


@dataclass
class HarnessConfig:
    modules_root: Path
    output_dir: Path
    registry_path: Path
    data_path: Path | None = None
    domain: str | None = "dispersal"
    plot_modules: list[str] | None = None
    required_types: list[str] = field(default_factory=lambda: ["raw_data", "ridgeline_plots"])
    include_report: bool = True
    continue_on_error: bool = True
    dpi: int = 150
    module_settings: dict[str, dict[str, Any]] = field(default_factory=dict)
    release: ReleaseSettings = field(default_factory=ReleaseSettings)

    @property
    def log_path(self) -> Path:
        return self.output_dir / "logs" / "run.log"

    def settings_for(self, module: str) -> dict[str, Any]:
        merged: dict[str, Any] = {"dpi": self.dpi}
        merged.update(self.module_settings.get(module) or {})
        return merged

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key, value in payload.items():
            if isinstance(value, Path):
                payload[key] = str(value)
        return payload


def load_settings(path: str | Path | None) -> dict[str, Any]:
    if not path:
        return {}
    path = Path(path)
    content = path.read_text(encoding="utf-8")
    if path.suffix == ".json":
        data = json.loads(content)
    else:
        data = yaml.safe_load(content)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Settings file must contain a mapping: {path}")
    return data


def load_config(
    path: str | Path | None = None, overrides: Mapping[str, Any] | None = None
) -> HarnessConfig:
    """Settings file < environment < explicit overrides, then schema defaults."""

    raw = load_settings(path)
    appdata_env = os.environ.get("PLOT_HARNESS_APPDATA")
    if appdata_env:
        appdata = get_appdata_dir()
        raw.setdefault("output_dir", str(appdata / "output"))
        raw.setdefault("registry_path", str(appdata / "registry.yaml"))
    if os.environ.get(ENV_MODULES_DIR):
        raw["modules_root"] = os.environ[ENV_MODULES_DIR]
    if os.environ.get(ENV_REGISTRY):
        raw["registry_path"] = os.environ[ENV_REGISTRY]
    if ENV_CONTINUE_ON_ERROR in os.environ:
        raw["continue_on_error"] = env_flag(ENV_CONTINUE_ON_ERROR, True)
    for key, value in (overrides or {}).items():
        if value is not None:
            raw[key] = value

    schema = read_json(SCHEMAS_DIR / "harness_config.schema.json")
    apply_schema_defaults(schema, raw)
    try:
        validate(instance=raw, schema=schema)
    except ValidationError as exc:
        location = "/".join(str(part) for part in exc.absolute_path) or "<root>"
        raise ConfigurationError(f"Invalid settings at {location}: {exc.message}") from exc

    return HarnessConfig(
        modules_root=Path(raw["modules_root"]),
        output_dir=Path(raw["output_dir"]),
        registry_path=Path(raw["registry_path"]),
        data_path=Path(raw["data_path"]) if raw.get("data_path") else None,
        domain=raw.get("domain"),
        plot_modules=list(raw["plot_modules"]) if raw.get("plot_modules") is not None else None,
        required_types=list(raw["required_types"]),
        include_report=bool(raw["include_report"]),
        continue_on_error=bool(raw["continue_on_error"]),
        dpi=int(raw["dpi"]),
        module_settings={str(k): dict(v) for k, v in raw["module_settings"].items()},
        release=ReleaseSettings(
            enabled=bool(raw["release"]["enabled"]),
            name=raw["release"]["name"],
            include_types=list(raw["release"]["include_types"]),
        ),
    )
