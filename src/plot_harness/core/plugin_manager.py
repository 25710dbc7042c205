from __future__ import annotations

import copy
import importlib.util
import sys
from pathlib import Path
from typing import Any, Mapping

import yaml
from jsonschema import ValidationError, validate

from .errors import ModuleLoadError
from .types import (
    InterfaceReport,
    ItemSpec,
    LoadedModule,
    LoadResult,
    ModuleDescriptor,
    ModuleDiscoveryError,
)
from .utils import Logger, null_logger, read_json


MANIFEST_NAME = "plugin.yaml"
NAMESPACE_ROOT = "plot_harness_modules"

SCHEMAS_DIR = Path(__file__).resolve().parent.parent / "schemas"

# Capability sets per module type: (full contract, minimal contract).
CAPABILITIES: dict[str, tuple[tuple[str, ...], tuple[str, ...]]] = {
    "plot": (("metadata", "catalog", "generate", "generate_batch"), ("generate",)),
    "domain": (("init", "artifact_types", "data_schema"), ("init",)),
}


class ModuleManager:
    """Discovers, loads and validates modules living under one root directory.

    Layout: `<modules_dir>/<module_id>/plugin.yaml` plus the Python entry file
    named by the manifest's `entrypoint` ("plugin.py" or "plugin.py:Plugin").
    """

    def __init__(self, modules_dir: Path, logger: Logger | None = None) -> None:
        self.modules_dir = Path(modules_dir)
        self.logger = logger or null_logger
        self.discovery_errors: list[ModuleDiscoveryError] = []
        self._manifest_schema: dict[str, Any] | None = None
        self._schema_cache: dict[Path, dict[str, Any]] = {}

    # -- discovery ---------------------------------------------------------

    def _record_discovery_error(self, name: str, path: Path, message: str) -> None:
        self.discovery_errors.append(ModuleDiscoveryError(name=name, path=path, message=message))
        self.logger(f"[WARN] discovery skipped {name}: {message}")

    def discover(self, module_type: str | None = None) -> dict[str, ModuleDescriptor]:
        """Scan immediate subdirectories for module manifests.

        Broken candidates are recorded in `discovery_errors` and skipped; only a
        missing root directory raises. Callers must not rely on mapping order.
        """

        if not self.modules_dir.is_dir():
            raise FileNotFoundError(f"Module directory not found: {self.modules_dir}")
        self.discovery_errors = []
        schema = self._load_manifest_schema()
        found: dict[str, ModuleDescriptor] = {}
        for module_dir in sorted(p for p in self.modules_dir.iterdir() if p.is_dir()):
            manifest = module_dir / MANIFEST_NAME
            if not manifest.is_file():
                continue
            try:
                data = yaml.safe_load(manifest.read_text(encoding="utf-8"))
            except (OSError, yaml.YAMLError) as exc:
                self._record_discovery_error(module_dir.name, manifest, f"Invalid YAML: {exc}")
                continue
            if not isinstance(data, dict):
                self._record_discovery_error(module_dir.name, manifest, "Invalid manifest payload")
                continue
            module_id = str(data.get("id") or module_dir.name)
            try:
                validate(instance=data, schema=schema)
            except ValidationError as exc:
                self._record_discovery_error(module_id, manifest, f"Invalid manifest: {exc.message}")
                continue
            if module_type is not None and data["type"] != module_type:
                continue
            if module_id in found:
                self._record_discovery_error(module_id, manifest, "Duplicate module id")
                continue
            descriptor = self._build_descriptor(module_id, module_dir, manifest, data)
            if descriptor is not None:
                found[module_id] = descriptor
        self.logger(f"[OK] discovered {len(found)} module(s) under {self.modules_dir}")
        return found

    def _build_descriptor(
        self, module_id: str, module_dir: Path, manifest: Path, data: dict[str, Any]
    ) -> ModuleDescriptor | None:
        entrypoint = str(data["entrypoint"])
        entry_file = module_dir / entrypoint.split(":", 1)[0]
        if not entry_file.is_file():
            self._record_discovery_error(module_id, manifest, f"Missing entry file: {entry_file.name}")
            return None
        config_schema: Path | None = None
        if data.get("config_schema"):
            config_schema = module_dir / str(data["config_schema"])
            if not config_schema.is_file():
                self._record_discovery_error(
                    module_id, manifest, f"Missing config schema: {config_schema.name}"
                )
                return None
        try:
            items = [ItemSpec.from_dict(item) for item in data.get("items") or []]
        except ValueError as exc:
            self._record_discovery_error(module_id, manifest, f"Invalid item: {exc}")
            return None
        return ModuleDescriptor(
            name=module_id,
            type=str(data["type"]),
            path=module_dir,
            entry_file=entry_file,
            entrypoint=entrypoint,
            version=str(data.get("version") or "0.0.0"),
            description=str(data.get("description") or ""),
            depends_on=list(data.get("depends_on") or []),
            config_schema=config_schema,
            items=items,
            settings=dict(data.get("settings") or {}),
        )

    # -- loading -----------------------------------------------------------

    def load(self, descriptor: ModuleDescriptor) -> LoadResult:
        """Execute the entry file in a private namespace.

        Never raises: every failure ends up in `LoadResult.errors`.
        """

        result = LoadResult(descriptor=descriptor)
        entry_file = descriptor.entry_file
        if not entry_file.is_file():
            result.errors.append(f"Entry file not found: {entry_file}")
            return result
        module_name = f"{NAMESPACE_ROOT}.{descriptor.type}.{descriptor.name}"
        try:
            spec = importlib.util.spec_from_file_location(module_name, entry_file)
            if spec is None or spec.loader is None:
                raise ImportError(f"Unable to load {entry_file}")
            namespace = importlib.util.module_from_spec(spec)
            namespace.MODULE_PATH = descriptor.path
            sys.modules[module_name] = namespace
            try:
                spec.loader.exec_module(namespace)
            except BaseException:
                sys.modules.pop(module_name, None)
                raise
        except Exception as exc:
            result.errors.append(f"Failed to load module: {type(exc).__name__}: {exc}")
            self.logger(f"[ERROR] load {descriptor.name}: {result.errors[-1]}")
            return result
        result.namespace = namespace

        _, _, class_name = descriptor.entrypoint.partition(":")
        if class_name:
            factory = getattr(namespace, class_name, None)
            if not callable(factory):
                result.errors.append(f"Entrypoint class not found: {class_name}")
                return result
            try:
                result.instance = factory()
            except Exception as exc:
                result.errors.append(
                    f"Failed to construct {class_name}: {type(exc).__name__}: {exc}"
                )
                return result
        else:
            # Function-style module: the namespace itself carries the capabilities.
            result.instance = namespace
        result.loaded = True
        self.logger(f"[OK] loaded {descriptor.type} module {descriptor.name}")
        return result

    # -- interface validation ---------------------------------------------

    def validate_interface(self, instance: Any, module_type: str) -> InterfaceReport:
        capabilities = CAPABILITIES.get(module_type)
        if capabilities is None:
            return InterfaceReport(
                module_type=module_type,
                contract="invalid",
                errors=[f"Unknown module type: {module_type}"],
            )
        full, minimal = capabilities
        present = [name for name in full if callable(getattr(instance, name, None))]
        missing = [name for name in full if name not in present]
        if not missing:
            contract = "full"
        elif all(name in present for name in minimal):
            contract = "minimal"
        else:
            contract = "invalid"
        report = InterfaceReport(
            module_type=module_type, contract=contract, present=present, missing=missing
        )
        if contract == "invalid":
            absent = [name for name in minimal if name not in present]
            report.errors.append(
                f"Module does not implement the {module_type} interface; "
                f"missing required: {', '.join(absent)}"
            )
        return report

    def load_valid(
        self, module_type: str
    ) -> tuple[dict[str, LoadedModule], dict[str, list[str]]]:
        """Discover, load and validate every module of `module_type`.

        Returns the usable modules and, separately, the reasons others were
        excluded.
        """

        usable: dict[str, LoadedModule] = {}
        failures: dict[str, list[str]] = {}
        descriptors = self.discover(module_type)
        for err in self.discovery_errors:
            failures[err.name] = [f"discovery error: {err.message}"]
        for name, descriptor in descriptors.items():
            loaded = self.load(descriptor)
            if not loaded.loaded:
                failures[name] = list(loaded.errors)
                continue
            report = self.validate_interface(loaded.instance, descriptor.type)
            if not report.valid:
                failures[name] = list(report.errors)
                self.logger(f"[ERROR] interface {name}: {'; '.join(report.errors)}")
                continue
            usable[name] = LoadedModule(descriptor=descriptor, instance=loaded.instance, interface=report)
        return usable, failures

    def require(self, name: str, module_type: str) -> LoadedModule:
        """Load one named module, raising ModuleLoadError if it is not usable."""

        descriptors = self.discover(module_type)
        descriptor = descriptors.get(name)
        if descriptor is None:
            reasons = [err.message for err in self.discovery_errors if err.name == name]
            detail = f": {'; '.join(reasons)}" if reasons else ""
            raise ModuleLoadError(f"No {module_type} module named '{name}'{detail}")
        loaded = self.load(descriptor)
        if not loaded.loaded:
            raise ModuleLoadError(f"Module '{name}' failed to load: {'; '.join(loaded.errors)}")
        report = self.validate_interface(loaded.instance, module_type)
        if not report.valid:
            raise ModuleLoadError(f"Module '{name}' is invalid: {'; '.join(report.errors)}")
        return LoadedModule(descriptor=descriptor, instance=loaded.instance, interface=report)

    # -- configuration -----------------------------------------------------

    def resolve_config(
        self, descriptor: ModuleDescriptor, config: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Merge manifest defaults with `config`, apply schema defaults, validate."""

        resolved: dict[str, Any] = copy.deepcopy(dict(descriptor.settings.get("defaults") or {}))
        resolved.update(copy.deepcopy(dict(config or {})))
        if descriptor.config_schema is None:
            return resolved
        schema = self._load_schema(descriptor.config_schema)
        apply_schema_defaults(schema, resolved)
        validate(instance=resolved, schema=schema)
        return resolved

    def _load_schema(self, path: Path) -> dict[str, Any]:
        if path not in self._schema_cache:
            self._schema_cache[path] = read_json(path)
        return self._schema_cache[path]

    def _load_manifest_schema(self) -> dict[str, Any]:
        if self._manifest_schema is None:
            self._manifest_schema = read_json(SCHEMAS_DIR / "module_manifest.schema.json")
        return self._manifest_schema


def apply_schema_defaults(schema: Mapping[str, Any], settings: dict[str, Any]) -> dict[str, Any]:
    """Fill absent keys of `settings` from the schema's property defaults, in place.

    Nested object properties are filled the same way. A key that is present,
    even as an explicit null, keeps its value.
    """

    for key, prop in (schema.get("properties") or {}).items():
        if not isinstance(prop, Mapping):
            continue
        if key not in settings and "default" in prop:
            settings[key] = copy.deepcopy(prop["default"])
        if isinstance(settings.get(key), dict) and prop.get("properties"):
            apply_schema_defaults(prop, settings[key])
    return settings
