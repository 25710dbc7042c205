from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping

from jsonschema import ValidationError

from .dependencies import (
    DependencyCycleError,
    build_dependency_graph,
    missing_dependencies,
    topological_order,
)
from .errors import ConfigurationError, UnknownItemError
from .events import EventBus, item_event
from .palettes import is_known_palette
from .plugin_manager import ModuleManager
from .result import (
    STATUS_FAILED,
    STATUS_PARTIAL,
    STATUS_SUCCESS,
    Result,
    create_result,
    is_success,
    start_timer,
    stop_timer,
)
from .types import ItemSpec, LoadedModule
from .utils import Logger, atomic_write_bytes, ensure_dir, null_logger


ERROR_PENALTY = 10.0
WARNING_PENALTY = 5.0
PARTIAL_PENALTY = 20.0

# Result key used when a module's catalog itself cannot be built.
CATALOG_KEY = "catalog"

_IGNORED_WARNINGS = (DeprecationWarning, PendingDeprecationWarning)


@dataclass
class OrchestrationSummary:
    module_type: str
    modules_found: int = 0
    modules_loaded: int = 0
    modules_failed: dict[str, list[str]] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)
    items_generated: int = 0
    items_failed: int = 0
    results: dict[str, dict[str, Result]] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    status: str = STATUS_FAILED
    average_quality: float | None = None
    duration: float = 0.0

    @property
    def success_rate(self) -> float:
        total = self.items_generated + self.items_failed
        return self.items_generated / total if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "module_type": self.module_type,
            "status": self.status,
            "modules_found": self.modules_found,
            "modules_loaded": self.modules_loaded,
            "modules_failed": {k: list(v) for k, v in self.modules_failed.items()},
            "order": list(self.order),
            "items_generated": self.items_generated,
            "items_failed": self.items_failed,
            "success_rate": round(self.success_rate, 4),
            "average_quality": self.average_quality,
            "duration": self.duration,
            "errors": list(self.errors),
            "results": {
                module: {item_id: res.to_dict() for item_id, res in items.items()}
                for module, items in self.results.items()
            },
        }


def batch_success_rate(results: Mapping[str, Result]) -> float:
    """generated / (generated + failed); partial output counts as generated."""

    if not results:
        return 0.0
    generated = sum(1 for res in results.values() if is_success(res))
    return generated / len(results)


def score_result(result: Result) -> float:
    if result.status == STATUS_FAILED:
        return 0.0
    score = 100.0
    score -= ERROR_PENALTY * len(result.errors)
    score -= WARNING_PENALTY * len(result.warnings)
    if result.status == STATUS_PARTIAL:
        score -= PARTIAL_PENALTY
    return score


def artifact_filename(module: str, item_id: str, file_format: str, when: datetime | None = None) -> str:
    stamp = (when or datetime.now(timezone.utc)).strftime("%Y%m%d")
    return f"{stamp}_{module}_{item_id}.{file_format}"


class Orchestrator:
    """Runs loaded modules item by item and wraps every outcome in a Result.

    Rendering failures are hard failures for the item. A rendered artifact that
    cannot be written to disk degrades the item to partial and is kept in
    memory on `Result.data`.

    Modules loaded by `run_modules` are kept for the lifetime of the
    orchestrator, so a second run reuses the same instances and calls their
    `reset` hook first.
    """

    def __init__(
        self,
        manager: ModuleManager,
        output_dir: Path | None = None,
        logger: Logger | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.manager = manager
        self.output_dir = Path(output_dir) if output_dir is not None else None
        self.logger = logger or null_logger
        self.events = events
        self._loaded: dict[str, tuple[dict[str, LoadedModule], dict[str, list[str]]]] = {}
        self._ran: set[str] = set()

    def _emit(self, event_type: str, data: Mapping[str, Any], source: str) -> None:
        if self.events is not None:
            self.events.emit(event_type, data, source=source)

    def _announce(self, module: LoadedModule, result: Result) -> None:
        outcome = "generated" if is_success(result) else "failed"
        self._emit(
            item_event(module.descriptor.type, outcome),
            {
                "item_id": result.metadata.get("item_id"),
                "status": result.status,
                "quality_score": result.quality_score,
                "output_path": result.metadata.get("output_path"),
            },
            module.name,
        )

    # -- catalog -----------------------------------------------------------

    def catalog(self, module: LoadedModule) -> list[ItemSpec]:
        if module.contract == "full":
            raw = module.instance.catalog()
        else:
            raw = module.descriptor.items
        return [item if isinstance(item, ItemSpec) else ItemSpec.from_dict(item) for item in raw]

    def resolve_item(self, module: LoadedModule, item_id: str, catalog: Iterable[ItemSpec] | None = None) -> ItemSpec:
        """Exact id match only."""

        for item in catalog if catalog is not None else self.catalog(module):
            if item.id == item_id:
                return item
        raise UnknownItemError(module.name, item_id)

    def build_config(
        self, module: LoadedModule, item: ItemSpec, config: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        """Module defaults < caller config < item parameters.

        An explicit color list, from the item or the caller, removes any named
        palette. A named palette that no palette source knows is rejected.
        """

        merged: dict[str, Any] = dict(config or {})
        merged.update(item.params)
        if item.palette:
            merged["palette"] = item.palette
        if item.colors:
            merged["colors"] = list(item.colors)
        if merged.get("colors"):
            merged.pop("palette", None)
        palette = merged.get("palette")
        if palette and not is_known_palette(str(palette)):
            raise ConfigurationError(f"Unknown palette: {palette}")
        return self.manager.resolve_config(module.descriptor, merged)

    def _catalog_failure(self, module: LoadedModule, item_id: str, exc: Exception) -> Result:
        failed = create_result(f"{module.name}:{item_id}")
        failed.metadata.update({"module": module.name, "item_id": item_id, "contract": module.contract})
        failed.add_error(
            f"Catalog unavailable: {type(exc).__name__}: {exc}",
            details={"type": "catalog", "exception": type(exc).__name__},
        )
        self.logger(f"[ERROR] {failed.operation}: {failed.errors[-1]}")
        return self._close(failed, start_timer())

    # -- generation --------------------------------------------------------

    def generate_one(
        self,
        module: LoadedModule,
        data: Any,
        item_id: str,
        config: Mapping[str, Any] | None = None,
        persist: bool | None = None,
    ) -> Result:
        try:
            catalog = self.catalog(module)
        except Exception as exc:
            result = self._catalog_failure(module, item_id, exc)
        else:
            result = self._generate(module, data, item_id, config, persist, catalog)
        self._announce(module, result)
        return result

    def _generate(
        self,
        module: LoadedModule,
        data: Any,
        item_id: str,
        config: Mapping[str, Any] | None,
        persist: bool | None,
        catalog: list[ItemSpec],
    ) -> Result:
        start = start_timer()
        result = create_result(f"{module.name}:{item_id}")
        result.metadata.update({"module": module.name, "item_id": item_id, "contract": module.contract})

        try:
            item = self.resolve_item(module, item_id, catalog)
        except UnknownItemError as exc:
            result.add_error(str(exc), details={"type": "configuration"})
            return self._close(result, start)
        result.metadata.update({"label": item.label, "tags": list(item.tags)})

        try:
            resolved = self.build_config(module, item, config)
        except ValidationError as exc:
            result.add_error(f"Invalid configuration: {exc.message}", details={"type": "configuration"})
            return self._close(result, start)
        except ConfigurationError as exc:
            result.add_error(f"Invalid configuration: {exc}", details={"type": "configuration"})
            return self._close(result, start)

        self._emit(item_event(module.descriptor.type, "generate_start"), {"item_id": item.id}, module.name)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            try:
                if module.contract == "full":
                    artifact = module.instance.generate(data, item, resolved)
                else:
                    artifact = module.instance.generate(data, item.id, resolved)
            except Exception as exc:
                artifact = None
                result.add_error(
                    f"Generation failed: {type(exc).__name__}: {exc}",
                    details={"type": "generation", "exception": type(exc).__name__},
                )
        for caught_warning in caught:
            if not issubclass(caught_warning.category, _IGNORED_WARNINGS):
                result.add_warning(str(caught_warning.message), severity="low")
        if result.status == STATUS_FAILED:
            self.logger(f"[ERROR] {result.operation}: {result.errors[-1]}")
            return self._close(result, start)
        if artifact is None:
            result.add_error("Module produced no artifact")
            return self._close(result, start)

        result.data = artifact
        result.set_status(STATUS_SUCCESS, f"Generated {item.label or item.id}")

        if persist is None:
            persist = self.output_dir is not None
        result.metadata["persisted"] = False
        if persist:
            self._persist(module, item, artifact, resolved, result)
        return self._close(result, start)

    def _persist(
        self,
        module: LoadedModule,
        item: ItemSpec,
        artifact: Any,
        config: dict[str, Any],
        result: Result,
    ) -> None:
        if self.output_dir is None:
            result.add_warning("Persistence requested but no output directory is configured")
            result.set_status(STATUS_PARTIAL, "Generated in memory only")
            return
        file_format = str(config.get("file_format") or "png")
        path = self.output_dir / artifact_filename(module.name, item.id, file_format)
        try:
            ensure_dir(path.parent)
            save = getattr(module.instance, "save", None)
            if callable(save):
                save(artifact, path, config)
            elif isinstance(artifact, (bytes, bytearray)):
                atomic_write_bytes(path, bytes(artifact))
            elif isinstance(artifact, str):
                atomic_write_bytes(path, artifact.encode("utf-8"))
            elif callable(getattr(artifact, "savefig", None)):
                artifact.savefig(path, dpi=config.get("dpi"))
            else:
                result.add_warning(
                    f"No way to persist artifact of type {type(artifact).__name__}", severity="high"
                )
                result.set_status(STATUS_PARTIAL, "Generated in memory only")
                return
        except OSError as exc:
            result.add_warning(f"Could not save artifact to {path}: {exc}", severity="high")
            result.set_status(STATUS_PARTIAL, "Generated in memory only")
            self.logger(f"[WARN] {result.operation}: save failed: {exc}")
            return
        result.metadata["persisted"] = True
        result.metadata["output_path"] = str(path)

    def _close(self, result: Result, start: float) -> Result:
        result.quality_score = score_result(result)
        return result.finalize(start)

    def generate_batch(
        self,
        module: LoadedModule,
        data: Any,
        item_ids: Iterable[str] | None = None,
        config: Mapping[str, Any] | None = None,
        continue_on_error: bool = True,
        persist: bool | None = None,
    ) -> dict[str, Result]:
        """Generate every requested item (default: the whole catalog).

        The returned mapping always has one Result per requested id. Under
        `continue_on_error=False` the first unexpected exception propagates.
        A catalog that cannot be built fails every requested id, or a single
        `CATALOG_KEY` entry when the whole catalog was requested.
        """

        requested = None if item_ids is None else list(dict.fromkeys(item_ids))
        try:
            catalog = self.catalog(module)
        except Exception as exc:
            if not continue_on_error:
                raise
            results = {
                item_id: self._catalog_failure(module, item_id, exc)
                for item_id in (requested or [CATALOG_KEY])
            }
            for result in results.values():
                self._announce(module, result)
            return results

        ids = [item.id for item in catalog] if requested is None else requested
        self.logger(f"[RUN] {module.name}: generating {len(ids)} item(s)")
        self._emit(item_event(module.descriptor.type, "batch_start"), {"items": len(ids)}, module.name)
        results = {}
        for item_id in ids:
            try:
                results[item_id] = self._generate(module, data, item_id, config, persist, catalog)
            except Exception as exc:
                if not continue_on_error:
                    raise
                failed = create_result(f"{module.name}:{item_id}")
                failed.metadata.update({"module": module.name, "item_id": item_id})
                failed.add_error(
                    f"Unexpected error: {type(exc).__name__}: {exc}",
                    details={"type": "unexpected", "exception": type(exc).__name__},
                )
                results[item_id] = self._close(failed, start_timer())
                self.logger(f"[ERROR] {failed.operation}: {failed.errors[-1]}")
            self._announce(module, results[item_id])
        ok = sum(1 for res in results.values() if is_success(res))
        self.logger(f"[OK] {module.name}: {ok}/{len(results)} item(s) generated")
        self._emit(
            item_event(module.descriptor.type, "batch_complete"),
            {"generated": ok, "failed": len(results) - ok},
            module.name,
        )
        return results

    # -- whole-type runs ---------------------------------------------------

    def _load(self, module_type: str) -> tuple[dict[str, LoadedModule], dict[str, list[str]]]:
        if module_type not in self._loaded:
            self._loaded[module_type] = self.manager.load_valid(module_type)
        usable, failures = self._loaded[module_type]
        return dict(usable), {name: list(reasons) for name, reasons in failures.items()}

    def run_modules(
        self,
        data: Any,
        module_type: str = "plot",
        config: Mapping[str, Any] | None = None,
        module_settings: Mapping[str, Mapping[str, Any]] | None = None,
        item_ids: Mapping[str, Iterable[str]] | None = None,
        continue_on_error: bool = True,
        names: Iterable[str] | None = None,
    ) -> OrchestrationSummary:
        """Run the batch of every valid module of `module_type`.

        `names` restricts the run to the listed modules.

        Modules run dependencies first. A module whose dependency is unknown or
        did not complete is skipped and reported.
        """

        start = start_timer()
        summary = OrchestrationSummary(module_type=module_type)
        usable, failures = self._load(module_type)
        if names is not None:
            wanted = list(names)
            usable = {k: v for k, v in usable.items() if k in wanted}
            failures = {k: v for k, v in failures.items() if k in wanted}
            for name in wanted:
                if name not in usable and name not in failures:
                    failures[name] = [f"Unknown {module_type} module: {name}"]
        summary.modules_found = len(usable) + len(failures)
        summary.modules_loaded = len(usable)
        summary.modules_failed.update(failures)
        if not usable:
            summary.errors.append(f"No usable {module_type} modules")
            summary.duration = stop_timer(start)
            return summary

        graph = build_dependency_graph({name: mod.descriptor.depends_on for name, mod in usable.items()})
        for name, absent in missing_dependencies(graph).items():
            summary.modules_failed[name] = [f"Unmet dependency: {dep}" for dep in absent]
        try:
            order = topological_order(graph)
        except DependencyCycleError as exc:
            summary.errors.append(str(exc))
            summary.duration = stop_timer(start)
            return summary
        summary.order = order

        completed: set[str] = set()
        for name in order:
            module = usable[name]
            if name in summary.modules_failed:
                continue
            blocked = [dep for dep in module.descriptor.depends_on if dep not in completed]
            if blocked:
                summary.modules_failed[name] = [f"Dependency did not complete: {dep}" for dep in blocked]
                continue
            module_config = dict(config or {})
            module_config.update((module_settings or {}).get(name) or {})
            results = self._run_module(module, data, module_config, item_ids, continue_on_error, summary)
            if results is None:
                continue
            summary.results[name] = results
            if any(is_success(res) for res in results.values()):
                completed.add(name)

        for results in summary.results.values():
            for res in results.values():
                if is_success(res):
                    summary.items_generated += 1
                else:
                    summary.items_failed += 1
        scores = [
            res.quality_score
            for results in summary.results.values()
            for res in results.values()
            if res.quality_score is not None
        ]
        summary.average_quality = round(sum(scores) / len(scores), 2) if scores else None
        if summary.items_generated == 0:
            summary.status = STATUS_FAILED
        elif summary.items_failed or summary.modules_failed:
            summary.status = STATUS_PARTIAL
        else:
            summary.status = STATUS_SUCCESS
        summary.duration = stop_timer(start)
        self.logger(
            f"[OK] {module_type} run: {summary.items_generated} generated, "
            f"{summary.items_failed} failed, status={summary.status}"
        )
        return summary

    def _run_module(
        self,
        module: LoadedModule,
        data: Any,
        config: dict[str, Any],
        item_ids: Mapping[str, Iterable[str]] | None,
        continue_on_error: bool,
        summary: OrchestrationSummary,
    ) -> dict[str, Result] | None:
        """Hooks run as reset (repeat runs only), init, batch, cleanup."""

        instance = module.instance
        key = f"{module.descriptor.type}:{module.name}"
        reset = getattr(instance, "reset", None)
        if key in self._ran and callable(reset):
            try:
                reset()
            except Exception as exc:
                summary.errors.append(f"{module.name}: reset failed: {exc}")
                self.logger(f"[WARN] {module.name}: reset failed: {exc}")
        self._ran.add(key)
        init = getattr(instance, "init", None)
        if callable(init):
            try:
                init(config)
            except Exception as exc:
                summary.modules_failed[module.name] = [f"init failed: {type(exc).__name__}: {exc}"]
                self.logger(f"[ERROR] {module.name}: init failed: {exc}")
                return None
        try:
            requested = (item_ids or {}).get(module.name)
            return self.generate_batch(
                module, data, requested, config, continue_on_error=continue_on_error
            )
        except Exception as exc:
            if not continue_on_error:
                raise
            summary.modules_failed[module.name] = [f"batch failed: {type(exc).__name__}: {exc}"]
            self.logger(f"[ERROR] {module.name}: batch failed: {exc}")
            return None
        finally:
            cleanup = getattr(instance, "cleanup", None)
            if callable(cleanup):
                try:
                    cleanup()
                except Exception as exc:
                    summary.errors.append(f"{module.name}: cleanup failed: {exc}")
                    self.logger(f"[WARN] {module.name}: cleanup failed: {exc}")
