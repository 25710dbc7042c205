from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import yaml

from .artifacts import DEFAULT_ARTIFACT_TYPES, ArtifactRegistry
from .config import HarnessConfig
from .dataset_io import DataSchema, load_and_validate
from .errors import HarnessError
from .events import DATA_LOAD_COMPLETE, DATA_LOAD_START, REPORT_COMPLETE, REPORT_START, EventBus
from .orchestrator import OrchestrationSummary, Orchestrator
from .plugin_manager import ModuleManager
from .release import RELEASE_TYPE, create_release_bundle
from .report import render_report
from .result import (
    STATUS_FAILED,
    STATUS_PARTIAL,
    STATUS_SUCCESS,
    Result,
    create_result,
    is_success,
    start_timer,
)
from .types import LoadedModule
from .utils import Logger, file_logger, make_run_id, write_json


DATA_WEIGHT = 0.4
PLOTS_WEIGHT = 0.6
DATA_QUALITY_THRESHOLD = 90.0


@dataclass
class PipelineSummary:
    run_id: str
    result: Result
    phases: dict[str, Result] = field(default_factory=dict)
    plots_generated: int = 0
    plots_failed: int = 0
    artifacts_registered: int = 0
    report_status: str = "skipped"
    registry_path: str | None = None
    summary_path: str | None = None
    release_path: str | None = None
    event_counts: dict[str, int] = field(default_factory=dict)

    @property
    def status(self) -> str:
        return self.result.status

    @property
    def success_rate(self) -> float:
        total = self.plots_generated + self.plots_failed
        return 100.0 * self.plots_generated / total if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "message": self.result.message,
            "quality_score": self.result.quality_score,
            "duration": self.result.duration,
            "errors": list(self.result.errors),
            "warnings": list(self.result.warnings),
            "plots_generated": self.plots_generated,
            "plots_failed": self.plots_failed,
            "success_rate": round(self.success_rate, 2),
            "artifacts_registered": self.artifacts_registered,
            "report_status": self.report_status,
            "registry_path": self.registry_path,
            "release_path": self.release_path,
            "event_counts": dict(self.event_counts),
            "phases": {name: res.to_dict() for name, res in self.phases.items()},
        }

    def overview(self) -> dict[str, str]:
        data = self.phases.get("data_load")
        plots = self.phases.get("plot_generation")
        data_quality = (data.quality_score or 0) if data else 0
        plot_quality = (plots.quality_score or 0) if plots else 0
        return {
            "Overall Status": self.status.upper(),
            "Data Quality": f"{data_quality:.0f}/100",
            "Plots Generated": f"{self.plots_generated} ({self.success_rate:.1f}% success)",
            "Plot Quality": f"{plot_quality:.0f}/100",
            "Pipeline Quality": f"{self.result.quality_score or 0:.0f}/100",
            "Report": self.report_status,
        }


class _Run:
    """Mutable state for one pipeline run."""

    def __init__(self, config: HarnessConfig, logger: Logger, events: EventBus) -> None:
        self.config = config
        self.logger = logger
        self.events = events
        self.manager = ModuleManager(config.modules_root, logger=logger)
        self.summary = PipelineSummary(run_id=make_run_id(), result=create_result("pipeline"))
        self.allowed_types: list[str] = list(DEFAULT_ARTIFACT_TYPES)
        self.schema = DataSchema()
        self.domain: LoadedModule | None = None
        self.raw_data_name = "raw_data"
        self.plot_type = "results"
        self.cache_type = "results"
        self.registry: ArtifactRegistry | None = None

    @property
    def result(self) -> Result:
        return self.summary.result

    def add_phase(self, name: str, phase: Result) -> Result:
        self.summary.phases[name] = phase.finalize()
        return phase

    # -- phases ------------------------------------------------------------

    def init_domain(self) -> bool:
        if not self.config.domain:
            return True
        phase = create_result("domain_init")
        start = start_timer()
        try:
            module = self.manager.require(self.config.domain, "domain")
            settings = self.manager.resolve_config(
                module.descriptor, self.config.module_settings.get(module.name)
            )
            info = module.instance.init(settings) or {}
        except (HarnessError, FileNotFoundError) as exc:
            phase.add_error(str(exc))
            self.add_phase("domain_init", phase.finalize(start))
            return False
        self.domain = module
        if callable(getattr(module.instance, "artifact_types", None)):
            self.allowed_types = list(module.instance.artifact_types())
        if callable(getattr(module.instance, "data_schema", None)):
            self.schema = DataSchema.from_dict(module.instance.data_schema())
        self.raw_data_name = str(info.get("raw_data_name") or self.raw_data_name)
        for candidate in ("ridgeline_plots", "plot"):
            if candidate in self.allowed_types:
                self.plot_type = candidate
                break
        if "plot_objects" in self.allowed_types:
            self.cache_type = "plot_objects"
        phase.set_status(STATUS_SUCCESS, f"Domain {module.name} initialised")
        self.add_phase("domain_init", phase.finalize(start))
        return True

    def init_registry(self) -> bool:
        phase = create_result("registry_init")
        start = start_timer()
        try:
            self.registry = ArtifactRegistry.init(
                self.config.registry_path, allowed_types=self.allowed_types, logger=self.logger
            )
        except (OSError, ValueError, yaml.YAMLError) as exc:
            phase.add_error(f"Registry unavailable: {type(exc).__name__}: {exc}")
            self.add_phase("registry_init", phase.finalize(start))
            return False
        self.summary.registry_path = str(self.registry.path)
        phase.set_status(STATUS_SUCCESS, f"{len(self.registry.entries)} existing artifact(s)")
        self.add_phase("registry_init", phase.finalize(start))
        return True

    def load_data(self) -> Any | None:
        self.events.emit(DATA_LOAD_START, {"path": str(self.config.data_path)}, source="pipeline")
        if self.config.data_path is None:
            phase = create_result("load_data")
            phase.add_error("No data_path configured")
            self.add_phase("data_load", phase)
            self.events.emit(DATA_LOAD_COMPLETE, {"status": phase.status}, source="pipeline")
            return None
        phase = load_and_validate(self.config.data_path, self.schema)
        if is_success(phase) and self.domain is not None:
            check = getattr(self.domain.instance, "check_ranges", None)
            if callable(check):
                issues = check(phase.data)
                if issues:
                    # Range problems lower the score but never block plotting.
                    phase = _with_warnings(phase, issues)
        self.summary.phases["data_load"] = phase
        self.logger(f"[RUN] data quality {phase.quality_score or 0:.0f}/100 ({phase.status})")
        self.events.emit(
            DATA_LOAD_COMPLETE,
            {"status": phase.status, "rows": phase.metadata.get("rows"), "quality_score": phase.quality_score},
            source="pipeline",
        )
        if not is_success(phase):
            return None
        if self.registry is not None:
            try:
                self.registry.register(
                    self.raw_data_name,
                    "raw_data",
                    "data_load",
                    self.config.data_path,
                    metadata={
                        "rows": phase.metadata.get("rows"),
                        "quality_score": phase.quality_score,
                    },
                    data_hash=phase.metadata.get("data_hash"),
                )
                self.summary.artifacts_registered += 1
            except (HarnessError, OSError) as exc:
                self.result.add_warning(f"Raw data registration failed: {exc}")
        return phase.data

    def generate_plots(self, data: Any) -> OrchestrationSummary | None:
        orchestrator = Orchestrator(
            self.manager,
            output_dir=self.config.output_dir / "plots",
            logger=self.logger,
            events=self.events,
        )
        try:
            names = self.config.plot_modules or sorted(self.manager.discover("plot"))
            run = orchestrator.run_modules(
                data,
                module_type="plot",
                module_settings={name: self.config.settings_for(name) for name in names},
                continue_on_error=self.config.continue_on_error,
                names=self.config.plot_modules,
            )
        except Exception as exc:
            phase = create_result("plot_generation")
            phase.add_error(f"Plot generation aborted: {type(exc).__name__}: {exc}")
            self.add_phase("plot_generation", phase)
            return None

        phase = create_result("plot_generation")
        for name, reasons in sorted(run.modules_failed.items()):
            phase.add_warning(f"{name}: {'; '.join(reasons)}")
        for err in run.errors:
            phase.add_warning(err)
        phase.metadata.update(
            {
                "modules_loaded": run.modules_loaded,
                "plots_generated": run.items_generated,
                "plots_failed": run.items_failed,
                "order": list(run.order),
            }
        )
        phase.quality_score = run.average_quality or 0.0
        if run.items_generated == 0:
            phase.add_error("No plots were generated")
        elif run.items_failed:
            phase.set_status(STATUS_PARTIAL, f"{run.items_failed} plot(s) failed")
        else:
            phase.set_status(STATUS_SUCCESS, f"{run.items_generated} plot(s) generated")
        phase.duration = run.duration
        self.add_phase("plot_generation", phase)
        self.summary.plots_generated = run.items_generated
        self.summary.plots_failed = run.items_failed
        return run

    def register_plots(self, run: OrchestrationSummary) -> list[str]:
        if self.registry is None:
            return []
        names: list[str] = []
        for module_name, results in sorted(run.results.items()):
            for item_id, res in results.items():
                path = res.metadata.get("output_path")
                if not is_success(res) or not path:
                    continue
                name = f"{module_name}_{item_id}"
                try:
                    self.registry.register(
                        name,
                        self.plot_type,
                        "plot_generation",
                        path,
                        inputs=[self.raw_data_name],
                        metadata={
                            "module": module_name,
                            "item_id": item_id,
                            "quality_score": res.quality_score,
                            "duration": res.duration,
                        },
                    )
                except (HarnessError, OSError) as exc:
                    self.logger(f"[WARN] plot registration failed for {name}: {exc}")
                    continue
                names.append(name)
        self.summary.artifacts_registered += len(names)

        stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        cache_path = self.config.output_dir / "results" / f"plot_results_{stamp}.json"
        try:
            self.registry.save_and_register_json(
                run.to_dict(),
                cache_path,
                "plot_results",
                self.cache_type,
                "plot_generation",
                inputs=names,
                metadata={
                    "modules": run.modules_loaded,
                    "plots": run.items_generated,
                    "plots_failed": run.items_failed,
                    "duration": run.duration,
                },
            )
            self.summary.artifacts_registered += 1
        except (HarnessError, OSError) as exc:
            self.result.add_warning(f"Caching plot results failed: {exc}")
        return names

    def render_report(self, plot_names: list[str]) -> None:
        if not self.config.include_report or self.registry is None:
            return
        self.events.emit(REPORT_START, {"required_types": list(self.config.required_types)}, source="pipeline")
        phase = render_report(
            self.registry,
            self.config.output_dir / "report",
            self.config.required_types,
            summary=self.summary.overview(),
        )
        self.summary.phases["report"] = phase
        self.events.emit(REPORT_COMPLETE, {"status": phase.status}, source="pipeline")
        if not is_success(phase):
            blocked = any(err.startswith("Registry validation") for err in phase.errors)
            self.summary.report_status = "blocked" if blocked else "failed"
            self.result.add_warning(f"Report not rendered: {'; '.join(phase.errors)}")
            return
        try:
            self.registry.register(
                "report",
                "report",
                "reporting",
                phase.data["markdown"],
                inputs=[self.raw_data_name, *plot_names],
            )
            self.summary.artifacts_registered += 1
        except (HarnessError, OSError) as exc:
            self.result.add_warning(f"Report registration failed: {exc}")
        self.summary.report_status = "rendered"

    def create_release(self) -> None:
        settings = self.config.release
        if not settings.enabled or self.registry is None:
            return
        phase = create_release_bundle(
            self.registry,
            self.config.output_dir / "releases",
            name=settings.name,
            include_types=settings.include_types,
            study=self.domain.name if self.domain is not None else None,
            register=RELEASE_TYPE in self.allowed_types,
            events=self.events,
            logger=self.logger,
        )
        self.summary.phases["release"] = phase
        if not is_success(phase):
            self.result.add_warning(f"Release not created: {'; '.join(phase.errors)}")
            return
        self.summary.release_path = str(phase.data)
        if phase.metadata.get("registered"):
            self.summary.artifacts_registered += 1

    # -- aggregation -------------------------------------------------------

    def aggregate(self) -> None:
        result = self.result
        data = self.summary.phases.get("data_load")
        plots = self.summary.phases.get("plot_generation")
        data_quality = data.quality_score if data is not None else None
        if result.status == STATUS_FAILED:
            pass
        elif plots is None or self.summary.plots_generated == 0:
            result.add_error("Pipeline failed: no plots generated")
        elif (
            plots.status == STATUS_SUCCESS
            and self.summary.plots_failed == 0
            and (data_quality is None or data_quality >= DATA_QUALITY_THRESHOLD)
        ):
            result.set_status(
                STATUS_SUCCESS, f"Pipeline complete: {self.summary.plots_generated} plots generated"
            )
        else:
            result.set_status(
                STATUS_PARTIAL,
                f"Pipeline partial: {self.summary.plots_generated} plots, "
                f"{self.summary.plots_failed} failed",
            )
        result.add_quality_metrics(
            {
                "data": data_quality,
                "plots": plots.quality_score if plots is not None else None,
            },
            {"data": DATA_WEIGHT, "plots": PLOTS_WEIGHT},
        )


def _with_warnings(phase: Result, issues: list[str]) -> Result:
    """Copy a finalized Result, adding warnings and lowering the score."""

    copy = create_result(phase.operation)
    copy.metadata.update(dict(phase.metadata))
    for err in phase.errors:
        copy.add_error(err)
    for warn in phase.warnings:
        copy.warnings.append(warn)
    if phase.status != STATUS_FAILED:
        copy.set_status(phase.status, phase.message)
    for issue in issues:
        copy.add_warning(issue)
    if phase.quality_score is not None:
        copy.quality_score = phase.quality_score - 5.0 * len(issues)
    copy.data = phase.data
    copy.timestamp = phase.timestamp
    copy.duration = phase.duration
    return copy.finalize()


def run_pipeline(
    config: HarnessConfig, logger: Logger | None = None, events: EventBus | None = None
) -> PipelineSummary:
    """Data load, plot generation, registration, report and release, in that order.

    Never raises: every failure ends up in the returned summary, which is also
    written to `<output_dir>/pipeline_summary.json` when possible. Progress is
    announced on `events` (a private bus when none is given).
    """

    log = logger or file_logger(config.log_path)
    bus = events if events is not None else EventBus(logger=log)
    run = _Run(config, log, bus)
    start = start_timer()
    try:
        log(f"[RUN] pipeline {run.summary.run_id} started")
        bus.pipeline_event("run", "start", run_id=run.summary.run_id)
        if not run.init_domain():
            run.result.add_error("Domain module unavailable")
        elif not run.init_registry():
            run.result.add_error("Artifact registry unavailable")
        else:
            data = run.load_data()
            if data is None:
                run.result.add_error("Data load failed")
            else:
                plots = run.generate_plots(data)
                names = run.register_plots(plots) if plots is not None else []
                run.aggregate()
                run.render_report(names)
                if run.result.status != STATUS_FAILED:
                    run.create_release()
    except Exception as exc:
        run.result.add_error(f"Unexpected pipeline failure: {type(exc).__name__}: {exc}")
        log(f"[ERROR] pipeline: {exc}")
    phase_errors = [
        f"[{name}] {err}" for name, phase in run.summary.phases.items() for err in phase.errors
    ]
    if phase_errors:
        run.result.metadata["phase_errors"] = phase_errors
    if run.result.status == STATUS_FAILED:
        bus.pipeline_event("run", "error", run_id=run.summary.run_id, errors=list(run.result.errors))
    else:
        bus.pipeline_event("run", "complete", run_id=run.summary.run_id, status=run.result.status)
    run.summary.event_counts = bus.statistics()["events_by_type"]
    run.result.finalize(start)

    summary_path = config.output_dir / "pipeline_summary.json"
    try:
        write_json(summary_path, run.summary.to_dict())
        run.summary.summary_path = str(summary_path)
    except OSError as exc:
        log(f"[WARN] could not write pipeline summary: {exc}")
    log(f"[RUN] pipeline {run.summary.run_id} finished: {run.result.summary(include_errors=False)}")
    return run.summary
