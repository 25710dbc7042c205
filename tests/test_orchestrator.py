from __future__ import annotations

import json
from datetime import datetime

import pytest

from conftest import FULL_PLOT_SOURCE, MINIMAL_PLOT_SOURCE, write_module
from plot_harness.core.events import EventBus
from plot_harness.core.orchestrator import (
    CATALOG_KEY,
    Orchestrator,
    artifact_filename,
    batch_success_rate,
    score_result,
)
from plot_harness.core.plugin_manager import ModuleManager
from plot_harness.core.result import create_result


EVENT_SOURCE = """
class Plugin:
    def _log(self, event):
        with open(MODULE_PATH.parent / "events.log", "a", encoding="utf-8") as handle:
            handle.write(MODULE_PATH.name + ":" + event + "\\n")

    def init(self, config):
        self._log("init")

    def cleanup(self):
        self._log("cleanup")

    def metadata(self):
        return {}

    def catalog(self):
        return [{"id": "only"}]

    def generate(self, data, item, config):
        self._log("generate")
        return b"x"

    def generate_batch(self, data, items, config):
        return {item.id: self.generate(data, item, config) for item in items}
"""


SAVE_FAILS_SOURCE = FULL_PLOT_SOURCE + """

    def save(self, artifact, path, config):
        raise RuntimeError("disk driver exploded")
"""


def _alpha(modules_root, source=FULL_PLOT_SOURCE):
    write_module(modules_root, "alpha", source)
    manager = ModuleManager(modules_root)
    return manager, manager.require("alpha", "plot")


def _payload(result):
    return json.loads(result.data.decode("utf-8"))


def test_unknown_item_is_a_failed_result(modules_root):
    manager, module = _alpha(modules_root)
    result = Orchestrator(manager).generate_one(module, [1, 2], "nope")
    assert result.status == "failed"
    assert result.quality_score == 0.0
    assert result.data is None
    assert "Item 'nope' not found in module 'alpha'" in result.errors[0]
    assert result.frozen


def test_generate_one_persists_with_dated_name(modules_root, tmp_path):
    manager, module = _alpha(modules_root)
    out = tmp_path / "out"
    result = Orchestrator(manager, output_dir=out).generate_one(module, [1, 2, 3], "one")
    assert result.status == "success"
    assert result.quality_score == 100.0
    assert result.metadata["persisted"] is True
    files = list(out.glob("*_alpha_one.png"))
    assert len(files) == 1
    assert result.metadata["output_path"] == str(files[0])
    assert files[0].read_bytes() == result.data
    assert _payload(result)["rows"] == 3


def test_in_memory_generation_skips_persistence(modules_root):
    manager, module = _alpha(modules_root)
    result = Orchestrator(manager).generate_one(module, [], "one")
    assert result.status == "success"
    assert result.metadata["persisted"] is False


def test_unwritable_output_degrades_to_partial(modules_root, tmp_path):
    manager, module = _alpha(modules_root)
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("occupied", encoding="utf-8")
    result = Orchestrator(manager, output_dir=blocker / "plots").generate_one(module, [], "one")
    assert result.status == "partial"
    assert len(result.warnings) == 1
    assert result.quality_score == 75.0
    assert result.data is not None
    assert result.metadata["persisted"] is False


def test_item_parameters_and_colors_win(modules_root):
    manager, module = _alpha(modules_root)
    orch = Orchestrator(manager)
    caller = {"palette": "magma", "scale": 9.0, "title": "Mass"}

    two = _payload(orch.generate_one(module, [], "two", config=caller))["config"]
    assert two["colors"] == ["#000000", "#ffffff"]
    assert "palette" not in two
    assert two["scale"] == 2.0
    assert two["title"] == "Mass"

    one = _payload(orch.generate_one(module, [], "one", config=caller))["config"]
    assert one["palette"] == "viridis"
    assert one["scale"] == 1.0


def test_caller_colors_drop_item_palette(modules_root):
    manager, module = _alpha(modules_root)
    config = _payload(
        Orchestrator(manager).generate_one(module, [], "one", config={"colors": ["#123456"]})
    )["config"]
    assert config["colors"] == ["#123456"]
    assert "palette" not in config


def test_generation_exception_fails_item(modules_root):
    manager, module = _alpha(modules_root)
    result = Orchestrator(manager).generate_one(module, [], "boom")
    assert result.status == "failed"
    assert result.errors[0].startswith("Generation failed: ValueError")
    assert result.metadata["error_details"][0]["exception"] == "ValueError"


def test_module_warning_makes_item_partial(modules_root):
    manager, module = _alpha(modules_root)
    result = Orchestrator(manager).generate_one(module, [], "noisy")
    assert result.status == "partial"
    assert list(result.warnings) == ["sparse group"]
    assert result.quality_score == 75.0


def test_batch_returns_one_result_per_requested_id(modules_root):
    manager, module = _alpha(modules_root)
    results = Orchestrator(manager).generate_batch(module, [], ["one", "nope", "two", "one"])
    assert list(results) == ["one", "nope", "two"]
    assert results["nope"].status == "failed"
    assert batch_success_rate(results) == pytest.approx(2 / 3)


def test_batch_defaults_to_whole_catalog(modules_root):
    manager, module = _alpha(modules_root)
    results = Orchestrator(manager).generate_batch(module, [])
    assert set(results) == {"one", "two", "boom", "noisy"}
    assert results["boom"].status == "failed"
    assert batch_success_rate(results) == pytest.approx(0.75)


def test_unexpected_save_error_respects_continue_on_error(modules_root, tmp_path):
    manager, module = _alpha(modules_root, SAVE_FAILS_SOURCE)
    orch = Orchestrator(manager, output_dir=tmp_path / "out")
    results = orch.generate_batch(module, [], ["one"], continue_on_error=True)
    assert results["one"].status == "failed"
    assert results["one"].errors[0] == "Unexpected error: RuntimeError: disk driver exploded"
    with pytest.raises(RuntimeError):
        orch.generate_batch(module, [], ["one"], continue_on_error=False)


def test_minimal_module_uses_manifest_items(modules_root):
    write_module(
        modules_root,
        "legacy",
        MINIMAL_PLOT_SOURCE,
        entrypoint="plugin.py",
        items=[{"id": "a", "label": "A"}, {"id": "b"}],
    )
    manager = ModuleManager(modules_root)
    module = manager.require("legacy", "plot")
    assert module.contract == "minimal"
    orch = Orchestrator(manager)
    assert [item.id for item in orch.catalog(module)] == ["a", "b"]
    result = orch.generate_one(module, None, "a")
    assert result.status == "success"
    assert result.data == b"legacy:a"
    assert orch.generate_one(module, None, "c").status == "failed"


def test_invalid_config_is_a_failed_result(modules_root):
    module_dir = write_module(modules_root, "alpha", FULL_PLOT_SOURCE, config_schema="schema.json")
    (module_dir / "schema.json").write_text(
        json.dumps({"type": "object", "properties": {"scale": {"type": "number", "maximum": 5}}}),
        encoding="utf-8",
    )
    manager = ModuleManager(modules_root)
    module = manager.require("alpha", "plot")
    result = Orchestrator(manager).generate_one(module, [], "one", config={"scale": 50})
    # Item params override the caller, so "one" (scale 1.0) is valid.
    assert result.status == "success"
    bad = Orchestrator(manager).generate_one(module, [], "boom", config={"scale": 50})
    assert bad.status == "failed"
    assert bad.errors[0].startswith("Invalid configuration")


def test_score_result_penalties():
    ok = create_result("x").set_status("success")
    assert score_result(ok) == 100.0
    partial = create_result("x").set_status("success").add_warning("a").add_warning("b")
    assert score_result(partial) == 100.0 - 10.0 - 20.0
    assert score_result(create_result("x").add_error("e")) == 0.0


def test_artifact_filename_format():
    when = datetime(2024, 3, 9, 12, 0)
    assert artifact_filename("ridgeline", "compact_01", "png", when) == "20240309_ridgeline_compact_01.png"


def test_run_modules_orders_dependencies_and_calls_hooks(modules_root):
    write_module(modules_root, "alpha", EVENT_SOURCE, depends_on=["zeta"])
    write_module(modules_root, "zeta", EVENT_SOURCE)
    summary = Orchestrator(ModuleManager(modules_root)).run_modules([1])
    assert summary.order == ["zeta", "alpha"]
    assert summary.status == "success"
    assert summary.items_generated == 2
    assert summary.success_rate == 1.0
    assert summary.average_quality == 100.0
    events = (modules_root / "events.log").read_text(encoding="utf-8").split()
    assert events == [
        "zeta:init",
        "zeta:generate",
        "zeta:cleanup",
        "alpha:init",
        "alpha:generate",
        "alpha:cleanup",
    ]


def test_run_modules_reports_cycles(modules_root):
    write_module(modules_root, "a", EVENT_SOURCE, depends_on=["b"])
    write_module(modules_root, "b", EVENT_SOURCE, depends_on=["a"])
    summary = Orchestrator(ModuleManager(modules_root)).run_modules([])
    assert summary.status == "failed"
    assert summary.results == {}
    assert "Circular module dependency" in summary.errors[0]


def test_run_modules_skips_unmet_dependencies(modules_root):
    write_module(modules_root, "a", EVENT_SOURCE, depends_on=["ghost"])
    write_module(modules_root, "b", EVENT_SOURCE, depends_on=["a"])
    write_module(modules_root, "c", EVENT_SOURCE)
    summary = Orchestrator(ModuleManager(modules_root)).run_modules([])
    assert summary.modules_failed["a"] == ["Unmet dependency: ghost"]
    assert summary.modules_failed["b"] == ["Dependency did not complete: a"]
    assert list(summary.results) == ["c"]
    assert summary.status == "partial"


def test_run_modules_names_filter_and_init_failure(modules_root):
    write_module(modules_root, "alpha", FULL_PLOT_SOURCE)
    write_module(
        modules_root,
        "fragile",
        EVENT_SOURCE.replace('self._log("init")', 'raise RuntimeError("no backend")'),
    )
    orch = Orchestrator(ModuleManager(modules_root))

    summary = orch.run_modules([], names=["alpha", "ghost"], item_ids={"alpha": ["one"]})
    assert list(summary.results) == ["alpha"]
    assert list(summary.results["alpha"]) == ["one"]
    assert summary.modules_failed == {"ghost": ["Unknown plot module: ghost"]}
    assert summary.status == "partial"

    summary = orch.run_modules([], names=["fragile"])
    assert summary.modules_failed["fragile"][0].startswith("init failed: RuntimeError")
    assert summary.status == "failed"


def test_run_modules_without_modules_fails(modules_root):
    summary = Orchestrator(ModuleManager(modules_root)).run_modules([])
    assert summary.status == "failed"
    assert summary.errors == ["No usable plot modules"]
    assert summary.to_dict()["success_rate"] == 0.0


BAD_CATALOG_SOURCE = FULL_PLOT_SOURCE.replace(
    '{"id": "boom"}', '{"id": "boom", "params": {"scale": "huge"}}'
)


def test_broken_catalog_becomes_failed_results(modules_root):
    manager, module = _alpha(modules_root, BAD_CATALOG_SOURCE)
    orch = Orchestrator(manager)

    single = orch.generate_one(module, [], "one")
    assert single.status == "failed"
    assert single.errors[0].startswith("Catalog unavailable: ValueError")
    assert single.metadata["error_details"][0]["type"] == "catalog"

    results = orch.generate_batch(module, [], ["one", "two"])
    assert list(results) == ["one", "two"]
    assert all(res.status == "failed" for res in results.values())

    whole = orch.generate_batch(module, [])
    assert list(whole) == [CATALOG_KEY]
    assert whole[CATALOG_KEY].operation == "alpha:catalog"

    with pytest.raises(ValueError):
        orch.generate_batch(module, [], continue_on_error=False)

    summary = orch.run_modules([])
    assert summary.status == "failed"
    assert summary.items_failed == 1


def test_unknown_palette_is_a_failed_result(modules_root):
    manager, module = _alpha(modules_root)
    orch = Orchestrator(manager)
    result = orch.generate_one(module, [], "boom", config={"palette": "no_such_map"})
    assert result.status == "failed"
    assert result.errors[0] == "Invalid configuration: Unknown palette: no_such_map"
    # Explicit colors drop the palette, so nothing is rejected.
    assert orch.generate_one(module, [], "two", config={"palette": "no_such_map"}).status == "success"


RESET_SOURCE = EVENT_SOURCE.replace(
    "    def cleanup(self):",
    '    def reset(self):\n        self._log("reset")\n\n    def cleanup(self):',
)


def test_repeat_runs_reuse_instances_and_call_reset(modules_root):
    write_module(modules_root, "solo", RESET_SOURCE)
    orch = Orchestrator(ModuleManager(modules_root))
    first = orch.run_modules([1])
    second = orch.run_modules([1])
    assert first.status == second.status == "success"
    events = (modules_root / "events.log").read_text(encoding="utf-8").split()
    assert events == [
        "solo:init",
        "solo:generate",
        "solo:cleanup",
        "solo:reset",
        "solo:init",
        "solo:generate",
        "solo:cleanup",
    ]


def test_reset_failure_is_reported_but_run_continues(modules_root):
    write_module(
        modules_root,
        "solo",
        RESET_SOURCE.replace('self._log("reset")', 'raise RuntimeError("stale cache")'),
    )
    orch = Orchestrator(ModuleManager(modules_root))
    orch.run_modules([1])
    summary = orch.run_modules([1])
    assert summary.status == "success"
    assert summary.errors == ["solo: reset failed: stale cache"]


def test_orchestrator_announces_items_on_the_event_bus(modules_root):
    bus = EventBus()
    manager, module = _alpha(modules_root)
    orch = Orchestrator(manager, events=bus)
    orch.generate_batch(module, [], ["one", "boom"])

    generated = bus.events(event_type="plot:generated")
    failed = bus.events(event_type="plot:failed")
    assert [e.data["item_id"] for e in generated] == ["one"]
    assert [e.data["item_id"] for e in failed] == ["boom"]
    assert failed[0].source == "alpha"
    assert failed[0].data["quality_score"] == 0.0
    assert [e.type for e in bus.events()][0] == "plot:batch_start"
    assert bus.events()[-1].data == {"generated": 1, "failed": 1}
    assert len(bus.events(event_type="plot:generate_start")) == 2
