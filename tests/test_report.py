from __future__ import annotations

from plot_harness.core.artifacts import ArtifactRegistry
from plot_harness.core.report import build_index, render_report
from plot_harness.core.utils import read_json


def _registry(tmp_path):
    registry = ArtifactRegistry.init(
        tmp_path / "registry.yaml", allowed_types=["raw_data", "ridgeline_plots", "report"]
    )
    raw = tmp_path / "raw.csv"
    raw.write_text("mass,year\n1,2000\n", encoding="utf-8")
    registry.register("raw", "raw_data", "ingest", raw)
    return registry


def test_report_blocked_until_required_types_exist(tmp_path):
    registry = _registry(tmp_path)
    out = tmp_path / "report"
    result = render_report(registry, out, ["raw_data", "ridgeline_plots"])
    assert result.status == "failed"
    assert result.errors == ["Registry validation: No artifacts of required type: ridgeline_plots"]
    assert not out.exists()


def test_report_references_registered_artifacts(tmp_path):
    registry = _registry(tmp_path)
    plots = tmp_path / "plots"
    plots.mkdir()
    image = plots / "20240101_ridgeline_compact_01.png"
    image.write_bytes(b"\x89PNG fake")
    registry.register(
        "ridgeline_compact_01",
        "ridgeline_plots",
        "plots",
        image,
        inputs=["raw"],
        metadata={"quality_score": 95.0},
    )

    out = tmp_path / "report"
    result = render_report(
        registry, out, ["raw_data", "ridgeline_plots"], title="Dispersal", summary={"plots": 1}
    )
    assert result.status == "success"
    assert result.quality_score == 100.0
    markdown = result.data["markdown"].read_text(encoding="utf-8")
    assert markdown.startswith("# Dispersal\n")
    assert "- plots: 1" in markdown
    assert "## ridgeline_plots (1)" in markdown
    assert "![ridgeline_compact_01](../plots/20240101_ridgeline_compact_01.png)" in markdown
    assert "- quality: 95/100" in markdown
    index = read_json(result.data["index"])
    assert [doc["name"] for doc in index["artifacts"]["ridgeline_plots"]] == ["ridgeline_compact_01"]
    assert result.metadata["artifact_count"] == 2


def test_build_index_filters_types(tmp_path):
    index = build_index(_registry(tmp_path), types=["report"])
    assert index["artifacts"] == {}
    assert index["pipeline_version"] == "1.0"
