from __future__ import annotations

import os

import pandas as pd
import pytest

from plot_harness.core.artifacts import (
    ArtifactRegistry,
    ArtifactVerificationWarning,
    discover_latest_by_pattern,
    hash_dataframe,
    hash_file,
)
from plot_harness.core.errors import ArtifactTypeError, ConfigurationError
from plot_harness.core.utils import read_yaml, write_yaml


def _file(path, text):
    path.write_text(text, encoding="utf-8")
    return path


def test_init_creates_and_persists_empty_registry(tmp_path):
    path = tmp_path / "registry.yaml"
    registry = ArtifactRegistry.init(path)
    assert registry.entries == {}
    doc = read_yaml(path)
    assert doc["registry_version"] == "1.0"
    assert doc["pipeline_version"] == "1.0"
    assert doc["artifacts"] == {}
    assert doc["created_utc"]


def test_init_loads_existing_without_overwriting(tmp_path):
    path = tmp_path / "registry.yaml"
    data = _file(tmp_path / "raw.csv", "a,b\n1,2\n")
    ArtifactRegistry.init(path).register("raw", "raw_data", "ingest", data)
    before = path.read_bytes()
    again = ArtifactRegistry.init(path)
    assert path.read_bytes() == before
    assert again.get("raw").file_hash == hash_file(data)


def test_init_rejects_non_mapping(tmp_path):
    path = _file(tmp_path / "registry.yaml", "- just\n- a list\n")
    with pytest.raises(ValueError):
        ArtifactRegistry.init(path)


def test_reregistering_a_name_replaces_the_entry(tmp_path):
    path = tmp_path / "registry.yaml"
    x = _file(tmp_path / "x.csv", "mass\n1\n")
    y = _file(tmp_path / "y.csv", "mass\n2\n3\n")
    registry = ArtifactRegistry.init(path)
    registry.register("raw1", "raw_data", "ingest", x)
    registry.register("raw1", "raw_data", "ingest", y)

    reloaded = ArtifactRegistry.init(path)
    assert list(reloaded.entries) == ["raw1"]
    latest = reloaded.get_latest("raw_data")
    assert latest.name == "raw1"
    assert latest.file_hash == hash_file(y)
    assert latest.file_size == y.stat().st_size


def test_failed_write_leaves_memory_matching_disk(tmp_path, monkeypatch):
    path = tmp_path / "registry.yaml"
    x = _file(tmp_path / "x.csv", "mass\n1\n")
    y = _file(tmp_path / "y.csv", "mass\n2\n")
    registry = ArtifactRegistry.init(path)
    registry.register("raw", "raw_data", "ingest", x)
    before = registry.get("raw")
    modified = registry.last_modified

    def boom():
        raise OSError("disk full")

    monkeypatch.setattr(registry, "save", boom)
    with pytest.raises(OSError):
        registry.register("raw", "raw_data", "ingest", y)
    with pytest.raises(OSError):
        registry.register("fresh", "raw_data", "ingest", y)
    assert registry.get("raw") is before
    assert registry.get("fresh") is None
    assert registry.last_modified == modified
    with pytest.raises(OSError):
        registry.remove(["raw"])
    assert registry.get("raw") is before

    monkeypatch.undo()
    assert ArtifactRegistry.init(path).to_document() == registry.to_document()


def test_remove_drops_entries_and_persists(tmp_path):
    path = tmp_path / "registry.yaml"
    registry = ArtifactRegistry.init(path)
    registry.register("a", "raw_data", "ingest", _file(tmp_path / "a.csv", "1\n"))
    registry.register("b", "raw_data", "ingest", _file(tmp_path / "b.csv", "2\n"))
    assert registry.remove(["a", "ghost"]) == ["a"]
    assert registry.remove([]) == []
    assert list(ArtifactRegistry.init(path).entries) == ["b"]


def test_register_rejects_unknown_type_and_missing_file(tmp_path):
    registry = ArtifactRegistry.init(tmp_path / "registry.yaml")
    data = _file(tmp_path / "x.csv", "a\n")
    with pytest.raises(ArtifactTypeError) as excinfo:
        registry.register("x", "spreadsheet", "ingest", data)
    assert isinstance(excinfo.value, ConfigurationError)
    assert "raw_data" in str(excinfo.value)
    with pytest.raises(FileNotFoundError):
        registry.register("x", "raw_data", "ingest", tmp_path / "missing.csv")
    assert registry.entries == {}


def test_record_fields_round_trip_through_file(tmp_path):
    path = tmp_path / "registry.yaml"
    data = _file(tmp_path / "plot.png", "png-bytes")
    registry = ArtifactRegistry.init(path, allowed_types=["raw_data", "ridgeline_plots"])
    registry.register(
        "ridge",
        "ridgeline_plots",
        "plots",
        data,
        inputs=["raw"],
        metadata={"palette": "viridis"},
        data_hash="abc",
    )
    entry = read_yaml(path)["artifacts"]["ridge"]
    assert entry["file_hash_sha256"] == hash_file(data)
    assert entry["file_size_bytes"] == len("png-bytes")
    assert entry["input_artifacts"] == ["raw"]
    assert entry["metadata"] == {"palette": "viridis"}
    assert entry["data_hash_sha256"] == "abc"
    assert isinstance(entry["created_utc"], str)


def test_verify_detects_changes(tmp_path):
    registry = ArtifactRegistry.init(tmp_path / "registry.yaml")
    data = _file(tmp_path / "x.csv", "mass\n1\n")
    registry.register("raw", "raw_data", "ingest", data)
    assert registry.verify("raw") is True
    assert registry.verify_detail("raw") == "ok"

    data.write_text("mass\n999\n", encoding="utf-8")
    with pytest.warns(ArtifactVerificationWarning, match="Hash mismatch"):
        assert registry.verify("raw") is False
    assert registry.verify_detail("raw") == "hash_mismatch"

    data.unlink()
    with pytest.warns(ArtifactVerificationWarning, match="moved or deleted"):
        assert registry.verify("raw") is False
    with pytest.warns(ArtifactVerificationWarning, match="not found in registry"):
        assert registry.verify("nothing") is False


def test_get_latest_by_created_time_with_name_tiebreak(tmp_path):
    path = tmp_path / "registry.yaml"
    doc = {
        "registry_version": "1.0",
        "created_utc": "2024-01-01T00:00:00+00:00",
        "pipeline_version": "1.0",
        "artifacts": {
            "b_new": {"type": "results", "created_utc": "2024-05-02T10:00:00+00:00"},
            "a_new": {"type": "results", "created_utc": "2024-05-02T10:00:00+00:00"},
            "old": {"type": "results", "created_utc": "2024-05-01T10:00:00+00:00"},
            "raw": {"type": "raw_data", "created_utc": "2025-01-01T00:00:00+00:00"},
        },
    }
    write_yaml(path, doc)
    registry = ArtifactRegistry.init(path)
    assert registry.get_latest("results").name == "a_new"
    assert registry.get_latest("raw_data").name == "raw"
    assert registry.get_latest("report") is None


def test_list_filters_and_truncates_hashes(tmp_path):
    registry = ArtifactRegistry.init(tmp_path / "registry.yaml")
    registry.register("raw", "raw_data", "ingest", _file(tmp_path / "a.csv", "a\n"))
    registry.register("res", "results", "plots", _file(tmp_path / "b.json", "{}"))
    frame = registry.list()
    assert list(frame.columns) == ["name", "type", "workflow", "created_utc", "file_path", "file_hash"]
    assert len(frame) == 2
    assert frame["file_hash"].str.len().eq(8).all()
    assert list(registry.list(artifact_type="results")["name"]) == ["res"]
    assert list(registry.list(workflow="ingest")["name"]) == ["raw"]
    assert registry.list(artifact_type="report").empty


def test_validate_empty_registry_is_invalid(tmp_path):
    report = ArtifactRegistry.init(tmp_path / "registry.yaml").validate()
    assert not report.valid
    assert report.errors == ["Registry is empty"]
    assert report.missing_types == ["raw_data", "results"]


def test_validate_reports_types_files_hashes_and_lineage(tmp_path):
    registry = ArtifactRegistry.init(tmp_path / "registry.yaml")
    raw = _file(tmp_path / "raw.csv", "a\n")
    res = _file(tmp_path / "res.json", "{}")
    registry.register("raw", "raw_data", "ingest", raw)
    registry.register("res", "results", "plots", res, inputs=["raw", "ghost"])

    report = registry.validate(check_hashes=True)
    assert report.valid
    assert report.broken_lineage == {"res": ["ghost"]}
    assert len(report.warnings) == 1

    res.write_text('{"changed": true}', encoding="utf-8")
    assert registry.validate().valid
    report = registry.validate(check_hashes=True)
    assert report.valid
    assert report.hash_mismatches == ["res"]

    raw.unlink()
    report = registry.validate(required_types=["raw_data", "results", "report"])
    assert not report.valid
    assert report.missing_types == ["report"]
    assert report.missing_files == ["raw"]
    assert report.to_dict()["valid"] is False


def test_save_and_register_json(tmp_path):
    registry = ArtifactRegistry.init(tmp_path / "registry.yaml")
    target = tmp_path / "out" / "summary.json"
    registry.save_and_register_json({"b": 1, "a": 2}, target, "summary", "results", "plots")
    assert target.read_text(encoding="utf-8").startswith("{\n")
    assert registry.verify("summary")


def test_hash_dataframe_ignores_row_order_when_sorted():
    a = pd.DataFrame({"mass": [1.0, 2.0, 3.0], "year": [2001, 2002, 2003]})
    b = a.iloc[::-1]
    assert hash_dataframe(a) != hash_dataframe(b)
    assert hash_dataframe(a, sort_by=["year"]) == hash_dataframe(b, sort_by=["year"])
    assert hash_dataframe(a) != hash_dataframe(a.astype({"year": "float64"}))
    with pytest.raises(TypeError):
        hash_dataframe([1, 2, 3])


def test_discover_latest_by_pattern(tmp_path):
    old = _file(tmp_path / "dispersal_2023.csv", "a\n")
    new = _file(tmp_path / "dispersal_2024.csv", "a\n")
    _file(tmp_path / "notes.txt", "x")
    os.utime(old, (1_000_000, 1_000_000))
    os.utime(new, (2_000_000, 2_000_000))

    found = discover_latest_by_pattern(
        tmp_path, {"raw_data": r"^dispersal_.*\.csv$", "results": [r"\.json$", r"\.pkl$"]}
    )
    assert not found.valid
    assert found.paths["raw_data"] == new
    assert found.paths["results"] is None
    assert found.errors == ["No results file found. Expected pattern: \\.json$ or \\.pkl$"]

    missing = discover_latest_by_pattern(tmp_path / "nope", {"raw_data": "x"})
    assert not missing.valid
    assert missing.paths == {"raw_data": None}
