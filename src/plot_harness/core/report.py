from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Iterable, Mapping

from .artifacts import ArtifactRecord, ArtifactRegistry
from .result import STATUS_SUCCESS, Result, create_result, start_timer
from .utils import atomic_write_text, now_iso, write_json


IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".svg", ".pdf"}


def _relative(path: str, base: Path) -> str:
    try:
        return Path(os.path.relpath(path, base)).as_posix()
    except ValueError:
        return Path(path).as_posix()


def _artifact_section(records: list[ArtifactRecord], base: Path) -> list[str]:
    lines: list[str] = []
    for rec in records:
        lines.append(f"### {rec.name}")
        lines.append("")
        lines.append(f"- workflow: `{rec.workflow}`")
        lines.append(f"- created: {rec.created_at}")
        lines.append(f"- sha256: `{rec.file_hash[:12]}`")
        if rec.input_artifacts:
            lines.append(f"- inputs: {', '.join(rec.input_artifacts)}")
        quality = rec.metadata.get("quality_score")
        if quality is not None:
            lines.append(f"- quality: {float(quality):.0f}/100")
        if Path(rec.file_path).suffix.lower() in IMAGE_SUFFIXES:
            lines.append("")
            lines.append(f"![{rec.name}]({_relative(rec.file_path, base)})")
        lines.append("")
    return lines


def build_index(registry: ArtifactRegistry, types: Iterable[str] | None = None) -> dict[str, Any]:
    wanted = set(types) if types is not None else None
    by_type: dict[str, list[dict[str, Any]]] = {}
    for name in sorted(registry.entries):
        rec = registry.entries[name]
        if wanted is not None and rec.type not in wanted:
            continue
        by_type.setdefault(rec.type, []).append(rec.to_document())
    return {
        "generated_utc": now_iso(),
        "registry_path": str(registry.path),
        "pipeline_version": registry.pipeline_version,
        "artifacts": by_type,
    }


def render_report(
    registry: ArtifactRegistry,
    output_dir: Path,
    required_types: Iterable[str],
    title: str = "Plot harness report",
    summary: Mapping[str, Any] | None = None,
) -> Result:
    """Write `report.md` and `report_index.json` from registry entries.

    Nothing is written unless the registry validates for `required_types`.
    The report only references artifacts; it never touches raw data.
    """

    start = start_timer()
    result = create_result("render_report")
    required = list(required_types)
    validation = registry.validate(required_types=required)
    result.metadata["validation"] = validation.to_dict()
    if not validation.valid:
        for err in validation.errors:
            result.add_error(f"Registry validation: {err}")
        return result.finalize(start)
    for warn in validation.warnings:
        result.add_warning(warn, severity="low")

    output_dir = Path(output_dir)
    index = build_index(registry)
    lines = [f"# {title}", "", f"Generated {index['generated_utc']}", ""]
    if summary:
        lines.append("## Summary")
        lines.append("")
        for key, value in summary.items():
            lines.append(f"- {key}: {value}")
        lines.append("")
    for artifact_type in sorted(index["artifacts"]):
        records = [registry.entries[doc["name"]] for doc in index["artifacts"][artifact_type]]
        lines.append(f"## {artifact_type} ({len(records)})")
        lines.append("")
        lines.extend(_artifact_section(records, output_dir))

    markdown_path = output_dir / "report.md"
    index_path = output_dir / "report_index.json"
    try:
        atomic_write_text(markdown_path, "\n".join(lines).rstrip() + "\n")
        write_json(index_path, index)
    except OSError as exc:
        result.add_error(f"Could not write report: {exc}")
        return result.finalize(start)
    result.data = {"markdown": markdown_path, "index": index_path}
    result.metadata["artifact_count"] = sum(len(v) for v in index["artifacts"].values())
    result.quality_score = 100.0 - 5.0 * len(result.warnings)
    result.set_status(STATUS_SUCCESS, f"Report written to {markdown_path}")
    return result.finalize(start)
