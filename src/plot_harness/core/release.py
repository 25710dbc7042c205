"""Release bundles and registry housekeeping.

A release is one zip holding the registered files of a run (raw data, plots,
report), a copy of the registry document and a `manifest.yaml`. The zip is
itself registered as a `release_bundle` artifact whose lineage lists every
bundled entry.
"""

from __future__ import annotations

import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

import yaml

from .artifacts import ArtifactRecord, ArtifactRegistry
from .errors import HarnessError
from .events import RELEASE_CREATED, EventBus
from .result import STATUS_SUCCESS, Result, create_result, start_timer
from .utils import Logger, ensure_dir, now_iso, null_logger


RELEASE_TYPE = "release_bundle"
DEFAULT_INCLUDE_TYPES = ("raw_data", "ridgeline_plots", "report")


def release_name(prefix: str = "release", when: datetime | None = None) -> str:
    stamp = (when or datetime.now(timezone.utc)).strftime("%Y%m%d_%H%M%S")
    return f"{prefix}_{stamp}"


def _archive_path(record: ArtifactRecord, used: set[str]) -> str:
    path = Path(record.file_path)
    candidate = f"{record.type}/{path.name}"
    if candidate in used:
        candidate = f"{record.type}/{record.name}_{path.name}"
    used.add(candidate)
    return candidate


def create_release_bundle(
    registry: ArtifactRegistry,
    output_dir: Path,
    name: str | None = None,
    include_types: Sequence[str] = DEFAULT_INCLUDE_TYPES,
    study: str | None = None,
    register: bool = True,
    events: EventBus | None = None,
    logger: Logger | None = None,
) -> Result:
    """Zip the registered artifacts of `include_types` into `<output_dir>/<name>.zip`.

    Entries whose file is gone are left out with a warning. The returned
    Result carries the zip path in `data`.
    """

    log = logger or null_logger
    start = start_timer()
    result = create_result("release")
    name = name or release_name()
    selected = sorted(
        (rec for rec in registry.entries.values() if rec.type in include_types and rec.type != RELEASE_TYPE),
        key=lambda rec: (rec.type, rec.name),
    )
    bundled: list[tuple[ArtifactRecord, Path, str]] = []
    used: set[str] = set()
    for record in selected:
        path = Path(record.file_path)
        if not path.is_file():
            result.add_warning(f"File missing for {record.name}: {path}")
            continue
        bundled.append((record, path, _archive_path(record, used)))
    if not bundled:
        result.add_error(f"No artifacts to release for types: {', '.join(include_types)}")
        return result.finalize(start)

    manifest: dict[str, Any] = {
        "release_name": name,
        "created_utc": now_iso(),
        "pipeline_version": registry.pipeline_version,
        "study": study,
        "includes": sorted({record.type for record, _, _ in bundled}),
        "file_count": len(bundled),
        "artifacts": [
            {
                "name": record.name,
                "type": record.type,
                "archive_path": arcname,
                "file_hash_sha256": record.file_hash,
            }
            for record, _, arcname in bundled
        ],
    }

    output_dir = Path(output_dir)
    zip_path = output_dir / f"{name}.zip"
    try:
        ensure_dir(output_dir)
        with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for _, path, arcname in bundled:
                zf.write(path, arcname)
            if registry.path.is_file():
                zf.write(registry.path, f"registry/{registry.path.name}")
            zf.writestr("manifest.yaml", yaml.safe_dump(manifest, sort_keys=False))
    except OSError as exc:
        result.add_error(f"Could not write release bundle: {exc}")
        return result.finalize(start)

    result.data = zip_path
    result.metadata.update(
        {"release_name": name, "file_count": len(bundled), "artifacts": [r.name for r, _, _ in bundled]}
    )
    if register:
        if RELEASE_TYPE not in registry.allowed_types:
            result.add_warning(f"Artifact type '{RELEASE_TYPE}' is not allowed; bundle not registered")
        else:
            try:
                registry.register(
                    name,
                    RELEASE_TYPE,
                    "release",
                    zip_path,
                    inputs=[record.name for record, _, _ in bundled],
                    metadata={"file_count": len(bundled), "study": study},
                )
                result.metadata["registered"] = True
            except (HarnessError, OSError) as exc:
                result.add_warning(f"Release registration failed: {exc}")
    log(f"[OK] release {name}: {len(bundled)} file(s) -> {zip_path}")
    if events is not None:
        events.emit(RELEASE_CREATED, {"name": name, "path": str(zip_path), "files": len(bundled)}, source="release")
    result.quality_score = 100.0 - 5.0 * len(result.warnings)
    result.set_status(STATUS_SUCCESS, f"Release written to {zip_path}")
    return result.finalize(start)


@dataclass
class CleanupReport:
    artifact_type: str
    dry_run: bool
    kept: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    freed_bytes: int = 0
    errors: list[str] = field(default_factory=list)


def cleanup_old_artifacts(
    registry: ArtifactRegistry,
    artifact_type: str,
    keep: int,
    dry_run: bool = False,
    logger: Logger | None = None,
) -> CleanupReport:
    """Keep the `keep` newest entries of `artifact_type`; delete the rest.

    Older entries lose both their file and their registry entry. An entry
    whose file cannot be deleted stays registered and is reported.
    """

    if keep < 0:
        raise ValueError("keep must be >= 0")
    log = logger or null_logger
    report = CleanupReport(artifact_type=artifact_type, dry_run=dry_run)
    matching = sorted(
        (rec for rec in registry.entries.values() if rec.type == artifact_type),
        key=lambda rec: rec.name,
    )
    # Newest first; equal timestamps keep name order.
    matching.sort(key=lambda rec: rec.created_at, reverse=True)
    report.kept = [rec.name for rec in matching[:keep]]
    for record in matching[keep:]:
        path = Path(record.file_path)
        size = path.stat().st_size if path.is_file() else 0
        if not dry_run:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                report.errors.append(f"{record.name}: {exc}")
                continue
        report.deleted.append(record.name)
        report.freed_bytes += size
    if report.deleted and not dry_run:
        registry.remove(report.deleted)
    verb = "would delete" if dry_run else "deleted"
    log(f"[OK] cleanup {artifact_type}: {verb} {len(report.deleted)}, kept {len(report.kept)}")
    return report
