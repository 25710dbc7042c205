"""Content-addressed artifact registry.

The registry is a single YAML document keyed by artifact name. Registering a
name that already exists replaces the prior entry, so repeated pipeline runs
never grow the document. Every write is a full read-modify-write-persist of the
file; a single writer process is assumed.
"""

from __future__ import annotations

import hashlib
import re
import warnings
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import pandas as pd

from .errors import ArtifactTypeError
from .utils import Logger, file_sha256, null_logger, now_iso, read_yaml, write_json, write_yaml


REGISTRY_VERSION = "1.0"
PIPELINE_VERSION = "1.0"

DEFAULT_ARTIFACT_TYPES: tuple[str, ...] = (
    "raw_data",
    "checkpoint",
    "processed_data",
    "intermediate",
    "results",
    "report",
    "validation_report",
)


class ArtifactVerificationWarning(UserWarning):
    pass


@dataclass
class ArtifactRecord:
    name: str
    type: str
    workflow: str
    file_path: str
    file_hash: str
    file_size: int
    created_at: str
    pipeline_version: str = PIPELINE_VERSION
    input_artifacts: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    data_hash: str | None = None

    def to_document(self) -> dict[str, Any]:
        doc = {
            "name": self.name,
            "type": self.type,
            "workflow": self.workflow,
            "file_path": self.file_path,
            "file_hash_sha256": self.file_hash,
            "file_size_bytes": self.file_size,
            "created_utc": self.created_at,
            "pipeline_version": self.pipeline_version,
            "input_artifacts": list(self.input_artifacts),
            "metadata": dict(self.metadata),
        }
        if self.data_hash is not None:
            doc["data_hash_sha256"] = self.data_hash
        return doc

    @classmethod
    def from_document(cls, name: str, doc: Mapping[str, Any]) -> "ArtifactRecord":
        inputs = doc.get("input_artifacts") or []
        if isinstance(inputs, str):
            inputs = [inputs]
        return cls(
            name=str(doc.get("name") or name),
            type=str(doc.get("type") or ""),
            workflow=str(doc.get("workflow") or ""),
            file_path=str(doc.get("file_path") or ""),
            file_hash=str(doc.get("file_hash_sha256") or ""),
            file_size=int(doc.get("file_size_bytes") or 0),
            created_at=str(doc.get("created_utc") or ""),
            pipeline_version=str(doc.get("pipeline_version") or PIPELINE_VERSION),
            input_artifacts=[str(item) for item in inputs],
            metadata=dict(doc.get("metadata") or {}),
            data_hash=doc.get("data_hash_sha256"),
        )


@dataclass
class RegistryValidation:
    valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    missing_types: list[str] = field(default_factory=list)
    missing_files: list[str] = field(default_factory=list)
    hash_mismatches: list[str] = field(default_factory=list)
    broken_lineage: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PatternDiscovery:
    valid: bool
    paths: dict[str, Path | None]
    errors: list[str] = field(default_factory=list)


class ArtifactRegistry:
    """Handle on one registry file. Pass it explicitly to every call site."""

    def __init__(
        self,
        path: Path,
        document: dict[str, Any],
        allowed_types: Iterable[str] = DEFAULT_ARTIFACT_TYPES,
        logger: Logger | None = None,
    ) -> None:
        self.path = Path(path)
        self.allowed_types = list(allowed_types)
        self.logger = logger or null_logger
        self.registry_version = str(document.get("registry_version") or REGISTRY_VERSION)
        self.created_at = str(document.get("created_utc") or now_iso())
        self.pipeline_version = str(document.get("pipeline_version") or PIPELINE_VERSION)
        self.last_modified = document.get("last_modified_utc")
        self.entries: dict[str, ArtifactRecord] = {
            str(name): ArtifactRecord.from_document(str(name), doc or {})
            for name, doc in (document.get("artifacts") or {}).items()
        }

    # -- lifecycle ---------------------------------------------------------

    @classmethod
    def init(
        cls,
        path: Path,
        allowed_types: Iterable[str] = DEFAULT_ARTIFACT_TYPES,
        logger: Logger | None = None,
    ) -> "ArtifactRegistry":
        """Load the registry at `path`, or create and persist an empty one.

        An existing file is never overwritten here.
        """

        path = Path(path)
        log = logger or null_logger
        if path.exists():
            document = read_yaml(path) or {}
            if not isinstance(document, dict):
                raise ValueError(f"Registry file is not a mapping: {path}")
            registry = cls(path, document, allowed_types, logger)
            log(f"[OK] loaded artifact registry: {len(registry.entries)} artifacts")
            return registry
        registry = cls(
            path,
            {
                "registry_version": REGISTRY_VERSION,
                "created_utc": now_iso(),
                "pipeline_version": PIPELINE_VERSION,
                "artifacts": {},
            },
            allowed_types,
            logger,
        )
        registry.save()
        log(f"[OK] created artifact registry at {path}")
        return registry

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "registry_version": self.registry_version,
            "created_utc": self.created_at,
            "pipeline_version": self.pipeline_version,
        }
        if self.last_modified:
            doc["last_modified_utc"] = self.last_modified
        doc["artifacts"] = {name: rec.to_document() for name, rec in self.entries.items()}
        return doc

    def save(self) -> None:
        write_yaml(self.path, self.to_document())

    # -- writes ------------------------------------------------------------

    def register(
        self,
        name: str,
        artifact_type: str,
        workflow: str,
        file_path: Path | str,
        inputs: Sequence[str] | None = None,
        metadata: Mapping[str, Any] | None = None,
        data_hash: str | None = None,
    ) -> "ArtifactRegistry":
        """Upsert `name` with a freshly hashed record and persist immediately."""

        if artifact_type not in self.allowed_types:
            raise ArtifactTypeError(artifact_type, self.allowed_types)
        path = Path(file_path)
        if not path.is_file():
            raise FileNotFoundError(f"Artifact file not found: {path}")
        record = ArtifactRecord(
            name=name,
            type=artifact_type,
            workflow=workflow,
            file_path=str(path),
            file_hash=hash_file(path),
            file_size=path.stat().st_size,
            created_at=now_iso(),
            pipeline_version=self.pipeline_version,
            input_artifacts=[str(item) for item in (inputs or [])],
            metadata=dict(metadata or {}),
            data_hash=data_hash,
        )
        previous = self.entries.get(name)
        previous_modified = self.last_modified
        self.entries[name] = record
        self.last_modified = record.created_at
        try:
            self.save()
        except OSError:
            # Keep memory in step with the file on disk.
            if previous is None:
                del self.entries[name]
            else:
                self.entries[name] = previous
            self.last_modified = previous_modified
            raise
        self.logger(
            f"[OK] {'replaced' if previous is not None else 'registered'} artifact {name} ({artifact_type})"
        )
        return self

    def remove(self, names: Iterable[str]) -> list[str]:
        """Drop entries by name and persist; returns the names actually removed."""

        removed = {name: self.entries[name] for name in names if name in self.entries}
        if not removed:
            return []
        previous_modified = self.last_modified
        for name in removed:
            del self.entries[name]
        self.last_modified = now_iso()
        try:
            self.save()
        except OSError:
            self.entries.update(removed)
            self.last_modified = previous_modified
            raise
        self.logger(f"[OK] removed {len(removed)} artifact(s)")
        return list(removed)

    # -- queries -----------------------------------------------------------

    def get(self, name: str) -> ArtifactRecord | None:
        return self.entries.get(name)

    def list(self, artifact_type: str | None = None, workflow: str | None = None) -> pd.DataFrame:
        columns = ["name", "type", "workflow", "created_utc", "file_path", "file_hash"]
        rows = [
            {
                "name": rec.name,
                "type": rec.type,
                "workflow": rec.workflow,
                "created_utc": rec.created_at,
                "file_path": rec.file_path,
                "file_hash": rec.file_hash[:8],
            }
            for rec in self.entries.values()
            if (artifact_type is None or rec.type == artifact_type)
            and (workflow is None or rec.workflow == workflow)
        ]
        return pd.DataFrame(rows, columns=columns)

    def get_latest(self, artifact_type: str) -> ArtifactRecord | None:
        """Newest entry of `artifact_type`; equal timestamps go to the smallest name."""

        matching = sorted(
            (rec for rec in self.entries.values() if rec.type == artifact_type),
            key=lambda rec: rec.name,
        )
        if not matching:
            return None
        return max(matching, key=lambda rec: rec.created_at)

    # -- integrity ---------------------------------------------------------

    def verify_detail(self, name: str) -> str:
        """One of "ok", "missing_entry", "missing_file", "hash_mismatch"."""

        record = self.entries.get(name)
        if record is None:
            return "missing_entry"
        path = Path(record.file_path)
        if not path.is_file():
            return "missing_file"
        if hash_file(path) != record.file_hash:
            return "hash_mismatch"
        return "ok"

    def verify(self, name: str) -> bool:
        outcome = self.verify_detail(name)
        if outcome == "ok":
            return True
        record = self.entries.get(name)
        if outcome == "missing_entry":
            message = f"Artifact not found in registry: {name}"
        elif outcome == "missing_file":
            message = f"Artifact file not found (moved or deleted): {record.file_path}"
        else:
            message = f"Hash mismatch for {name}: content changed since registration"
        self.logger(f"[WARN] {message}")
        warnings.warn(message, ArtifactVerificationWarning, stacklevel=2)
        return False

    def validate(
        self,
        required_types: Iterable[str] = ("raw_data", "results"),
        check_hashes: bool = False,
        verbose: bool = False,
    ) -> RegistryValidation:
        """Composite health check. Never raises.

        Missing required types and missing files are errors; hash mismatches
        and dangling lineage edges are warnings only.
        """

        log = self.logger if verbose else null_logger
        result = RegistryValidation()
        if not self.entries:
            result.valid = False
            result.errors.append("Registry is empty")
            result.missing_types = list(required_types)
            return result
        log(f"[VALIDATE] registry contains {len(self.entries)} artifacts")

        existing_types = {rec.type for rec in self.entries.values()}
        for req_type in required_types:
            if req_type not in existing_types:
                result.missing_types.append(req_type)
                result.errors.append(f"No artifacts of required type: {req_type}")

        for name in sorted(self.entries):
            record = self.entries[name]
            path = Path(record.file_path)
            if not path.is_file():
                result.missing_files.append(name)
                result.errors.append(f"File not found for artifact '{name}': {record.file_path}")
                continue
            if check_hashes and hash_file(path) != record.file_hash:
                result.hash_mismatches.append(name)
                result.warnings.append(f"Hash mismatch for '{name}'")

        for name in sorted(self.entries):
            dangling = [dep for dep in self.entries[name].input_artifacts if dep not in self.entries]
            if dangling:
                result.broken_lineage[name] = dangling
                result.warnings.append(
                    f"Artifact '{name}' references unknown inputs: {', '.join(dangling)}"
                )

        result.valid = not result.errors
        if result.valid:
            log("[VALIDATE] registry validation passed")
        else:
            log(f"[VALIDATE] registry validation failed: {len(result.errors)} errors")
        return result

    # -- helpers -----------------------------------------------------------

    def save_and_register_json(
        self,
        payload: Any,
        file_path: Path,
        name: str,
        artifact_type: str,
        workflow: str,
        inputs: Sequence[str] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> "ArtifactRegistry":
        write_json(Path(file_path), payload)
        return self.register(name, artifact_type, workflow, file_path, inputs, metadata)


def hash_file(path: Path | str) -> str:
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"File not found: {path}")
    return file_sha256(path)


def hash_dataframe(df: pd.DataFrame, sort_by: Sequence[str] | None = None) -> str:
    """Hash the logical content of a frame, independent of its file encoding."""

    if not isinstance(df, pd.DataFrame):
        raise TypeError("Input must be a pandas DataFrame")
    frame = df
    if sort_by:
        frame = frame.sort_values(list(sort_by), kind="mergesort")
    frame = frame.reset_index(drop=True)
    hasher = hashlib.sha256()
    hasher.update("|".join(f"{col}:{dtype}" for col, dtype in frame.dtypes.items()).encode("utf-8"))
    row_hashes = pd.util.hash_pandas_object(frame, index=False).to_numpy()
    hasher.update(row_hashes.tobytes())
    return hasher.hexdigest()


def discover_latest_by_pattern(
    directory: Path, patterns: Mapping[str, str | Sequence[str]]
) -> PatternDiscovery:
    """Per category, the most recently modified file whose name matches.

    Used before a registry entry exists. Categories with no match are errors.
    """

    directory = Path(directory)
    paths: dict[str, Path | None] = {category: None for category in patterns}
    if not directory.is_dir():
        return PatternDiscovery(
            valid=False, paths=paths, errors=[f"Directory not found: {directory}"]
        )
    files = [p for p in directory.iterdir() if p.is_file()]
    errors: list[str] = []
    for category, raw in patterns.items():
        regexes = [re.compile(raw)] if isinstance(raw, str) else [re.compile(p) for p in raw]
        matches = [p for p in files if any(rx.search(p.name) for rx in regexes)]
        if not matches:
            expected = raw if isinstance(raw, str) else " or ".join(raw)
            errors.append(f"No {category} file found. Expected pattern: {expected}")
            continue
        paths[category] = max(matches, key=lambda p: (p.stat().st_mtime, p.name))
    return PatternDiscovery(valid=not errors, paths=paths, errors=errors)
