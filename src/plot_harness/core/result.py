from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Sequence

from .errors import ResultFrozenError
from .utils import now_iso


STATUS_UNKNOWN = "unknown"
STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"

VALID_STATUSES = (STATUS_UNKNOWN, STATUS_SUCCESS, STATUS_PARTIAL, STATUS_FAILED)

_STATUS_SYMBOLS = {
    STATUS_SUCCESS: "OK",
    STATUS_PARTIAL: "WARN",
    STATUS_FAILED: "FAIL",
    STATUS_UNKNOWN: "?",
}


def _clamp_score(value: float) -> float:
    return float(max(0.0, min(100.0, value)))


@dataclass
class Result:
    """Outcome of one operation.

    Status transitions:
    - `add_error` always forces `failed`.
    - `add_warning` downgrades `success` to `partial`; other states are kept.
    - `set_status` is the only way to declare progress, and it can never move a
      result out of `failed`.

    The object is mutable while the operation runs and frozen by `finalize()`
    before it is handed to a caller.
    """

    operation: str
    status: str = STATUS_UNKNOWN
    message: str = ""
    errors: Sequence[str] = field(default_factory=list)
    warnings: Sequence[str] = field(default_factory=list)
    duration: float | None = None
    timestamp: str = field(default_factory=now_iso)
    metadata: Mapping[str, Any] = field(default_factory=dict)
    data: Any = field(default=None, repr=False)
    _quality_score: float | None = field(default=None, repr=False)
    _frozen: bool = field(default=False, repr=False)

    def __post_init__(self) -> None:
        if self.status not in VALID_STATUSES:
            raise ValueError(
                f"Invalid status '{self.status}'. Must be one of: {', '.join(VALID_STATUSES)}"
            )

    def __setattr__(self, name: str, value: Any) -> None:
        if self.__dict__.get("_frozen", False):
            raise ResultFrozenError(
                f"Result for '{self.operation}' is finalized; cannot set '{name}'"
            )
        object.__setattr__(self, name, value)

    # -- state -------------------------------------------------------------

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def quality_score(self) -> float | None:
        if self.status == STATUS_FAILED:
            return 0.0
        return self._quality_score

    @quality_score.setter
    def quality_score(self, value: float | None) -> None:
        self._check_mutable()
        if value is None:
            self._quality_score = None
            return
        value = float(value)
        self._quality_score = 0.0 if math.isnan(value) else _clamp_score(value)

    def _check_mutable(self) -> None:
        if self._frozen:
            raise ResultFrozenError(
                f"Result for '{self.operation}' is finalized and cannot change"
            )

    # -- transitions -------------------------------------------------------

    def add_error(self, message: str, details: Mapping[str, Any] | None = None) -> "Result":
        self._check_mutable()
        self.errors.append(str(message))
        self.status = STATUS_FAILED
        if details is not None:
            error_details = self.metadata.setdefault("error_details", {})
            error_details[len(self.errors) - 1] = dict(details)
        return self

    def add_warning(self, message: str, severity: str = "medium") -> "Result":
        self._check_mutable()
        self.warnings.append(str(message))
        if self.status == STATUS_SUCCESS:
            self.status = STATUS_PARTIAL
        self.metadata.setdefault("warning_severity", []).append(severity)
        return self

    def set_status(self, status: str, message: str = "") -> "Result":
        self._check_mutable()
        if status not in VALID_STATUSES:
            raise ValueError(
                f"Invalid status '{status}'. Must be one of: {', '.join(VALID_STATUSES)}"
            )
        if self.status == STATUS_FAILED and status != STATUS_FAILED:
            # Failure is sticky; keep a trace of the ignored transition.
            self.metadata.setdefault("ignored_transitions", []).append(
                {"status": status, "message": message}
            )
            return self
        if status == STATUS_SUCCESS and self.warnings:
            status = STATUS_PARTIAL
        self.status = status
        if message:
            self.message = message
        return self

    def add_quality_metrics(
        self,
        values: Mapping[str, float | None],
        weights: Mapping[str, float] | None = None,
    ) -> "Result":
        """Set the score to the weighted sum of `values`.

        Weights are used as given (not normalized). Without weights every
        component gets `1 / len(values)`. Missing or NaN components count as 0.
        """

        self._check_mutable()
        if weights is None:
            if not values:
                raise ValueError("values must be a non-empty mapping")
            share = 1.0 / len(values)
            weights = {key: share for key in values}
        components: dict[str, float] = {}
        total = 0.0
        for key, weight in weights.items():
            raw = values.get(key)
            try:
                value = float(raw) if raw is not None else 0.0
            except (TypeError, ValueError):
                value = 0.0
            if math.isnan(value):
                value = 0.0
            components[key] = value
            total += value * float(weight)
        self.metadata["quality_components"] = components
        self.metadata["quality_weights"] = {k: float(w) for k, w in weights.items()}
        self.quality_score = total
        return self

    def finalize(self, start: float | None = None) -> "Result":
        """Record the duration (if a timer start is given) and freeze."""

        if self._frozen:
            return self
        if start is not None:
            self.duration = stop_timer(start)
        self.errors = tuple(self.errors)
        self.warnings = tuple(self.warnings)
        self.metadata = MappingProxyType(dict(self.metadata))
        self._frozen = True
        return self

    # -- views -------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "status": self.status,
            "message": self.message,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "quality_score": self.quality_score,
            "duration": self.duration,
            "timestamp": self.timestamp,
            "metadata": _plain(self.metadata),
            "issue_count": count_issues(self),
        }

    def summary(self, include_errors: bool = True) -> str:
        issues = count_issues(self)
        text = "[{}] {} ({:.2f} sec, {} issue{})".format(
            _STATUS_SYMBOLS.get(self.status, "?"),
            self.operation,
            self.duration or 0.0,
            issues["total"],
            "" if issues["total"] == 1 else "s",
        )
        if self.quality_score is not None:
            text += f" quality={self.quality_score:.0f}/100"
        if include_errors and self.errors:
            text += "\n" + "\n".join(f"  - {err}" for err in self.errors)
        return text


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def create_result(operation: str) -> Result:
    if not operation:
        raise ValueError("operation is required")
    return Result(operation=str(operation))


def start_timer() -> float:
    return time.perf_counter()


def stop_timer(start: float) -> float:
    return round(time.perf_counter() - start, 3)


def is_success(result: Result | None) -> bool:
    """True when the result carries usable output (success or partial)."""

    if result is None:
        return False
    return result.status in (STATUS_SUCCESS, STATUS_PARTIAL)


def count_issues(result: Result) -> dict[str, int]:
    errors = len(result.errors)
    warnings = len(result.warnings)
    return {"errors": errors, "warnings": warnings, "total": errors + warnings}


def combine_results(results: Iterable[Result], operation: str = "batch_operation") -> Result:
    """Aggregate several results into one: worst status, all issues."""

    items = list(results)
    combined = create_result(operation)
    if not items:
        combined.add_error("No results to combine")
        return combined
    statuses = {item.status for item in items}
    for item in items:
        for err in item.errors:
            combined.add_error(f"[{item.operation}] {err}")
        for warn in item.warnings:
            combined.warnings.append(f"[{item.operation}] {warn}")
    if STATUS_FAILED in statuses:
        combined.status = STATUS_FAILED
    elif STATUS_PARTIAL in statuses or combined.warnings:
        combined.set_status(STATUS_PARTIAL)
    elif statuses == {STATUS_SUCCESS}:
        combined.set_status(STATUS_SUCCESS)
    scores = [item.quality_score for item in items if item.quality_score is not None]
    if scores:
        combined.quality_score = sum(scores) / len(scores)
    combined.data = [item.data for item in items]
    return combined
