from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import pandas as pd

from .artifacts import hash_dataframe
from .result import STATUS_SUCCESS, Result, create_result, start_timer


@dataclass(frozen=True)
class DataSchema:
    required_columns: tuple[str, ...] = ()
    numeric_columns: tuple[str, ...] = ()
    non_negative_columns: tuple[str, ...] = ()
    min_rows: int = 1

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "DataSchema":
        payload = payload or {}
        return cls(
            required_columns=tuple(payload.get("required_columns") or ()),
            numeric_columns=tuple(payload.get("numeric_columns") or ()),
            non_negative_columns=tuple(payload.get("non_negative_columns") or ()),
            min_rows=int(payload.get("min_rows", 1)),
        )


def read_table(path: Path, delimiter: str | None = None, encoding: str = "utf-8") -> pd.DataFrame:
    suffix = path.suffix.lower()
    if suffix == ".json":
        return pd.read_json(path, encoding=encoding)
    if delimiter is None:
        delimiter = "\t" if suffix in {".tsv", ".tab"} else ","
    return pd.read_csv(path, sep=delimiter, encoding=encoding)


def load_and_validate(
    path: Path,
    schema: DataSchema | Mapping[str, Any] | None = None,
    delimiter: str | None = None,
    encoding: str = "utf-8",
) -> Result:
    """Read a table and check it against `schema`.

    Never raises for bad input: the returned Result is failed and carries the
    reason. On success `Result.data` holds the DataFrame with numeric columns
    coerced.
    """

    start = start_timer()
    result = create_result("load_data")
    if not isinstance(schema, DataSchema):
        schema = DataSchema.from_dict(schema)
    path = Path(path)
    result.metadata["path"] = str(path)
    if not path.is_file():
        result.add_error(f"Data file not found: {path}")
        return result.finalize(start)
    try:
        df = read_table(path, delimiter=delimiter, encoding=encoding)
    except (OSError, ValueError, UnicodeDecodeError, pd.errors.ParserError) as exc:
        result.add_error(f"Could not parse {path.name}: {type(exc).__name__}: {exc}")
        return result.finalize(start)

    missing = [col for col in schema.required_columns if col not in df.columns]
    if missing:
        result.add_error(f"Missing required columns: {', '.join(missing)}")

    for col in schema.numeric_columns:
        if col not in df.columns:
            continue
        before = int(df[col].isna().sum())
        df[col] = pd.to_numeric(df[col], errors="coerce")
        coerced = int(df[col].isna().sum()) - before
        if coerced:
            result.add_warning(f"Column '{col}': {coerced} non-numeric value(s) set to missing")

    for col in schema.non_negative_columns:
        if col in df.columns and pd.api.types.is_numeric_dtype(df[col]):
            negative = int((df[col] < 0).sum())
            if negative:
                result.add_warning(f"Column '{col}': {negative} negative value(s)")

    if len(df) < schema.min_rows:
        result.add_error(f"Expected at least {schema.min_rows} row(s), found {len(df)}")

    present = [col for col in schema.required_columns if col in df.columns]
    checked = present or list(df.columns)
    if checked and len(df):
        completeness = float(df[checked].notna().to_numpy().mean()) * 100.0
    else:
        completeness = 0.0
    missing_cells = int(df[checked].isna().to_numpy().sum()) if checked else 0
    if missing_cells:
        result.add_warning(f"{missing_cells} missing value(s) in checked columns", severity="low")
    schema_match = (
        100.0 * len(present) / len(schema.required_columns) if schema.required_columns else 100.0
    )

    result.metadata.update(
        {
            "rows": int(len(df)),
            "columns": [str(col) for col in df.columns],
            "data_hash": hash_dataframe(df),
        }
    )
    result.add_quality_metrics(
        {"completeness": completeness, "schema_match": schema_match},
        {"completeness": 0.6, "schema_match": 0.4},
    )
    result.data = df
    result.set_status(STATUS_SUCCESS, f"Loaded {len(df)} rows from {path.name}")
    return result.finalize(start)
