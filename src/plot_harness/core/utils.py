from __future__ import annotations

import hashlib
import json
import os
import sys
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import yaml


Logger = Callable[[str], None]

_FLOAT_PRECISION = 10


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def make_run_id() -> str:
    return uuid.uuid4().hex


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def null_logger(msg: str) -> None:
    return None


def file_logger(log_path: Path, echo: bool = False) -> Logger:
    """Return a logger that appends one line per message to `log_path`.

    If the log file cannot be written, the first failure is reported on stderr
    and later messages are only echoed; logging never takes a run down.
    """

    state = {"broken": False}

    def logger(msg: str) -> None:
        if not state["broken"]:
            try:
                log_path.parent.mkdir(parents=True, exist_ok=True)
                with log_path.open("a", encoding="utf-8") as handle:
                    handle.write(f"{now_iso()} {msg}\n")
            except OSError as exc:
                state["broken"] = True
                print(f"[WARN] log file unavailable ({log_path}): {exc}", file=sys.stderr)
        if echo:
            print(msg)

    return logger


def _canonicalize(value: Any) -> Any:
    if isinstance(value, float):
        return round(value, _FLOAT_PRECISION)
    if isinstance(value, dict):
        return {key: _canonicalize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonicalize(item) for item in value]
    if isinstance(value, Path):
        return str(value)
    return value


def json_dumps(data: Any) -> str:
    return json.dumps(
        _canonicalize(data), ensure_ascii=False, indent=2, sort_keys=True
    )


def file_sha256(path: Path, chunk_size: int = 1024 * 1024) -> str:
    hasher = hashlib.sha256()
    with path.open("rb") as handle:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                break
            hasher.update(chunk)
    return hasher.hexdigest()


def read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def read_yaml(path: Path) -> Any:
    return yaml.safe_load(path.read_text(encoding="utf-8"))


def safe_replace(src: Path, dst: Path, attempts: int = 1) -> None:
    """os.replace with a short deterministic backoff between retries."""

    for i in range(attempts):
        try:
            os.replace(src, dst)
            return
        except OSError:
            if i + 1 >= attempts:
                raise
            time.sleep(0.02 * (i + 1))


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Atomically write bytes to `path` (write temp file then os.replace).

    The temp file lives in the destination directory so the replace never
    crosses filesystems.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp.{uuid.uuid4().hex}")
    try:
        with tmp_path.open("wb") as handle:
            handle.write(data)
            handle.flush()
            try:
                os.fsync(handle.fileno())
            except OSError:
                # Some filesystems do not support fsync; the replace stays atomic.
                pass
        safe_replace(tmp_path, path)
    finally:
        try:
            if tmp_path.exists():
                tmp_path.unlink()
        except OSError:
            pass


def atomic_write_text(path: Path, text: str, encoding: str = "utf-8") -> None:
    atomic_write_bytes(path, text.encode(encoding))


def write_json(path: Path, data: Any) -> None:
    atomic_write_text(path, json_dumps(data) + "\n", encoding="utf-8")


def write_yaml(path: Path, data: Any) -> None:
    text = yaml.safe_dump(_canonicalize(data), sort_keys=False, allow_unicode=True)
    atomic_write_text(path, text, encoding="utf-8")


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return default


def get_appdata_dir() -> Path:
    return Path(os.environ.get("PLOT_HARNESS_APPDATA", "appdata"))
