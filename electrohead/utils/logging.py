"""
Structured JSONL event logging for the assemblers.

Every event is one JSON object per line in ``<out_dir>/events.jsonl`` with
"ts", "level" and "msg" fields plus free-form structured fields. Values
are sanitised so that NaN/Inf, numpy scalars, arrays and torch tensors
never break serialisation; large arrays (an assembled head matrix, a
right-hand side) are reduced to a shape/dtype/min/max/mean summary.
"""

from __future__ import annotations

import datetime as _dt
import io
import json
import math
import platform
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np
import torch


# --------------------------------------------
# JSON utilities (NaN/Inf safe + compact)
# --------------------------------------------

_FULL_ARRAY_LIMIT = 1024


def _array_summary(arr: np.ndarray, dtype: str) -> Dict[str, Any]:
    out: Dict[str, Any] = {"_type": "array_summary", "shape": list(arr.shape), "dtype": dtype}
    if arr.size and np.issubdtype(arr.dtype, np.number):
        out["min"] = _json_sanitize(float(np.nanmin(arr)))
        out["max"] = _json_sanitize(float(np.nanmax(arr)))
        out["mean"] = _json_sanitize(float(np.nanmean(arr)))
    return out


def _json_sanitize(v: Any) -> Any:
    """
    Convert a value into JSON-safe primitives.

    NaN / ±Inf become "NaN" / "Infinity" / "-Infinity"; numpy scalars become
    Python scalars; arrays and tensors with at most 1024 entries are written
    in full, larger ones as an array summary. Containers recurse; anything
    else json cannot encode is stringified.
    """
    if isinstance(v, (np.floating, np.integer, np.bool_)):
        v = v.item()

    if isinstance(v, float):
        if math.isfinite(v):
            return v
        if math.isnan(v):
            return "NaN"
        return "Infinity" if v > 0 else "-Infinity"

    if isinstance(v, torch.Tensor):
        t = v.detach().cpu()
        if t.numel() <= _FULL_ARRAY_LIMIT:
            return _json_sanitize(t.tolist())
        return _array_summary(t.double().numpy(), str(t.dtype))

    if isinstance(v, np.ndarray):
        if v.size <= _FULL_ARRAY_LIMIT:
            return _json_sanitize(v.tolist())
        return _array_summary(v, str(v.dtype))

    if isinstance(v, dict):
        return {str(k): _json_sanitize(val) for k, val in v.items()}
    if isinstance(v, (list, tuple)):
        return [_json_sanitize(x) for x in v]
    if isinstance(v, (set, frozenset)):
        return sorted((_json_sanitize(x) for x in v), key=repr)

    try:
        json.dumps(v)
        return v
    except (TypeError, ValueError):
        return str(v)


def _json_dump_line(obj: Dict[str, Any]) -> str:
    return json.dumps(_json_sanitize(obj), separators=(",", ":"), ensure_ascii=False)


# --------------------------------------------
# JSONL Logger (append-only, thread-safe)
# --------------------------------------------


class JsonlLogger:
    """
    Append-only JSONL event logger shared by the assemblers.

    Safe to call from the row worker threads. IO failures are dropped: a
    broken log file never interrupts an assembly.
    """

    def __init__(self, out_dir: Path | str):
        self.dir = Path(out_dir)
        self.dir.mkdir(parents=True, exist_ok=True)
        self.path = self.dir / "events.jsonl"
        self._lock = threading.Lock()
        self._stream: Optional[io.TextIOBase] = None
        self._open()

    def __enter__(self) -> "JsonlLogger":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"JsonlLogger(path={str(self.path)!r})"

    # ----- file handling -----
    def _open(self) -> None:
        try:
            self._stream = self.path.open("a", encoding="utf-8")
        except OSError:
            self._stream = None

    def close(self) -> None:
        """Close the stream; a later write reopens it."""
        with self._lock:
            stream, self._stream = self._stream, None
            if stream is None:
                return
            try:
                stream.flush()
                stream.close()
            except OSError:
                pass

    def _emit(self, level: str, msg: str, **fields: Any) -> None:
        rec: Dict[str, Any] = {
            "ts": _dt.datetime.now(_dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "level": level,
            "msg": msg,
        }
        rec.update(fields)
        try:
            line = _json_dump_line(rec)
        except (TypeError, ValueError):
            line = json.dumps({str(k): str(v) for k, v in rec.items()}, ensure_ascii=False)

        with self._lock:
            try:
                if self._stream is None:
                    self._open()
                if self._stream:
                    self._stream.write(line + "\n")
                    self._stream.flush()
            except OSError:
                return

    # ------------- level helpers -------------
    def info(self, msg: str, **fields: Any) -> None:
        self._emit("INFO", msg, **fields)

    def debug(self, msg: str, **fields: Any) -> None:
        self._emit("DEBUG", msg, **fields)

    def warning(self, msg: str, **fields: Any) -> None:
        self._emit("WARN", msg, **fields)

    def error(self, msg: str, **fields: Any) -> None:
        """Log an error; ``exc_info=True`` attaches the current traceback as "trace"."""
        if fields.pop("exc_info", False):
            import traceback

            fields["trace"] = traceback.format_exc()
        self._emit("ERROR", msg, **fields)

    # ------------- assembly helpers -------------
    def phase_start(self, name: str, **fields: Any) -> None:
        self._emit("INFO", "Phase start", phase=name, **fields)

    def phase_end(self, name: str, **fields: Any) -> None:
        self._emit("INFO", "Phase end", phase=name, **fields)

    def operator_fill(self, operator: str, **fields: Any) -> None:
        """One block operator call (S, N, D, D*, Id, partial S/D)."""
        fields.setdefault("type", "operator_fill")
        self._emit("DEBUG", "Operator fill.", operator=operator, **fields)

    def dropped(self, kind: str, index: int, **fields: Any) -> None:
        """A point or dipole left out of a source/coupling matrix."""
        fields.setdefault("type", "dropped")
        self._emit("WARN", f"{kind.capitalize()} dropped.", kind=kind, index=int(index), **fields)

    def matrix_summary(self, name: str, matrix: Any) -> None:
        """
        Summary of an assembled matrix. Objects exposing ``summary()``
        (PackedSymmetricMatrix) provide their own; tensors and arrays are
        reduced by the sanitiser.
        """
        if hasattr(matrix, "summary"):
            payload = matrix.summary()
        else:
            payload = _array_summary(np.asarray(matrix, dtype=float), "float64")
        self._emit("INFO", "Matrix summary.", name=name, summary=payload)


def log_runtime_environment(logger: JsonlLogger) -> None:
    """Interpreter, platform and numerical stack versions."""
    logger.info(
        "Runtime environment.",
        python=sys.version.replace("\n", " "),
        platform=platform.platform(),
        numpy=np.__version__,
        torch=torch.__version__,
        default_dtype=str(torch.get_default_dtype()),
        threads=torch.get_num_threads(),
    )


__all__ = ["JsonlLogger", "log_runtime_environment"]
