"""sesknife extension: numeric summaries of buffer columns.

Functions are namespaced under "stats." when the module is loaded:

    stats.count ~b [sep] [column]   number of numeric cells
    stats.sum ~b [sep] [column]     sum of the numeric cells
    stats.mean ~b [sep] [column]    arithmetic mean, "0" for no cells
    stats.max / stats.min           extremes, "" for no cells

Lines are split on ``sep`` (default: whitespace) and ``column`` is 1-based
(default 1). Cells that are not numbers are skipped.
"""

from __future__ import annotations

from typing import Any, List

import numpy as np

from extensions import ExtensionAPI

SES_EXTENSION_NAME = "stats"
SES_EXTENSION_API_VERSION = 1


def _column(interpreter: Any, args: List[Any], rule: str) -> np.ndarray:
    from evaluator import EvaluationError, is_number

    buffer = interpreter.buffer_of(args[0])
    separator = interpreter.text_of(args[1]) if len(args) > 1 else None
    column = 1
    if len(args) > 2:
        text = interpreter.text_of(args[2])
        if not text.isdigit() or int(text) < 1:
            raise EvaluationError(f"{rule} expects a positive column, got '{text}'")
        column = int(text)
    cells = []
    for line in buffer.lines:
        parts = line.split(separator) if separator else line.split()
        if len(parts) >= column and is_number(parts[column - 1]):
            cells.append(float(parts[column - 1]))
    return np.array(cells, dtype=float)


def _format(value: float) -> str:
    from evaluator import format_number

    return format_number(float(value))


def _stats_count(interpreter, args, location) -> int:
    return int(_column(interpreter, args, "stats.count").size)


def _stats_sum(interpreter, args, location) -> str:
    return _format(np.sum(_column(interpreter, args, "stats.sum")))


def _stats_mean(interpreter, args, location) -> str:
    values = _column(interpreter, args, "stats.mean")
    if values.size == 0:
        return "0"
    return _format(np.mean(values))


def _stats_max(interpreter, args, location) -> str:
    values = _column(interpreter, args, "stats.max")
    return _format(np.max(values)) if values.size else ""


def _stats_min(interpreter, args, location) -> str:
    values = _column(interpreter, args, "stats.min")
    return _format(np.min(values)) if values.size else ""


def ses_register(ext: ExtensionAPI) -> None:
    ext.metadata(name="stats", version="0.1.0")
    ext.register_function("stats.count", 1, 3, _stats_count, numeric=True, doc="stats.count ~b [sep] [column] -> INT")
    ext.register_function("stats.sum", 1, 3, _stats_sum, doc="stats.sum ~b [sep] [column] -> number")
    ext.register_function("stats.mean", 1, 3, _stats_mean, doc="stats.mean ~b [sep] [column] -> number")
    ext.register_function("stats.max", 1, 3, _stats_max, doc="stats.max ~b [sep] [column] -> number")
    ext.register_function("stats.min", 1, 3, _stats_min, doc="stats.min ~b [sep] [column] -> number")
