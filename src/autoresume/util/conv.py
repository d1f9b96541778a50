from __future__ import annotations

import math
from typing import Any

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}


def coerce_bool(value: Any, *, default: bool = False) -> bool:
    """Coerce a loosely-typed value into a boolean.

    Settings arrive from hand-edited YAML where values may be strings like
    "false"/"0". Unknown strings fall back to `default` so that
    bool("false") == True never leaks into behaviour.
    """
    if value is None:
        return bool(default)
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, float):
        if math.isnan(value):
            return bool(default)
        return value != 0.0
    if isinstance(value, str):
        s = value.strip().lower()
        if not s:
            return bool(default)
        if s in _TRUE:
            return True
        if s in _FALSE:
            return False
        try:
            return int(s) != 0
        except ValueError:
            return bool(default)
    return bool(value)


def clamp_number(value: Any, default: float, *, min_value: float, max_value: float) -> float:
    if isinstance(value, bool):
        n = float(default)
    else:
        try:
            n = float(value)
        except (TypeError, ValueError):
            n = float(default)
    if math.isnan(n):
        n = float(default)
    if n < min_value:
        n = min_value
    if n > max_value:
        n = max_value
    return n


def clamp_int(value: Any, default: int, *, min_value: int, max_value: int) -> int:
    return int(clamp_number(value, default, min_value=min_value, max_value=max_value))
