"""
Metric Values
=============
Parses failure-condition thresholds. Sizes accept binary units
(``3MB`` = 3 * 1024 * 1024 bytes), durations accept ``s``/``m``/``h``.
Plain numbers are taken as-is.
"""
import re
from typing import Union

from buildrail.core.errors import ConfigurationError

_SIZE_UNITS = {
    "": 1,
    "B": 1,
    "KB": 1024,
    "MB": 1024 ** 2,
    "GB": 1024 ** 3,
}
_DURATION_UNITS = {"": 1, "S": 1, "M": 60, "H": 3600}

_VALUE_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*([A-Za-z]*)\s*$")


def parse_threshold(raw: Union[str, int, float], metric: str = "") -> float:
    """Convert a threshold literal into the metric's base unit."""
    if isinstance(raw, bool):
        raise ConfigurationError(f"Invalid threshold {raw!r} for {metric or 'metric'}")
    if isinstance(raw, (int, float)):
        return float(raw)

    match = _VALUE_RE.match(str(raw))
    if not match:
        raise ConfigurationError(f"Invalid threshold {raw!r} for {metric or 'metric'}")
    number, unit = float(match.group(1)), match.group(2).upper()

    units = _DURATION_UNITS if metric == "build_duration" else _SIZE_UNITS
    if unit not in units:
        raise ConfigurationError(f"Unknown unit {match.group(2)!r} in threshold {raw!r}")
    return number * units[unit]
