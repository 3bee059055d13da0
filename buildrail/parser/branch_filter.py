"""
Branch Filter Parser
====================
Parses ``+:<glob>`` / ``-:<glob>`` lines into a BranchFilter predicate.

Blank lines are ignored. Bare patterns, unknown prefixes and empty globs
are configuration errors; a filter is only useful when its intent is
unambiguous.
"""
from typing import Iterable, Optional, Union

from buildrail.conditions.predicates import ADMIT_ALL, BranchFilter, FilterRule
from buildrail.core.errors import ConfigurationError


def _lines(spec: Union[str, Iterable[str]]) -> list[str]:
    if isinstance(spec, str):
        return spec.splitlines()
    if isinstance(spec, (list, tuple)):
        return [str(line) for line in spec]
    raise ConfigurationError(f"Branch filter must be text or a list of lines, got {spec!r}")


def parse_filter_line(line: str) -> FilterRule:
    """Parse a single ``+:glob`` or ``-:glob`` line."""
    text = line.strip()
    if len(text) < 2 or text[1] != ":" or text[0] not in "+-":
        raise ConfigurationError(f"Malformed branch filter rule {line!r}: expected '+:<glob>' or '-:<glob>'")
    pattern = text[2:].strip()
    if not pattern:
        raise ConfigurationError(f"Malformed branch filter rule {line!r}: empty pattern")
    return FilterRule(include=text[0] == "+", pattern=pattern)


def parse_branch_filter(
    spec: Optional[Union[str, Iterable[str]]],
    param: str = "build.branch",
) -> BranchFilter:
    """
    Build a BranchFilter from a multi-line string or a list of lines.

    An absent or empty spec admits every branch (``+:*``).
    """
    if spec is None:
        return BranchFilter(ADMIT_ALL.rules, param)

    rules = tuple(parse_filter_line(line) for line in _lines(spec) if line.strip())
    if not rules:
        return BranchFilter(ADMIT_ALL.rules, param)
    return BranchFilter(rules=rules, param=param)
