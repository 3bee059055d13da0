"""
Predicates
==========
One condition type evaluated the same way everywhere a yes/no decision is
taken against run parameters:

    - step run-conditions        (Matches, Equals, ...)
    - agent requirements         (Contains, Exists, ...)
    - trigger / VCS branch specs (BranchFilter)
    - metric failure conditions  (MetricBreach)

Every predicate is a frozen dataclass with ``evaluate(context)`` where
``context`` is a flat ``name -> value`` mapping. Missing names never raise;
they simply fail the predicate.
"""
import fnmatch
import math
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Tuple

from buildrail.core.errors import ConfigurationError


class Predicate:
    """Base class: a named, side-effect-free check over a parameter mapping."""

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        raise NotImplementedError

    def describe(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class Always(Predicate):
    """Predicate that always holds; used where no condition is declared."""

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return True

    def describe(self) -> str:
        return "always"


@dataclass(frozen=True)
class Matches(Predicate):
    """Full regular-expression match of a parameter value."""
    param: str
    pattern: str

    def __post_init__(self) -> None:
        try:
            re.compile(self.pattern)
        except re.error as e:
            raise ConfigurationError(f"Invalid regex for '{self.param}': {self.pattern!r} ({e})")

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        value = context.get(self.param)
        if value is None:
            return False
        return re.fullmatch(self.pattern, str(value)) is not None

    def describe(self) -> str:
        return f"{self.param} matches {self.pattern}"


@dataclass(frozen=True)
class Equals(Predicate):
    param: str
    value: str

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        actual = context.get(self.param)
        return actual is not None and str(actual) == self.value

    def describe(self) -> str:
        return f"{self.param} == {self.value}"


@dataclass(frozen=True)
class Contains(Predicate):
    param: str
    value: str

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        actual = context.get(self.param)
        return actual is not None and self.value in str(actual)

    def describe(self) -> str:
        return f"{self.param} contains {self.value}"


@dataclass(frozen=True)
class Exists(Predicate):
    param: str

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return context.get(self.param) not in (None, "")

    def describe(self) -> str:
        return f"{self.param} exists"


@dataclass(frozen=True)
class AllOf(Predicate):
    """Conjunction; an empty AllOf holds."""
    predicates: Tuple[Predicate, ...] = ()

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return all(p.evaluate(context) for p in self.predicates)

    def describe(self) -> str:
        if not self.predicates:
            return "always"
        return " and ".join(p.describe() for p in self.predicates)


# ---------------------------------------------------------------------------
# Branch filters
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class FilterRule:
    include: bool
    pattern: str

    def matches(self, branch: str) -> bool:
        # fnmatchcase lets `*` span `/`, so `+:*` covers refs/heads/main
        return fnmatch.fnmatchcase(branch, self.pattern)

    def __str__(self) -> str:
        return f"{'+' if self.include else '-'}:{self.pattern}"


@dataclass(frozen=True)
class BranchFilter(Predicate):
    """
    Ordered include/exclude glob list.

    The LAST rule whose glob matches decides; a branch no rule matches is
    excluded.
    """
    rules: Tuple[FilterRule, ...] = ()
    param: str = "build.branch"

    def admits(self, branch: Optional[str]) -> bool:
        if branch is None:
            return False
        decision = False
        for rule in self.rules:
            if rule.matches(branch):
                decision = rule.include
        return decision

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        branch = context.get(self.param)
        return self.admits(None if branch is None else str(branch))

    def describe(self) -> str:
        return " ".join(str(r) for r in self.rules) or "(empty filter)"


ADMIT_ALL = BranchFilter(rules=(FilterRule(include=True, pattern="*"),))


# ---------------------------------------------------------------------------
# Metric failure conditions
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class MetricBreach(Predicate):
    """
    Holds when a run metric breaches its threshold.

    Reads ``metric.<name>`` from the context and, when comparing against the
    last successful run, ``baseline.<name>``. Without a baseline the
    condition cannot be evaluated and does not hold.
    """
    metric: str
    comparison: str = "MORE"
    threshold: float = 0.0
    compare_to: str = "value"
    units: str = "default"

    def _delta(self, actual: float, baseline: float) -> float:
        if self.units == "percent":
            if baseline == 0:
                return 0.0 if actual == 0 else math.copysign(math.inf, actual)
            return (actual - baseline) / abs(baseline) * 100.0
        return actual - baseline

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        actual = context.get(f"metric.{self.metric}")
        if actual is None:
            return False
        actual = float(actual)

        if self.compare_to == "value":
            if self.comparison == "MORE":
                return actual > self.threshold
            if self.comparison == "LESS":
                return actual < self.threshold
            return actual != self.threshold

        baseline = context.get(f"baseline.{self.metric}")
        if baseline is None:
            return False
        delta = self._delta(actual, float(baseline))
        if self.comparison == "MORE":
            return delta > self.threshold
        if self.comparison == "LESS":
            return -delta > self.threshold
        return abs(delta) > self.threshold

    def describe(self) -> str:
        unit = "%" if self.units == "percent" else ""
        if self.compare_to == "value":
            return f"{self.metric} {self.comparison} {self.threshold:g}{unit}"
        return f"{self.metric} {self.comparison} last successful by {self.threshold:g}{unit}"
