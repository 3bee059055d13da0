"""
Parameter References
====================
Resolves ``%name%`` references in step invocations.

Namespaces:
    %env.NAME%            — environment (process env + agent env + env.* params)
    %system.NAME%         — scheduler-level parameters from configuration
    %steps.<id>.<name>%   — output exported by an earlier step of the same run
    %anything.else%       — run built-ins (build.branch, agent.name, ...) and
                            pipeline / project params

``%%`` is a literal percent sign. A reference that cannot be resolved is a
ConfigurationError listing every missing name at once.
"""
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

from buildrail.core.errors import ConfigurationError

_REF_RE = re.compile(r"%%|%([A-Za-z_][\w.\-]*)%")


def find_references(text: Optional[str]) -> List[str]:
    """Return every referenced name in order of appearance (``%%`` ignored)."""
    if not text:
        return []
    return [m.group(1) for m in _REF_RE.finditer(text) if m.group(1)]


@dataclass
class ParameterContext:
    """
    Lookup table for parameter references of one run.

    ``params`` carries run built-ins and pipeline/project parameters;
    ``step_outputs`` grows as steps export values.
    """
    env: Mapping[str, str] = field(default_factory=dict)
    system: Mapping[str, str] = field(default_factory=dict)
    params: Mapping[str, str] = field(default_factory=dict)
    step_outputs: Dict[str, Dict[str, str]] = field(default_factory=dict)

    def lookup(self, name: str) -> Optional[str]:
        if name.startswith("env."):
            return self.env.get(name[4:])
        if name.startswith("system."):
            return self.system.get(name[7:])
        if name.startswith("steps."):
            _, _, rest = name.partition(".")
            step_id, _, output = rest.rpartition(".")
            return self.step_outputs.get(step_id, {}).get(output)
        value = self.params.get(name)
        return None if value is None else str(value)

    def unresolved(self, texts: Iterable[Optional[str]]) -> List[str]:
        missing: List[str] = []
        for text in texts:
            for name in find_references(text):
                if self.lookup(name) is None and name not in missing:
                    missing.append(name)
        return missing

    def substitute(self, text: Optional[str]) -> str:
        """Replace every reference in ``text``; raise on unresolved names."""
        if not text:
            return text or ""
        missing = self.unresolved([text])
        if missing:
            raise ConfigurationError(
                "Unresolved parameter reference(s): " + ", ".join(f"%{m}%" for m in missing),
                problems=missing,
            )

        def _replace(match: re.Match) -> str:
            if match.group(1) is None:
                return "%"
            return self.lookup(match.group(1)) or ""

        return _REF_RE.sub(_replace, text)

    def as_predicate_context(self) -> Dict[str, str]:
        """Flatten into the mapping predicates evaluate against."""
        flat: Dict[str, str] = {f"system.{k}": v for k, v in self.system.items()}
        flat.update({f"env.{k}": v for k, v in self.env.items()})
        flat.update({k: str(v) for k, v in self.params.items()})
        for step_id, outputs in self.step_outputs.items():
            flat.update({f"steps.{step_id}.{k}": v for k, v in outputs.items()})
        return flat
