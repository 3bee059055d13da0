"""
Artifact Rule Parser
====================
Parses artifact rule lines:

    <sourceGlob> => <destPath>     copy matches into destPath
    <sourceGlob> => /              copy matches into the store root
    <sourceGlob> =>                stage only, never published
    <sourceGlob>                   same as "=> /"
    -:<sourceGlob>                 drop previously matched files
"""
from typing import Iterable, List, Optional, Union

from buildrail.core.errors import ConfigurationError
from buildrail.models.pipeline import ArtifactRule

_ARROW = "=>"


def parse_artifact_rule(line: str) -> ArtifactRule:
    text = line.strip()
    exclude = False
    if text.startswith("-:"):
        exclude = True
        text = text[2:].strip()
    elif text.startswith("+:"):
        text = text[2:].strip()

    if _ARROW in text:
        source, _, dest = text.partition(_ARROW)
        source = source.strip()
        destination: Optional[str] = dest.strip() or None
    else:
        source, destination = text, "/"

    if not source:
        raise ConfigurationError(f"Malformed artifact rule {line!r}: empty source pattern")
    if exclude and destination not in (None, "/"):
        # `-:` rules only filter, a destination would be ignored
        raise ConfigurationError(f"Malformed artifact rule {line!r}: exclusions take no destination")
    return ArtifactRule(source=source, destination=destination, exclude=exclude)


def parse_artifact_rules(spec: Optional[Union[str, Iterable[str]]]) -> List[ArtifactRule]:
    if not spec:
        return []
    if isinstance(spec, str):
        lines = spec.splitlines()
    elif isinstance(spec, (list, tuple)):
        lines = [str(s) for s in spec]
    else:
        raise ConfigurationError(f"Artifact rules must be text or a list of lines, got {spec!r}")
    return [parse_artifact_rule(line) for line in lines if line.strip()]
