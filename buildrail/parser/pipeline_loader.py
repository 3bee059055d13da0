"""
Pipeline Loader
===============
Configuration loading phase: reads the pipeline YAML and produces an
immutable BuildConfiguration.

Document layout:

    version: 1
    system:   {NAME: value}          # %system.NAME%
    params:   {name: value}          # project-wide %name%
    vcs_roots: [...]
    agents:    [...]
    pipelines: [...]

Everything that can be checked without running anything is checked here:
unknown enum values, malformed branch filters and artifact rules, bad
thresholds, dangling VCS root / upstream references, upstream trigger
cycles, duplicate step ids and ``%steps.<id>.<name>%`` references that do
not point at an earlier step declaring that output.

Deterministic:
    Same document → same BuildConfiguration, always.
"""
import logging
import re
from typing import Any, Dict, Iterable, List

import yaml
from pydantic import ValidationError

from buildrail.conditions.predicates import (
    AllOf,
    Always,
    Contains,
    Equals,
    Exists,
    Matches,
    MetricBreach,
    Predicate,
)
from buildrail.core.constants import (
    COMPARE_TO,
    COMPARISONS,
    METRIC_UNITS,
    METRICS,
    RUNNERS,
    STEP_KINDS,
    TRIGGER_KINDS,
    TRIGGER_SCHEDULE,
    TRIGGER_UPSTREAM,
)
from buildrail.core.errors import ConfigurationError
from buildrail.models.agent import AgentSpec
from buildrail.models.configuration import BuildConfiguration
from buildrail.models.pipeline import (
    DockerRegistryConfig,
    FailureConditions,
    MetricCondition,
    PipelineDefinition,
    StatusPublisherConfig,
    Step,
    Trigger,
)
from buildrail.models.vcs_root import VcsAuth, VcsRoot
from buildrail.parser.artifact_rules import parse_artifact_rules
from buildrail.parser.branch_filter import parse_branch_filter
from buildrail.parser.metric_values import parse_threshold
from buildrail.parser.params import find_references

logger = logging.getLogger(__name__)

_PREDICATE_TYPES = {
    "matches": Matches,
    "equals": Equals,
    "contains": Contains,
}


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------
def _require(mapping: Dict[str, Any], key: str, where: str) -> Any:
    value = mapping.get(key)
    if value in (None, ""):
        raise ConfigurationError(f"{where}: missing required key '{key}'")
    return value


def _choice(value: str, allowed: List[str], what: str, where: str) -> str:
    if value not in allowed:
        raise ConfigurationError(f"{where}: unknown {what} '{value}' (expected one of {', '.join(allowed)})")
    return value


def _str_map(raw: Any, where: str) -> Dict[str, str]:
    if raw in (None, ""):
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{where}: expected a mapping")
    return {str(k): "" if v is None else str(v) for k, v in raw.items()}


def _mapping(raw: Any, where: str) -> Dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{where}: expected a mapping, got {raw!r}")
    return raw


def _list(raw: Any, where: str) -> list:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigurationError(f"{where}: expected a list, got {raw!r}")
    return raw


def _flag(raw: Dict[str, Any], key: str, default: bool, where: str) -> bool:
    value = raw.get(key, default)
    if not isinstance(value, bool):
        raise ConfigurationError(f"{where}: '{key}' must be true or false, got {value!r}")
    return value


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------
def parse_predicate(raw: Any, where: str) -> Predicate:
    """
    Parse one condition entry.

        {matches:  {param: build.branch, pattern: "refs/heads/.*"}}
        {equals:   {param: x, value: y}}
        {contains: {param: docker.server.osType, value: linux}}
        {exists: param}
        [ ...entries... ]                       # all must hold
    """
    if raw is None:
        return Always()
    if isinstance(raw, list):
        return AllOf(tuple(parse_predicate(item, where) for item in raw))
    if not isinstance(raw, dict) or len(raw) != 1:
        raise ConfigurationError(f"{where}: a condition must be a single-key mapping, got {raw!r}")

    (kind, body), = raw.items()
    if kind == "exists":
        return Exists(str(body))
    if kind not in _PREDICATE_TYPES:
        raise ConfigurationError(f"{where}: unknown condition '{kind}'")
    if not isinstance(body, dict):
        raise ConfigurationError(f"{where}: '{kind}' needs a mapping with 'param'")

    param = str(_require(body, "param", where))
    if kind == "matches":
        return Matches(param, str(_require(body, "pattern", where)))
    return _PREDICATE_TYPES[kind](param, str(body.get("value", "")))


def _parse_requirements(raw: Any, where: str) -> AllOf:
    predicate = parse_predicate(raw or [], where)
    if isinstance(predicate, AllOf):
        return predicate
    return AllOf((predicate,))


# ---------------------------------------------------------------------------
# VCS roots and agents
# ---------------------------------------------------------------------------
def _parse_vcs_root(raw: Any) -> VcsRoot:
    raw = _mapping(raw, "vcs_roots entry")
    root_id = str(_require(raw, "id", "vcs_roots"))
    where = f"vcs_root '{root_id}'"
    auth = None
    if raw.get("auth"):
        auth_raw = _mapping(raw["auth"], f"{where} auth")
        auth = VcsAuth(username=str(auth_raw.get("username", "")), password=auth_raw.get("password"))
    return VcsRoot(
        id=root_id,
        name=str(raw.get("name", root_id)),
        url=str(_require(raw, "url", where)),
        branch=str(raw.get("branch", "refs/heads/main")),
        branch_spec=parse_branch_filter(raw.get("branch_spec")),
        use_tags_as_branches=_flag(raw, "use_tags_as_branches", False, where),
        auth=auth,
    )


def _parse_agent(raw: Any) -> AgentSpec:
    raw = _mapping(raw, "agents entry")
    name = str(_require(raw, "name", "agents"))
    return AgentSpec(
        name=name,
        attributes=_str_map(raw.get("attributes"), f"agent '{name}'"),
        env=_str_map(raw.get("env"), f"agent '{name}'"),
        workspace_root=raw.get("workspace_root"),
    )


# ---------------------------------------------------------------------------
# Pipeline pieces
# ---------------------------------------------------------------------------
def _parse_step(raw: Any, index: int, where: str) -> Step:
    raw = _mapping(raw, f"{where} step #{index + 1}")
    name = str(raw.get("name") or f"Step {index + 1}")
    step_id = str(raw.get("id") or _slug(name) or f"step{index + 1}")
    step_where = f"{where} step '{step_id}'"

    condition: Predicate = Always()
    if "branch_matches" in raw:
        condition = Matches("build.branch", str(raw["branch_matches"]))
    if raw.get("condition") is not None:
        parsed = parse_predicate(raw["condition"], step_where)
        condition = parsed if isinstance(condition, Always) else AllOf((condition, parsed))

    runner = _choice(str(raw.get("runner", "command")), RUNNERS, "runner", step_where)
    step = Step(
        id=step_id,
        name=name,
        kind=_choice(str(raw.get("kind", "build")), STEP_KINDS, "step kind", step_where),
        runner=runner,
        tasks=str(raw.get("tasks", "")),
        tool_home=str(raw.get("tool_home", "")),
        extra_args=str(raw.get("extra_args", "")),
        script=str(raw.get("script", raw.get("command", ""))),
        working_dir=str(raw.get("working_dir", "")),
        image=raw.get("image"),
        env=_str_map(raw.get("env"), step_where),
        outputs=tuple(str(o) for o in _list(raw.get("outputs"), f"{step_where} outputs")),
        condition=condition,
        allow_failure=_flag(raw, "allow_failure", False, step_where),
    )
    if runner in ("command", "script") and not step.script:
        raise ConfigurationError(f"{step_where}: runner '{runner}' needs 'script'")
    if runner in ("gradle", "maven") and not step.tasks:
        raise ConfigurationError(f"{step_where}: runner '{runner}' needs 'tasks'")
    return step


def _parse_trigger(raw: Any, where: str) -> Trigger:
    raw = _mapping(raw, where)
    kind = _choice(str(raw.get("type", raw.get("kind", "vcs"))), TRIGGER_KINDS, "trigger type", where)
    trigger = Trigger(
        kind=kind,
        branch_filter=parse_branch_filter(raw.get("branch_filter")),
        upstream=raw.get("pipeline") or raw.get("upstream"),
        successful_only=_flag(raw, "successful_only", True, where),
        schedule=raw.get("schedule"),
    )
    if kind == TRIGGER_UPSTREAM and not trigger.upstream:
        raise ConfigurationError(f"{where}: upstream trigger needs 'pipeline'")
    if kind == TRIGGER_SCHEDULE and not trigger.schedule:
        raise ConfigurationError(f"{where}: schedule trigger needs 'schedule'")
    return trigger


def _parse_metric_condition(raw: Any, where: str) -> MetricCondition:
    raw = _mapping(raw, where)
    metric = _choice(str(_require(raw, "metric", where)), METRICS, "metric", where)
    check = MetricBreach(
        metric=metric,
        comparison=_choice(str(raw.get("comparison", "MORE")).upper(), COMPARISONS, "comparison", where),
        threshold=parse_threshold(_require(raw, "threshold", where), metric),
        compare_to=_choice(str(raw.get("compare_to", "value")), COMPARE_TO, "compare_to", where),
        units=_choice(str(raw.get("units", "default")), METRIC_UNITS, "units", where),
    )
    if check.units == "percent" and check.compare_to == "value":
        raise ConfigurationError(f"{where}: percent units only apply to compare_to: last_successful")
    return MetricCondition(check=check, stop_build_on_failure=_flag(raw, "stop_build_on_failure", True, where))


def _parse_failure_conditions(raw: Any, where: str) -> FailureConditions:
    raw = _mapping(raw, f"{where} failure_conditions")
    timeout = raw.get("execution_timeout_min", 0) or 0
    if not isinstance(timeout, int) or isinstance(timeout, bool) or timeout < 0:
        raise ConfigurationError(f"{where}: execution_timeout_min must be a non-negative integer")
    metrics = tuple(
        _parse_metric_condition(m, f"{where} failure condition #{i + 1}")
        for i, m in enumerate(_list(raw.get("metrics"), f"{where} metrics"))
    )
    return FailureConditions(execution_timeout_min=timeout, metrics=metrics)


def _check_step_references(steps: Iterable[Step], where: str) -> None:
    """``%steps.<id>.<name>%`` must name an earlier step that declares the output."""
    declared: Dict[str, tuple] = {}
    for step in steps:
        if step.id in declared:
            raise ConfigurationError(f"{where}: duplicate step id '{step.id}'")
        for text in step.parameterised_fields():
            for ref in find_references(text):
                if not ref.startswith("steps."):
                    continue
                step_id, _, output = ref[len("steps."):].rpartition(".")
                if output not in declared.get(step_id, ()):
                    raise ConfigurationError(
                        f"{where} step '{step.id}': %{ref}% does not name an output of an earlier step"
                    )
        declared[step.id] = step.outputs


def _parse_pipeline(raw: Any) -> PipelineDefinition:
    raw = _mapping(raw, "pipelines entry")
    pipeline_id = str(_require(raw, "id", "pipelines"))
    where = f"pipeline '{pipeline_id}'"

    steps = tuple(_parse_step(s, i, where) for i, s in enumerate(_list(raw.get("steps"), f"{where} steps")))
    _check_step_references(steps, where)

    features = _mapping(raw.get("features"), f"{where} features")
    publisher = None
    if features.get("status_publisher"):
        publisher = StatusPublisherConfig(**_mapping(features["status_publisher"], f"{where} status_publisher"))
    registry = None
    if features.get("docker_registry"):
        registry = DockerRegistryConfig(**_mapping(features["docker_registry"], f"{where} docker_registry"))

    return PipelineDefinition(
        id=pipeline_id,
        name=str(raw.get("name", pipeline_id)),
        vcs_root=raw.get("vcs_root"),
        steps=steps,
        triggers=tuple(
            _parse_trigger(t, f"{where} trigger #{i + 1}")
            for i, t in enumerate(_list(raw.get("triggers"), f"{where} triggers"))
        ),
        failure_conditions=_parse_failure_conditions(raw.get("failure_conditions"), where),
        artifact_rules=tuple(parse_artifact_rules(raw.get("artifact_rules"))),
        requirements=_parse_requirements(raw.get("requirements"), f"{where} requirements"),
        params=_str_map(raw.get("params"), where),
        status_publisher=publisher,
        docker_registry=registry,
    )


def _check_upstream_graph(pipelines: Dict[str, PipelineDefinition]) -> None:
    """Upstream references must exist and must not form a cycle."""
    edges: Dict[str, List[str]] = {}
    for pipeline in pipelines.values():
        for trigger in pipeline.triggers:
            if trigger.kind != TRIGGER_UPSTREAM:
                continue
            if trigger.upstream not in pipelines:
                raise ConfigurationError(
                    f"pipeline '{pipeline.id}': upstream trigger references unknown pipeline '{trigger.upstream}'"
                )
            edges.setdefault(trigger.upstream, []).append(pipeline.id)

    visiting: set = set()
    done: set = set()

    def visit(node: str, path: List[str]) -> None:
        if node in done:
            return
        if node in visiting:
            cycle = path[path.index(node):] + [node]
            raise ConfigurationError("Upstream trigger cycle: " + " -> ".join(cycle))
        visiting.add(node)
        for downstream in edges.get(node, []):
            visit(downstream, path + [node])
        visiting.discard(node)
        done.add(node)

    for node in list(edges):
        visit(node, [])


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------
def parse_config(data: Any, source: str = "<memory>") -> BuildConfiguration:
    """Build a BuildConfiguration from an already-parsed YAML document."""
    if not isinstance(data, dict):
        raise ConfigurationError(f"{source}: top level must be a mapping")

    try:
        vcs_roots = {}
        for raw in _list(data.get("vcs_roots"), "vcs_roots"):
            root = _parse_vcs_root(raw)
            if root.id in vcs_roots:
                raise ConfigurationError(f"duplicate vcs_root id '{root.id}'")
            vcs_roots[root.id] = root

        pipelines: Dict[str, PipelineDefinition] = {}
        for raw in _list(data.get("pipelines"), "pipelines"):
            pipeline = _parse_pipeline(raw)
            if pipeline.id in pipelines:
                raise ConfigurationError(f"duplicate pipeline id '{pipeline.id}'")
            if pipeline.vcs_root and pipeline.vcs_root not in vcs_roots:
                raise ConfigurationError(
                    f"pipeline '{pipeline.id}': unknown vcs_root '{pipeline.vcs_root}'"
                )
            pipelines[pipeline.id] = pipeline
        _check_upstream_graph(pipelines)

        agents = tuple(_parse_agent(raw) for raw in _list(data.get("agents"), "agents"))
        config = BuildConfiguration(
            version=str(data.get("version", "1")),
            source=source,
            system_params=_str_map(data.get("system"), "system"),
            params=_str_map(data.get("params"), "params"),
            vcs_roots=vcs_roots,
            pipelines=pipelines,
            agents=agents,
        )
    except ValidationError as e:
        raise ConfigurationError(f"{source}: invalid configuration: {e}") from e
    except ConfigurationError as e:
        if e.message.startswith(source):
            raise
        raise ConfigurationError(f"{source}: {e.message}", problems=e.problems) from e

    logger.info(
        "Loaded %s | pipelines=%d | vcs_roots=%d | agents=%d",
        source, len(config.pipelines), len(config.vcs_roots), len(config.agents),
    )
    return config


def load_config_text(text: str, source: str = "<memory>") -> BuildConfiguration:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"{source}: YAML parse error: {e}") from e
    return parse_config(data, source)


def load_config(path: str) -> BuildConfiguration:
    """Read and parse a pipeline configuration file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration {path}: {e}") from e
    return load_config_text(text, source=path)
