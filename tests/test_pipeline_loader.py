"""
Unit Tests — Pipeline Loader
============================
YAML → immutable BuildConfiguration, including every check the loading
phase performs before anything runs.
"""
import textwrap

import pytest

from buildrail.conditions.predicates import AllOf, Always, Contains, Matches
from buildrail.core.errors import ConfigurationError
from buildrail.parser.pipeline_loader import load_config, load_config_text


def _load(text):
    return load_config_text(textwrap.dedent(text), source="test.yml")


def test_example_configuration_loads():
    import os
    root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    config = load_config(os.path.join(root, "buildrail.yml"))

    pipeline = config.pipeline("build")
    assert pipeline.display_name == "Build, Test, and Deploy"
    assert [s.id for s in pipeline.steps] == ["build_and_test_project", "sonarqube_analysis", "publish_artifacts"]
    assert pipeline.steps[2].condition == Matches("build.branch", "(refs/tags/.*|refs/heads/main)")
    assert pipeline.failure_conditions.execution_timeout_min == 180
    assert pipeline.failure_conditions.metrics[0].check.threshold == 3 * 1024 * 1024
    assert pipeline.requirements == AllOf((Contains("docker.server.osType", "linux"),))
    assert pipeline.artifact_rules[1].destination is None
    assert pipeline.status_publisher.type == "bitbucket_server"

    root = config.vcs_roots["ratings_repo"]
    assert root.use_tags_as_branches is True
    assert not root.reports_branch("refs/pull-requests/7/from")
    assert root.reports_branch("refs/tags/1.0.0")


def test_defaults():
    config = _load("""
        pipelines:
          - id: p
            steps:
              - name: Say hi
                script: echo hi
            triggers:
              - type: vcs
    """)
    pipeline = config.pipeline("p")
    step = pipeline.steps[0]
    assert step.id == "say_hi"
    assert step.runner == "command"
    assert isinstance(step.condition, Always)
    assert pipeline.triggers[0].branch_filter.admits("refs/heads/anything")
    assert pipeline.requirements.evaluate({})


def test_configuration_is_immutable():
    config = _load("""
        pipelines:
          - id: p
            steps: [{name: s, script: "true"}]
    """)
    with pytest.raises(Exception):
        config.pipeline("p").steps[0].script = "rm -rf /"


@pytest.mark.parametrize("body, fragment", [
    ("pipelines: [{id: p, steps: [{name: s, runner: ant, script: x}]}]", "unknown runner"),
    ("pipelines: [{id: p, steps: [{name: s, runner: gradle}]}]", "needs 'tasks'"),
    ("pipelines: [{id: p, vcs_root: nope}]", "unknown vcs_root"),
    ("pipelines: [{id: p}, {id: p}]", "duplicate pipeline"),
    ("pipelines: [{id: p, triggers: [{type: vcs, branch_filter: 'refs/heads/main'}]}]", "Malformed branch filter"),
    ("pipelines: [{id: p, triggers: [{type: upstream, pipeline: ghost}]}]", "unknown pipeline 'ghost'"),
    ("pipelines: [{id: p, failure_conditions: {metrics: [{metric: artifact_size, threshold: 3XB}]}}]", "Unknown unit"),
    ("pipelines: [{id: p, failure_conditions: {execution_timeout_min: -1}}]", "non-negative"),
    ("pipelines: [{id: p, artifact_rules: '-:*.jar => libs'}]", "exclusions take no destination"),
    ("- just a list", "top level must be a mapping"),
    ("pipelines: [{id: p, steps: ['echo hi']}]", "step #1: expected a mapping"),
    ("pipelines: [{id: p, steps: {a: {script: x}}}]", "steps: expected a list"),
    ("pipelines: [{id: p, features: {status_publisher: 'https://x'}}]", "status_publisher: expected a mapping"),
    ("pipelines: [{id: p, features: [docker_registry]}]", "features: expected a mapping"),
    ("vcs_roots: [{id: r, url: 'https://x/r.git', auth: builduser}]", "auth: expected a mapping"),
    ("vcs_roots: repo", "vcs_roots: expected a list"),
    ("pipelines: [{id: p, triggers: [{type: vcs, branch_filter: 42}]}]", "Branch filter must be text"),
    ("pipelines: [{id: p, artifact_rules: 7}]", "Artifact rules must be text"),
    ("pipelines: [{id: p, failure_conditions: '180'}]", "failure_conditions: expected a mapping"),
    ("pipelines: [p]", "pipelines entry: expected a mapping"),
    ("vcs_roots: [{id: r, url: 'https://x/r.git', use_tags_as_branches: 'false'}]", "must be true or false"),
    ("pipelines: [{id: p, steps: [{script: x, allow_failure: 'false'}]}]", "'allow_failure' must be true or false"),
    ("pipelines: [{id: p, triggers: [{type: vcs, successful_only: 'no'}]}]", "'successful_only' must be true or false"),
    ("pipelines: [{id: p, failure_conditions: {metrics: [{metric: artifact_size, threshold: 1MB, "
     "stop_build_on_failure: 'false'}]}}]", "'stop_build_on_failure' must be true or false"),
    ("pipelines: [{id: p, steps: [{name: s, script: x}", "YAML parse error"),
])
def test_rejected(body, fragment):
    with pytest.raises(ConfigurationError) as excinfo:
        load_config_text(body, source="test.yml")
    assert fragment in excinfo.value.message
    assert excinfo.value.message.startswith("test.yml")


def test_upstream_cycle_rejected():
    with pytest.raises(ConfigurationError) as excinfo:
        _load("""
            pipelines:
              - id: a
                triggers: [{type: upstream, pipeline: b}]
              - id: b
                triggers: [{type: upstream, pipeline: a}]
        """)
    assert "cycle" in excinfo.value.message


def test_step_output_reference_must_point_backwards():
    with pytest.raises(ConfigurationError) as excinfo:
        _load("""
            pipelines:
              - id: p
                steps:
                  - {id: use, script: "echo %steps.ver.number%"}
                  - {id: ver, script: "echo", outputs: [number]}
        """)
    assert "%steps.ver.number%" in excinfo.value.message

    config = _load("""
        pipelines:
          - id: p
            steps:
              - {id: ver, script: "echo", outputs: [number]}
              - {id: use, script: "echo %steps.ver.number%"}
    """)
    assert config.pipeline("p").steps[1].id == "use"


def test_missing_file():
    with pytest.raises(ConfigurationError):
        load_config("/nonexistent/buildrail.yml")
