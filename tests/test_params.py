"""
Unit Tests — Parameter References
=================================
Resolution of %env.X%, %system.X%, %steps.<id>.<name>% and plain
parameters, the %% escape, and fail-fast on unresolved names.
"""
import pytest

from buildrail.core.errors import ConfigurationError
from buildrail.parser.params import ParameterContext, find_references


@pytest.fixture
def params():
    return ParameterContext(
        env={"JDK_17_0_x64": "/opt/jdk17", "NEXUS_USER": "ci"},
        system={"SONAR_TOKEN": "s3cr3t"},
        params={"build.branch": "refs/heads/main", "agent.name": "linux-1"},
        step_outputs={"version": {"number": "1.4.2"}},
    )


def test_find_references_skips_escape():
    assert find_references("100%% of %env.A% and %b%") == ["env.A", "b"]
    assert find_references("") == []
    assert find_references(None) == []


def test_namespaces_resolve(params):
    assert params.lookup("env.JDK_17_0_x64") == "/opt/jdk17"
    assert params.lookup("system.SONAR_TOKEN") == "s3cr3t"
    assert params.lookup("build.branch") == "refs/heads/main"
    assert params.lookup("steps.version.number") == "1.4.2"
    assert params.lookup("env.NOPE") is None


def test_substitute(params):
    text = "-Pbranch=%build.branch%-%agent.name% -Dsonar.login=%system.SONAR_TOKEN%"
    assert params.substitute(text) == "-Pbranch=refs/heads/main-linux-1 -Dsonar.login=s3cr3t"


def test_double_percent_is_literal(params):
    assert params.substitute("coverage 100%%") == "coverage 100%"


def test_unresolved_references_listed_once(params):
    assert params.unresolved(["%env.A% %env.A%", "%env.B% %env.NEXUS_USER%"]) == ["env.A", "env.B"]


def test_substitute_raises_with_every_missing_name(params):
    with pytest.raises(ConfigurationError) as excinfo:
        params.substitute("%env.A% and %system.B%")
    assert excinfo.value.problems == ["env.A", "system.B"]


def test_predicate_context_is_flat(params):
    flat = params.as_predicate_context()
    assert flat["build.branch"] == "refs/heads/main"
    assert flat["env.NEXUS_USER"] == "ci"
    assert flat["system.SONAR_TOKEN"] == "s3cr3t"
    assert flat["steps.version.number"] == "1.4.2"
