"""
Unit Tests — Artifact Rules and Staging
=======================================
Rule parsing, path mapping below the first wildcard, stage-only rules,
exclusions, zip destinations and the published-size total.
"""
import zipfile

import pytest

from buildrail.core.errors import ConfigurationError
from buildrail.models.pipeline import ArtifactRule
from buildrail.parser.artifact_rules import parse_artifact_rule, parse_artifact_rules
from buildrail.reporter.artifacts import STAGED_DIR, ArtifactStager


def _write(path, size=10):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x" * size)
    return path


# ---------------------------------------------------------------------------
# 1. Rule parsing
# ---------------------------------------------------------------------------
class TestArtifactRuleParsing:

    def test_root_destination(self):
        assert parse_artifact_rule("**/build/libs/*.jar => /") == ArtifactRule(
            source="**/build/libs/*.jar", destination="/"
        )

    def test_empty_destination_is_stage_only(self):
        rule = parse_artifact_rule("build/sonar/report-task.txt =>")
        assert rule.destination is None
        assert rule.publishes is False

    def test_no_arrow_means_root(self):
        assert parse_artifact_rule("dist/*.whl").destination == "/"

    def test_exclusion(self):
        rule = parse_artifact_rule("-:**/*-sources.jar")
        assert rule.exclude is True
        assert rule.source == "**/*-sources.jar"

    def test_exclusion_with_destination_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_artifact_rule("-:*.jar => libs")

    def test_empty_source_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_artifact_rule(" => /")

    def test_multi_line_block(self):
        rules = parse_artifact_rules("""
            **/build/libs/*.jar => /
            build/sonar/report-task.txt =>
        """)
        assert [r.source for r in rules] == ["**/build/libs/*.jar", "build/sonar/report-task.txt"]
        assert parse_artifact_rules(None) == []


# ---------------------------------------------------------------------------
# 2. Staging
# ---------------------------------------------------------------------------
class TestArtifactStager:

    def test_jars_to_root_and_report_staged_only(self, tmp_path):
        ws = tmp_path / "ws"
        _write(ws / "build" / "libs" / "app.jar", 100)
        _write(ws / "lib" / "build" / "libs" / "lib.jar", 50)
        _write(ws / "build" / "sonar" / "report-task.txt", 7)
        store = tmp_path / "store"

        manifest = ArtifactStager().stage(
            parse_artifact_rules("**/build/libs/*.jar => /\nbuild/sonar/report-task.txt =>"),
            str(ws), str(store),
        )

        assert manifest.published == ["build/libs/app.jar", "lib/build/libs/lib.jar"]
        assert manifest.staged == ["report-task.txt"]
        assert manifest.total_size == 150
        assert (store / "build" / "libs" / "app.jar").exists()
        assert (store / STAGED_DIR / "report-task.txt").exists()
        assert not (store / "report-task.txt").exists()

    def test_static_prefix_is_stripped(self, tmp_path):
        ws = tmp_path / "ws"
        _write(ws / "build" / "libs" / "a.jar")
        store = tmp_path / "store"

        manifest = ArtifactStager().stage([ArtifactRule(source="build/libs/*.jar", destination="/")], str(ws), str(store))

        assert manifest.published == ["a.jar"]
        assert (store / "a.jar").exists()

    def test_destination_directory(self, tmp_path):
        ws = tmp_path / "ws"
        _write(ws / "out" / "report.html")
        store = tmp_path / "store"

        manifest = ArtifactStager().stage([ArtifactRule(source="out/report.html", destination="reports")], str(ws), str(store))

        assert manifest.published == ["reports/report.html"]

    def test_exclusion_drops_earlier_matches(self, tmp_path):
        ws = tmp_path / "ws"
        _write(ws / "build" / "libs" / "a.jar")
        _write(ws / "build" / "libs" / "a-sources.jar")
        rules = parse_artifact_rules("build/libs/*.jar => /\n-:build/libs/*-sources.jar")

        manifest = ArtifactStager().stage(rules, str(ws), str(tmp_path / "store"))

        assert manifest.published == ["a.jar"]

    def test_zip_destination(self, tmp_path):
        ws = tmp_path / "ws"
        _write(ws / "logs" / "one.log")
        _write(ws / "logs" / "two.log")
        store = tmp_path / "store"

        manifest = ArtifactStager().stage([ArtifactRule(source="logs/*.log", destination="logs.zip")], str(ws), str(store))

        assert manifest.published == ["logs.zip"]
        with zipfile.ZipFile(store / "logs.zip") as zf:
            assert sorted(zf.namelist()) == ["one.log", "two.log"]

    def test_escaping_destination_skipped(self, tmp_path):
        ws = tmp_path / "ws"
        _write(ws / "a.txt")

        manifest = ArtifactStager().stage([ArtifactRule(source="a.txt", destination="../outside")], str(ws), str(tmp_path / "store"))

        assert manifest.published == []
        assert not (tmp_path / "outside").exists()

    def test_no_match_is_not_an_error(self, tmp_path):
        (tmp_path / "ws").mkdir()
        manifest = ArtifactStager().stage(parse_artifact_rules("**/*.jar => /"), str(tmp_path / "ws"), str(tmp_path / "store"))
        assert manifest.published == []
        assert manifest.total_size == 0
