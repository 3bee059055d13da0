"""
Status Publisher Tests
======================
Request shape for Bitbucket Server and GitHub, status mapping (timed-out
is a failure) and failure isolation. HTTP goes through httpx.MockTransport.
"""
import asyncio
import base64
import json

import httpx

from buildrail.models.pipeline import PipelineDefinition, StatusPublisherConfig
from buildrail.models.run import Run, TriggerContext
from buildrail.reporter.status_publisher import StatusPublisher

PIPELINE = PipelineDefinition(id="build", name="Build, Test, and Deploy")


def _run(status="timed_out", commit="abc123"):
    run = Run(pipeline_id="build", number=7, trigger=TriggerContext(commit=commit))
    if status != "pending":
        run.start("agent-1")
    if status in ("succeeded", "failed", "timed_out"):
        run.finish(status, "Run exceeded execution timeout of 180 min" if status == "timed_out" else None)
    return run


def _publisher(config, handler):
    return StatusPublisher(config, server_url="http://ci.local", transport=httpx.MockTransport(handler))


def test_bitbucket_timed_out_reported_as_failed(monkeypatch):
    monkeypatch.setenv("BUILDRAIL_CREDENTIAL_STASHPASSWORD", "hunter2")
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(204)

    config = StatusPublisherConfig(url="https://bitbucket.example.net/", username="builduser",
                                   password="credentials:stashPassword")
    run = _run("timed_out")

    ok = asyncio.run(_publisher(config, handler).publish(run, PIPELINE))

    assert ok is True
    request = seen[0]
    assert str(request.url) == "https://bitbucket.example.net/rest/build-status/1.0/commits/abc123"
    body = json.loads(request.content)
    assert body["state"] == "FAILED"
    assert body["key"] == "build"
    assert body["name"] == "Build, Test, and Deploy #7"
    assert body["url"] == f"http://ci.local/runs/{run.id}"
    assert "timed out" in body["description"]
    expected = base64.b64encode(b"builduser:hunter2").decode()
    assert request.headers["Authorization"] == f"Basic {expected}"


def test_bitbucket_states():
    config = StatusPublisherConfig(url="https://bb")
    publisher = StatusPublisher(config)
    assert publisher.build_request(_run("running"), PIPELINE)[1]["state"] == "INPROGRESS"
    assert publisher.build_request(_run("succeeded"), PIPELINE)[1]["state"] == "SUCCESSFUL"
    assert publisher.build_request(_run("failed"), PIPELINE)[1]["state"] == "FAILED"


def test_github_request(monkeypatch):
    monkeypatch.setenv("BUILDRAIL_CREDENTIAL_GH", "tok")
    config = StatusPublisherConfig(type="github", url="https://api.github.com", repository="o/r",
                                   password="credentials:gh")

    url, body, headers = StatusPublisher(config).build_request(_run("succeeded"), PIPELINE)

    assert url == "https://api.github.com/repos/o/r/statuses/abc123"
    assert body["state"] == "success"
    assert body["context"] == "buildrail/build"
    assert headers["Authorization"] == "token tok"


def test_no_commit_not_published():
    calls = []
    config = StatusPublisherConfig(url="https://bb")

    ok = asyncio.run(_publisher(config, lambda r: calls.append(r) or httpx.Response(204)).publish(
        _run("succeeded", commit=""), PIPELINE))

    assert ok is False
    assert calls == []


def test_http_error_is_logged_not_raised():
    config = StatusPublisherConfig(url="https://bb")

    ok = asyncio.run(_publisher(config, lambda r: httpx.Response(500)).publish(_run("failed"), PIPELINE))

    assert ok is False


def test_connection_error_is_logged_not_raised():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    ok = asyncio.run(_publisher(StatusPublisherConfig(url="https://bb"), handler).publish(_run("failed"), PIPELINE))

    assert ok is False
