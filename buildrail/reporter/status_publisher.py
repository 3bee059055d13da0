"""
Commit Status Publisher
=======================
Posts a run's status to the code host, attached to the triggering commit.

Supported hosts:
    bitbucket_server → POST {url}/rest/build-status/1.0/commits/{sha}
                       state: INPROGRESS | SUCCESSFUL | FAILED
    github           → POST {url}/repos/{owner}/{repo}/statuses/{sha}
                       state: pending | success | failure

Timed-out runs are reported as failures. Publishing never affects the run:
HTTP problems are logged and ``publish`` returns False.
"""
import logging
from typing import Optional

import httpx

from buildrail.core.config import BUILDRAIL_SERVER_URL, STATUS_PUBLISH_TIMEOUT, resolve_credential
from buildrail.core.constants import STATUS_FAILURE, STATUS_PENDING, STATUS_SUCCESS
from buildrail.models.pipeline import PipelineDefinition, StatusPublisherConfig
from buildrail.models.run import Run

logger = logging.getLogger(__name__)

_BITBUCKET_STATES = {
    STATUS_PENDING: "INPROGRESS",
    STATUS_SUCCESS: "SUCCESSFUL",
    STATUS_FAILURE: "FAILED",
}

_DESCRIPTIONS = {
    "pending": "Build started",
    "running": "Build running",
    "succeeded": "Build succeeded",
    "failed": "Build failed",
    "timed_out": "Build timed out",
}


class StatusPublisher:

    def __init__(
        self,
        config: StatusPublisherConfig,
        server_url: str = BUILDRAIL_SERVER_URL,
        timeout: float = STATUS_PUBLISH_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.server_url = server_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _run_url(self, run: Run) -> str:
        return f"{self.server_url}/runs/{run.id}"

    def _description(self, run: Run) -> str:
        text = _DESCRIPTIONS.get(run.status, run.status)
        if run.problems and run.is_terminal and run.reported_status == STATUS_FAILURE:
            text = f"{text}: {run.problems[-1]}"
        return text[:255]

    def build_request(self, run: Run, pipeline: PipelineDefinition) -> tuple[str, dict, dict]:
        """Return (url, json body, headers) for the configured host."""
        state = run.reported_status
        base = self.config.url.rstrip("/")
        secret = resolve_credential(self.config.password)
        headers = {"Accept": "application/json", "User-Agent": "buildrail"}

        if self.config.type == "github":
            url = f"{base}/repos/{self.config.repository}/statuses/{run.trigger.commit}"
            body = {
                "state": state,
                "target_url": self._run_url(run),
                "description": self._description(run)[:140],
                "context": f"buildrail/{pipeline.id}",
            }
            if secret:
                headers["Authorization"] = f"token {secret}"
            return url, body, headers

        url = f"{base}/rest/build-status/1.0/commits/{run.trigger.commit}"
        body = {
            "state": _BITBUCKET_STATES[state],
            "key": pipeline.id,
            "name": f"{pipeline.display_name} #{run.number}",
            "url": self._run_url(run),
            "description": self._description(run),
        }
        return url, body, headers

    async def publish(self, run: Run, pipeline: PipelineDefinition) -> bool:
        if not run.trigger.commit:
            logger.info("Run %s has no commit; status not published", run.id)
            return False

        url, body, headers = self.build_request(run, pipeline)
        auth = None
        if self.config.type != "github" and self.config.username:
            auth = (self.config.username, resolve_credential(self.config.password) or "")

        try:
            async with httpx.AsyncClient(
                headers=headers, timeout=self.timeout, transport=self._transport,
            ) as client:
                response = await client.post(url, json=body, auth=auth)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("Status publish rejected (HTTP %d) for run %s: %s",
                         e.response.status_code, run.id, e)
            return False
        except httpx.HTTPError as e:
            logger.error("Status publish failed for run %s: %s", run.id, e)
            return False

        logger.info("Published status '%s' for %s@%s", body["state"], pipeline.id, run.trigger.commit[:12])
        return True
