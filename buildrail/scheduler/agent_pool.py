"""
Agent Pool
==========
Tracks execution agents and hands them out one run at a time.

Claiming is atomic: the busy map is only read and written under a lock, so
two runs can never hold the same agent. Runs waiting for a busy agent poll
with a short sleep instead of blocking the event loop.
"""
import asyncio
import logging
import platform
import socket
import threading
from typing import Dict, Iterable, List, Optional

from buildrail.conditions.predicates import AllOf
from buildrail.core.errors import NoCompatibleAgentError
from buildrail.models.agent import AgentSpec

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1   # seconds between claim attempts while all agents are busy


def default_agent() -> AgentSpec:
    """Single local agent used when the configuration declares none."""
    return AgentSpec(
        name=socket.gethostname() or "local",
        attributes={"os.name": platform.system().lower()},
    )


class AgentPool:

    def __init__(self, agents: Iterable[AgentSpec] = ()) -> None:
        agents = list(agents) or [default_agent()]
        self._agents: Dict[str, AgentSpec] = {a.name: a for a in agents}
        self._busy: Dict[str, str] = {}   # agent name → run id
        self._lock = threading.Lock()

    @property
    def agents(self) -> List[AgentSpec]:
        return list(self._agents.values())

    def compatible(self, requirements: AllOf) -> List[AgentSpec]:
        return [a for a in self._agents.values() if requirements.evaluate(a.requirement_context())]

    def ensure_compatible(self, pipeline_id: str, requirements: AllOf) -> List[AgentSpec]:
        agents = self.compatible(requirements)
        if not agents:
            raise NoCompatibleAgentError(pipeline_id, requirements.describe())
        return agents

    def try_claim(self, run_id: str, requirements: AllOf) -> Optional[AgentSpec]:
        """Claim an idle compatible agent, or return None if all are busy."""
        with self._lock:
            for agent in self.compatible(requirements):
                if agent.name not in self._busy:
                    self._busy[agent.name] = run_id
                    logger.info("Agent %s claimed by run %s", agent.name, run_id)
                    return agent
        return None

    async def acquire(self, run_id: str, pipeline_id: str, requirements: AllOf) -> AgentSpec:
        """Wait until a compatible agent is free and claim it."""
        self.ensure_compatible(pipeline_id, requirements)
        waited = False
        while True:
            agent = self.try_claim(run_id, requirements)
            if agent is not None:
                return agent
            if not waited:
                logger.info("Run %s waiting for a free agent (%s)", run_id, requirements.describe())
                waited = True
            await asyncio.sleep(_POLL_INTERVAL)

    def release(self, agent_name: str) -> None:
        with self._lock:
            run_id = self._busy.pop(agent_name, None)
        if run_id is not None:
            logger.info("Agent %s released by run %s", agent_name, run_id)

    def busy(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._busy)
