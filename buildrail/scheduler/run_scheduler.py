"""
Run Scheduler
=============
Admits runs of pipeline definitions and drives each one to a terminal
status.

``admit(pipeline, context)``:
    1. Pre-flight: every %parameter% of every step must be resolvable and
       at least one agent must satisfy the requirements, otherwise
       ConfigurationError is raised and no run exists
    2. Allocate the Run (pending), record it, start its task

Run task:
    3. Claim an agent (waits while compatible agents are busy)
    4. Post "pending" status
    5. Under the execution timeout (counted from agent binding): check out
       the VCS root, then execute steps in order; the first failing step
       that is not allowed to fail stops the run
    6. Stage artifacts (for every outcome)
    7. Evaluate metric failure conditions (for runs about to succeed)
    8. Finish the run exactly once, write run.json, post final status,
       release the agent, notify ``on_complete``

Timeouts are fatal: the in-flight step is killed, the run becomes
timed_out, nothing is retried. A new event must start a new run.
"""
import asyncio
import logging
import os
from typing import Awaitable, Callable, Dict, List, Optional

from buildrail.core.config import (
    ARTIFACT_STORE_ROOT,
    CREDENTIAL_PREFIX,
    DEFAULT_EXECUTION_TIMEOUT_MIN,
    WORKSPACE_ROOT,
    resolve_credential,
)
from buildrail.core.constants import RUN_FAILED, RUN_SUCCEEDED, RUN_TIMED_OUT
from buildrail.core.errors import ConfigurationError, RunTimeoutError, StepFailure, VcsError
from buildrail.executor.step_executor import StepContext, StepExecutor
from buildrail.models.agent import AgentSpec
from buildrail.models.configuration import BuildConfiguration
from buildrail.models.pipeline import PipelineDefinition
from buildrail.models.run import Run, TriggerContext
from buildrail.parser.params import ParameterContext
from buildrail.reporter.artifacts import ArtifactStager
from buildrail.reporter.status_publisher import StatusPublisher
from buildrail.scheduler.agent_pool import AgentPool
from buildrail.scheduler.failure_conditions import collect_metrics, evaluate_conditions
from buildrail.services import vcs_service
from buildrail.services.results_writer import ResultsWriter
from buildrail.services.run_history import RunHistory

logger = logging.getLogger(__name__)

_SECONDS_PER_MINUTE = 60
_PLACEHOLDER = "<resolved at run time>"

CompletionHook = Callable[[Run], Awaitable[None]]


class RunScheduler:

    def __init__(
        self,
        config: BuildConfiguration,
        executor: Optional[StepExecutor] = None,
        history: Optional[RunHistory] = None,
        agent_pool: Optional[AgentPool] = None,
        stager: Optional[ArtifactStager] = None,
        publisher_factory: Callable[..., StatusPublisher] = StatusPublisher,
        workspace_root: str = WORKSPACE_ROOT,
        artifact_root: str = ARTIFACT_STORE_ROOT,
        environ: Optional[Dict[str, str]] = None,
        on_complete: Optional[CompletionHook] = None,
    ) -> None:
        self.config = config
        self.executor = executor or StepExecutor()
        self.history = history or RunHistory()
        self.agent_pool = agent_pool or AgentPool(config.agents)
        self.stager = stager or ArtifactStager()
        self.publisher_factory = publisher_factory
        self.workspace_root = workspace_root
        self.artifact_root = artifact_root
        self.environ = dict(os.environ) if environ is None else dict(environ)
        self.on_complete = on_complete
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------
    def build_parameters(
        self,
        pipeline: PipelineDefinition,
        context: TriggerContext,
        agent: Optional[AgentSpec] = None,
        run: Optional[Run] = None,
    ) -> ParameterContext:
        """
        Layer parameter sources, later wins:
        project params < pipeline params < trigger params < run built-ins.
        ``env.*`` / ``system.*`` keys are routed to their namespaces and
        ``credentials:<name>`` values are replaced by their secrets.
        """
        env = dict(self.environ)
        if agent is not None:
            env.update(agent.env)
        system = dict(self.config.system_params)
        params: Dict[str, str] = {}

        for source in (self.config.params, pipeline.params, context.params):
            for key, value in source.items():
                if key.startswith("env."):
                    env[key[4:]] = value
                elif key.startswith("system."):
                    system[key[7:]] = value
                else:
                    params[key] = value
        params = self._resolve_handles(params)

        params.update({
            "build.branch": context.branch,
            "build.commit": context.commit,
            "build.pipeline": pipeline.id,
            "build.trigger": context.event,
            "build.number": str(run.number) if run else _PLACEHOLDER,
            "build.run_id": run.id if run else _PLACEHOLDER,
            "agent.name": agent.name if agent else _PLACEHOLDER,
        })
        if context.upstream_run_id:
            params["build.upstream_run_id"] = context.upstream_run_id
        return ParameterContext(
            env=self._resolve_handles(env),
            system=self._resolve_handles(system),
            params=params,
        )

    def _resolve_handles(self, values: Dict[str, str]) -> Dict[str, str]:
        """Swap ``credentials:<name>`` values for their secrets; unbacked handles are left out."""
        resolved: Dict[str, str] = {}
        for key, value in values.items():
            if isinstance(value, str) and value.startswith(CREDENTIAL_PREFIX):
                secret = resolve_credential(value, self.environ)
                if secret is None:
                    logger.warning("Parameter %s: no secret behind %s", key, value)
                    continue
                value = secret
            resolved[key] = value
        return resolved

    def preflight(self, pipeline: PipelineDefinition, context: TriggerContext) -> List[AgentSpec]:
        """
        Validate a pipeline for admission; returns the compatible agents.

        Environment references must resolve on every compatible agent, so
        only env keys all of them define are counted.
        """
        agents = self.agent_pool.ensure_compatible(pipeline.id, pipeline.requirements)

        shared_env = set.intersection(*(set(a.env) for a in agents)) if agents else set()
        probe_agent = AgentSpec(name=_PLACEHOLDER, env={k: agents[0].env[k] for k in shared_env})
        params = self.build_parameters(pipeline, context, agent=probe_agent)
        for step in pipeline.steps:
            params.step_outputs[step.id] = {name: _PLACEHOLDER for name in step.outputs}

        missing = params.unresolved(
            text for step in pipeline.steps for text in step.parameterised_fields()
        )
        if missing:
            raise ConfigurationError(
                f"Pipeline '{pipeline.id}' has unresolved parameter reference(s): "
                + ", ".join(f"%{m}%" for m in missing),
                problems=missing,
            )
        return agents

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------
    async def admit(self, pipeline: PipelineDefinition, context: TriggerContext) -> Run:
        """Validate, allocate and start a run. Raises ConfigurationError."""
        self.preflight(pipeline, context)

        run = Run(
            number=self.history.next_number(pipeline.id),
            pipeline_id=pipeline.id,
            trigger=context,
        )
        self.history.add(run)
        logger.info("Admitted %s #%d (run %s) | trigger=%s | branch=%s | commit=%s",
                    pipeline.id, run.number, run.id, context.event, context.branch, context.commit[:12] or "-")

        task = asyncio.create_task(self._drive(run, pipeline), name=f"run-{run.id}")
        self._tasks[run.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(run.id, None))
        return run

    async def wait(self, run_id: str) -> Optional[Run]:
        """Await a run's task; finished runs come straight from history."""
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.shield(task)
        return self.history.get(run_id)

    async def drain(self) -> None:
        """Wait until every admitted run, including ones admitted meanwhile, is done."""
        while True:
            pending = [t for t in list(self._tasks.values()) if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Run task
    # ------------------------------------------------------------------
    def _publisher(self, pipeline: PipelineDefinition) -> Optional[StatusPublisher]:
        if pipeline.status_publisher is None:
            return None
        return self.publisher_factory(pipeline.status_publisher)

    async def _publish(self, pipeline: PipelineDefinition, run: Run) -> None:
        publisher = self._publisher(pipeline)
        if publisher is not None:
            await publisher.publish(run, pipeline)

    def _run_dir(self, root: str, pipeline: PipelineDefinition, run: Run) -> str:
        return os.path.join(root, pipeline.id, str(run.number))

    async def _prepare_workspace(
        self, run: Run, pipeline: PipelineDefinition, agent: AgentSpec, timeout: Optional[float] = None,
    ) -> str:
        if run.trigger.workspace:
            return run.trigger.workspace

        agent_root = os.path.join(agent.workspace_root or self.workspace_root, agent.name)
        root = self.config.vcs_root_for(pipeline)
        if root is None:
            path = os.path.join(agent_root, pipeline.id)
            os.makedirs(path, exist_ok=True)
            return path

        return await asyncio.to_thread(
            vcs_service.checkout,
            root,
            os.path.join(agent_root, root.id),
            run.trigger.branch,
            run.trigger.commit,
            timeout=timeout,
        )

    async def _run_steps(
        self,
        run: Run,
        pipeline: PipelineDefinition,
        params: ParameterContext,
        workspace: str,
        agent: AgentSpec,
    ) -> tuple:
        log_dir = self._run_dir(self.executor.log_root, pipeline, run)

        for index, step in enumerate(pipeline.steps):
            run.advance(index)
            step_context = StepContext(
                run_id=run.id,
                step_index=index,
                workspace_path=workspace,
                params=params,
                log_dir=log_dir,
                agent_env=agent.env,
                docker_registry=pipeline.docker_registry,
            )
            result = await self.executor.run(step, step_context)
            run.record_step(result)

            if result.succeeded:
                params.step_outputs[step.id] = result.outputs
                continue
            if step.allow_failure:
                run.problems.append(f"Step '{step.name}' failed with exit code {result.exit_code} (allowed to fail)")
                continue

            failure = StepFailure(step.name, result.exit_code)
            detail = f"{failure.message}: {result.error}" if result.error else failure.message
            return RUN_FAILED, detail

        run.advance(len(pipeline.steps))
        return RUN_SUCCEEDED, None

    async def _checkout_and_run_steps(
        self,
        run: Run,
        pipeline: PipelineDefinition,
        agent: AgentSpec,
        timeout: Optional[float],
        workspaces: List[str],
    ) -> tuple:
        try:
            workspace = await self._prepare_workspace(run, pipeline, agent, timeout=timeout)
        except VcsError as e:
            return RUN_FAILED, e.message
        workspaces.append(workspace)

        params = self.build_parameters(pipeline, run.trigger, agent=agent, run=run)
        return await self._run_steps(run, pipeline, params, workspace, agent)

    async def _execute(self, run: Run, pipeline: PipelineDefinition, agent: AgentSpec) -> tuple:
        """Checkout and steps under the execution timeout, then artifacts. Returns (status, problem)."""
        timeout_min = pipeline.failure_conditions.execution_timeout_min or DEFAULT_EXECUTION_TIMEOUT_MIN
        timeout = timeout_min * _SECONDS_PER_MINUTE if timeout_min else None
        workspaces: List[str] = []

        try:
            status, problem = await asyncio.wait_for(
                self._checkout_and_run_steps(run, pipeline, agent, timeout, workspaces),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Run %s exceeded %d min; terminated", run.id, timeout_min)
            status, problem = RUN_TIMED_OUT, RunTimeoutError(run.id, timeout_min).message

        if pipeline.artifact_rules and workspaces:
            try:
                run.artifacts = await asyncio.to_thread(
                    self.stager.stage,
                    pipeline.artifact_rules,
                    workspaces[0],
                    self._run_dir(self.artifact_root, pipeline, run),
                )
            except OSError as e:
                logger.error("Artifact staging failed for run %s: %s", run.id, e)
                run.problems.append(f"Artifact staging failed: {e}")
        return status, problem

    def _apply_failure_conditions(self, run: Run, pipeline: PipelineDefinition, status: str, problem):
        run.metrics = collect_metrics(run)
        if status != RUN_SUCCEEDED:
            return status, problem

        baseline_run = self.history.last_successful(pipeline.id, exclude_run_id=run.id)
        outcomes = evaluate_conditions(pipeline, run.metrics, baseline_run.metrics if baseline_run else None)
        for outcome in outcomes:
            if not outcome.breached:
                continue
            breach = outcome.as_breach()
            if outcome.condition.stop_build_on_failure:
                return RUN_FAILED, breach.message
            run.problems.append(breach.message)
        return status, problem

    async def _drive(self, run: Run, pipeline: PipelineDefinition) -> None:
        agent = None
        try:
            agent = await self.agent_pool.acquire(run.id, pipeline.id, pipeline.requirements)
            run.start(agent.name)
            await self._publish(pipeline, run)

            status, problem = await self._execute(run, pipeline, agent)
            status, problem = self._apply_failure_conditions(run, pipeline, status, problem)
            run.finish(status, problem)

        except Exception as e:
            # Subsystem failures must still end the run
            logger.exception("Run %s aborted by internal error", run.id)
            if not run.is_terminal:
                run.finish(RUN_FAILED, f"Internal error: {type(e).__name__}: {e}")

        finally:
            if agent is not None:
                self.agent_pool.release(agent.name)

        logger.info("Run %s (%s #%d) finished: %s in %.2fs%s",
                    run.id, pipeline.id, run.number, run.status, run.duration_seconds,
                    f" | {run.problems[-1]}" if run.problems else "")

        ResultsWriter.write_results(
            run, os.path.join(self._run_dir(self.artifact_root, pipeline, run), "run.json"), pipeline.display_name,
        )
        await self._publish(pipeline, run)
        if self.on_complete is not None:
            try:
                await self.on_complete(run)
            except Exception:
                logger.exception("Completion hook failed for run %s", run.id)
