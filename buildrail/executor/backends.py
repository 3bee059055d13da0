"""
Execution Backends
==================
Run one resolved command and stream its output into a log file.

    LocalProcessBackend — `bash -c` subprocess in its own process group
    DockerBackend       — ephemeral container with the workspace mounted

BOUNDARY RULES:
    - Backends ONLY execute and observe.
    - Backends NEVER decide step success; they report exit codes.
    - Backends NEVER raise for infrastructure problems; they return a
      BackendResult with ``error`` set and exit_code -1.
    - Cancellation (run timeout) kills the process / container and then
      propagates CancelledError to the caller.
"""
import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import docker
from docker.errors import APIError, ImageNotFound

from buildrail.core.config import DOCKER_CPU_COUNT, DOCKER_MEMORY_LIMIT, resolve_credential
from buildrail.executor.command_resolver import ResolvedCommand
from buildrail.models.pipeline import DockerRegistryConfig

logger = logging.getLogger(__name__)

_CONTAINER_WORKSPACE = "/workspace"
_READ_CHUNK = 64 * 1024
_MAX_LINE = 1024 * 1024   # longer output lines are split


@dataclass
class BackendResult:
    exit_code: int = -1
    output_lines: List[str] = field(default_factory=list)
    error: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


class LocalProcessBackend:
    """Runs the command as a host subprocess."""

    async def execute(
        self,
        command: ResolvedCommand,
        workspace_path: str,
        log_file,
        base_env: Optional[Dict[str, str]] = None,
    ) -> BackendResult:
        result = BackendResult()
        cwd = os.path.join(workspace_path, command.working_dir) if command.working_dir else workspace_path
        env = dict(os.environ)
        env.update(base_env or {})
        env.update(command.env)
        env["CI"] = "true"

        try:
            proc = await asyncio.create_subprocess_exec(
                "bash", "-c", command.shell_command,
                cwd=cwd or None,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            result.error = f"Failed to start process: {e}"
            logger.error(result.error)
            return result

        try:
            await self._stream(proc.stdout, result, log_file)
            result.exit_code = await proc.wait()
        except asyncio.CancelledError:
            self._kill(proc)
            await proc.wait()
            log_file.write(">>> terminated: execution timeout\n")
            raise
        except Exception as e:
            self._kill(proc)
            await proc.wait()
            result.error = f"Output capture failed: {type(e).__name__}: {e}"
            logger.exception(result.error)
            return result

        result.metadata = {"pid": str(proc.pid)}
        return result

    @staticmethod
    async def _stream(stdout, result: BackendResult, log_file) -> None:
        """Copy output line by line; a line longer than _MAX_LINE is split."""
        pending = b""
        while True:
            chunk = await stdout.read(_READ_CHUNK)
            if not chunk:
                break
            pending += chunk
            *lines, pending = pending.split(b"\n")
            while len(pending) > _MAX_LINE:
                lines.append(pending[:_MAX_LINE])
                pending = pending[_MAX_LINE:]
            for raw in lines:
                line = raw.decode("utf-8", errors="replace")
                result.output_lines.append(line)
                log_file.write(line + "\n")
        if pending:
            line = pending.decode("utf-8", errors="replace")
            result.output_lines.append(line)
            log_file.write(line + "\n")

    @staticmethod
    def _kill(proc) -> None:
        if proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        logger.warning("Killed process group %s", proc.pid)


class DockerBackend:
    """
    Runs the command inside an ephemeral container.

    One container per step; workspace mounted at /workspace; container
    destroyed after execution, including on cancellation.
    """

    def __init__(self, client_factory: Callable = docker.from_env) -> None:
        self._client_factory = client_factory

    def _login(self, client, registry: Optional[DockerRegistryConfig]) -> None:
        if registry is None:
            return
        client.login(
            username=registry.username,
            password=resolve_credential(registry.password) or "",
            registry=registry.registry,
        )

    @staticmethod
    async def _settle(creating: asyncio.Future, name: str):
        """Outcome of a container create interrupted by cancellation; None if it failed."""
        try:
            return await creating
        except Exception:
            logger.warning("Container %s was not created", name, exc_info=True)
            return None

    async def execute(
        self,
        command: ResolvedCommand,
        workspace_path: str,
        log_file,
        image: str,
        base_env: Optional[Dict[str, str]] = None,
        registry: Optional[DockerRegistryConfig] = None,
    ) -> BackendResult:
        result = BackendResult()
        container = None
        workdir = _CONTAINER_WORKSPACE
        if command.working_dir:
            workdir = f"{_CONTAINER_WORKSPACE}/{command.working_dir.strip('/')}"
        env = dict(base_env or {})
        env.update(command.env)
        env["CI"] = "true"

        try:
            client = await asyncio.to_thread(self._client_factory)
            await asyncio.to_thread(self._login, client, registry)

            logger.info("Starting container | image=%s | workdir=%s", image, workdir)
            name = f"buildrail-step-{int(time.time() * 1000)}"
            creating = asyncio.ensure_future(asyncio.to_thread(
                client.containers.run,
                image=image,
                command=["bash", "-c", command.shell_command],
                volumes={workspace_path: {"bind": _CONTAINER_WORKSPACE, "mode": "rw"}},
                environment=env,
                working_dir=workdir,
                mem_limit=DOCKER_MEMORY_LIMIT,
                nano_cpus=DOCKER_CPU_COUNT * 1_000_000_000,
                name=name,
                labels={"project": "buildrail", "role": "step"},
                detach=True,
            ))
            try:
                container = await asyncio.shield(creating)
            except asyncio.CancelledError:
                # Creation completes regardless; the finally block removes it
                container = await self._settle(creating, name)
                raise
            wait_result = await asyncio.to_thread(container.wait)
            result.exit_code = wait_result.get("StatusCode", -1)

            log_bytes = await asyncio.to_thread(container.logs, stdout=True, stderr=True)
            text = log_bytes.decode("utf-8", errors="replace")
            result.output_lines = text.splitlines()
            log_file.write(text if text.endswith("\n") or not text else text + "\n")
            result.metadata = {"image": image, "container_id": container.short_id}

        except asyncio.CancelledError:
            log_file.write(">>> terminated: execution timeout\n")
            raise

        except ImageNotFound:
            result.error = f"Docker image '{image}' not found."
            logger.error(result.error)

        except APIError as e:
            result.error = f"Docker API error: {e}"
            logger.error(result.error)

        except Exception as e:
            # Catch-all: the executor must always hand back a result
            result.error = f"Unexpected docker backend error: {type(e).__name__}: {e}"
            logger.exception(result.error)

        finally:
            if container is not None:
                try:
                    container.remove(force=True)
                    logger.info("Container %s destroyed", container.short_id)
                except Exception:
                    logger.warning("Failed to remove container", exc_info=True)

        return result
