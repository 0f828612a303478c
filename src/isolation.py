"""Isolation boundary: one worker process per execution request.

The boundary owns the only guarantee the host relies on. Whatever the
snippet does (spin forever, blow the stack, crash the interpreter) happens
in a separate process that is killed once ``timeout_ms + grace_ms`` have
passed since dispatch, and the caller always gets exactly one
``ExecutionResult`` back.
"""

import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from stream_types import (
    ExecutionRequest,
    ExecutionResult,
    ForcedTerminationError,
    InfrastructureError,
)

logger = logging.getLogger("rx-sandbox-mcp.isolation")

DEFAULT_GRACE_MS = 1000
WORKER_SCRIPT = Path(__file__).with_name("stream_worker.py")
MAX_STDERR_IN_ERROR = 500
PASSTHROUGH_ENV = ("PYTHONPATH", "HOME", "SYSTEMROOT", "VIRTUAL_ENV")


class RequestState(Enum):
    DISPATCHED = "dispatched"
    RUNNING = "running"
    COMPLETED = "completed"
    ERRORED = "errored"
    FORCE_KILLED = "force_killed"


TERMINAL_STATES = {RequestState.COMPLETED, RequestState.ERRORED, RequestState.FORCE_KILLED}


@dataclass
class WorkerAttempt:
    """Lifecycle of one request: DISPATCHED -> RUNNING -> terminal."""
    request: ExecutionRequest
    state: RequestState = RequestState.DISPATCHED
    process: Optional[asyncio.subprocess.Process] = None

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, new_state: RequestState) -> None:
        if self.finished:
            raise RuntimeError(f"Request already {self.state.value}, cannot move to {new_state.value}")
        if new_state == RequestState.RUNNING and self.state != RequestState.DISPATCHED:
            raise RuntimeError(f"Cannot start a request in state {self.state.value}")
        if new_state == RequestState.DISPATCHED:
            raise RuntimeError("Cannot return a request to dispatched")
        self.state = new_state


class IsolationBoundary:
    """Spawns, supervises and reclaims sandbox worker processes.

    Holds no cross-request state beyond the registry of in-flight workers,
    which exists so ``shutdown()`` can reclaim them.
    """

    def __init__(
        self,
        grace_ms: int = DEFAULT_GRACE_MS,
        python: Optional[str] = None,
        worker_script: Optional[Path] = None,
    ):
        if grace_ms < 0:
            raise ValueError(f"grace_ms must be >= 0, got {grace_ms}")
        self.grace_ms = grace_ms
        self.python = python or sys.executable
        self.worker_script = Path(worker_script or WORKER_SCRIPT)
        self._workers: dict[int, asyncio.subprocess.Process] = {}

    @property
    def in_flight(self) -> int:
        return len(self._workers)

    def hard_timeout_seconds(self, request: ExecutionRequest) -> float:
        return (request.timeout_ms + self.grace_ms) / 1000.0

    def _worker_env(self) -> dict[str, str]:
        # Minimal environment: only what the interpreter needs to find its
        # packages. No credentials or config from the host leak through.
        env = {
            "PATH": os.environ.get("PATH", "/usr/bin:/bin"),
        }
        for key in PASSTHROUGH_ENV:
            if key in os.environ:
                env[key] = os.environ[key]
        return env

    async def _spawn(self) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            self.python,
            str(self.worker_script),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self._worker_env(),
        )

    @staticmethod
    async def _reap(process: asyncio.subprocess.Process) -> None:
        """Kill the worker if it is still alive and wait for it to exit."""
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()

    async def run(self, request: ExecutionRequest) -> ExecutionResult:
        """Execute one request in a fresh worker. Never raises for worker faults."""
        attempt = WorkerAttempt(request)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.hard_timeout_seconds(request)
        payload = json.dumps(request.to_worker_payload()).encode("utf-8")

        try:
            try:
                attempt.process = await self._spawn()
            except OSError as e:
                logger.error(f"Failed to start sandbox worker: {e}")
                return self._fault(attempt, f"Failed to start worker: {e}")

            process = attempt.process
            self._workers[process.pid] = process
            attempt.advance(RequestState.RUNNING)
            logger.debug(f"Worker {process.pid} running (hard deadline {self.hard_timeout_seconds(request)}s)")

            try:
                stdout, stderr = await asyncio.wait_for(
                    process.communicate(payload),
                    timeout=max(0.0, deadline - loop.time()),
                )
            except asyncio.TimeoutError:
                await self._reap(process)
                attempt.advance(RequestState.FORCE_KILLED)
                logger.warning(
                    f"Worker {process.pid} killed after {request.timeout_ms}ms + {self.grace_ms}ms grace"
                )
                return ExecutionResult.failure(
                    ForcedTerminationError(
                        f"Execution forcefully terminated after {request.timeout_ms + self.grace_ms}ms "
                        f"(worker unresponsive)"
                    ),
                    wall_clock_ms=request.timeout_ms,
                )

            return self._decode_reply(attempt, process.returncode, stdout, stderr)
        finally:
            if attempt.process is not None:
                await self._reap(attempt.process)
                self._workers.pop(attempt.process.pid, None)

    def _fault(self, attempt: WorkerAttempt, message: str) -> ExecutionResult:
        attempt.advance(RequestState.ERRORED)
        return ExecutionResult.failure(InfrastructureError(message))

    def _decode_reply(
        self,
        attempt: WorkerAttempt,
        returncode: Optional[int],
        stdout: bytes,
        stderr: bytes,
    ) -> ExecutionResult:
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        lines = [line for line in stdout.decode("utf-8", errors="replace").splitlines() if line.strip()]

        if not lines:
            logger.error(f"Worker exited with status {returncode} without a reply | stderr: {stderr_text}")
            detail = f": {stderr_text[-MAX_STDERR_IN_ERROR:]}" if stderr_text else ""
            return self._fault(attempt, f"Worker exited with status {returncode} before replying{detail}")

        try:
            reply = json.loads(lines[-1])
            if not reply.get("success"):
                return self._fault(attempt, f"Worker failed: {reply.get('error', 'unknown error')}")
            result = ExecutionResult.from_dict(reply["result"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
            logger.error(f"Malformed worker reply: {e} | stdout tail: {lines[-1][:200]}")
            return self._fault(attempt, f"Worker sent a malformed reply: {e}")

        attempt.advance(RequestState.COMPLETED if result.completed_normally else RequestState.ERRORED)
        return result

    async def shutdown(self) -> None:
        """Kill every in-flight worker."""
        workers = list(self._workers.values())
        if workers:
            logger.info(f"Reclaiming {len(workers)} in-flight worker(s)")
        await asyncio.gather(*(self._reap(process) for process in workers), return_exceptions=True)
        self._workers.clear()
