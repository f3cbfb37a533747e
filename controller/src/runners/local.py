"""
Local runner - executes steps as shell subprocesses in a per-job workspace.
"""

import asyncio
import logging
import os
import shutil
import signal
import tempfile
from typing import Optional

from controller.src.errors import InfrastructureError
from controller.src.runners.base import OutputCallback, Runner, StepInvocation

logger = logging.getLogger(__name__)

# Longest single output line accepted from a step
STREAM_LIMIT = 1024 * 1024

class LocalRunner(Runner):

    def __init__(
        self,
        name: str,
        shell: str = "/bin/sh",
        workspace_root: Optional[str] = None,
        kill_grace_period: float = 5.0,
    ):
        self.name = name
        self.shell = shell
        self.workspace_root = workspace_root or None
        self.kill_grace_period = kill_grace_period
        self.workspace: Optional[str] = None

    async def prepare(self, run_id: str, job_name: str):
        try:
            if self.workspace_root:
                os.makedirs(self.workspace_root, exist_ok=True)
            self.workspace = tempfile.mkdtemp(
                prefix=f"kiln_{run_id[:8]}_{self.name}_",
                dir=self.workspace_root,
            )
        except OSError as e:
            raise InfrastructureError(f"Runner {self.name} could not create a workspace: {e}") from e
        logger.debug(f"Runner {self.name} workspace {self.workspace} for job {job_name}")

    async def cleanup(self):
        if self.workspace:
            shutil.rmtree(self.workspace, ignore_errors=True)
            self.workspace = None

    async def run_step(self, invocation: StepInvocation, on_output: OutputCallback) -> int:
        env = dict(os.environ)
        env.update(invocation.env)

        try:
            process = await asyncio.create_subprocess_exec(
                self.shell,
                "-c",
                invocation.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=self.workspace,
                env=env,
                start_new_session=True,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise InfrastructureError(
                f"Runner {self.name} could not start step '{invocation.step_name}': {e}"
            ) from e

        try:
            async for raw in process.stdout:
                await on_output(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
            return await process.wait()
        except asyncio.CancelledError:
            await self._terminate(process)
            raise
        except ValueError as e:
            # Line longer than STREAM_LIMIT
            await self._terminate(process)
            raise InfrastructureError(f"Step output could not be read: {e}") from e

    async def _terminate(self, process: asyncio.subprocess.Process):
        """SIGTERM the step's process group, SIGKILL after the grace period."""
        if process.returncode is not None:
            return

        self._signal(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), self.kill_grace_period)
            return
        except asyncio.TimeoutError:
            logger.warning(f"Step process {process.pid} ignored SIGTERM, killing")

        self._signal(process, signal.SIGKILL)
        await process.wait()

    def _signal(self, process: asyncio.subprocess.Process, sig: int):
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            process.send_signal(sig)
