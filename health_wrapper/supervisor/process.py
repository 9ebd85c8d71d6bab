import asyncio
import logging
import shlex
from typing import List, Optional, Sequence

from health_wrapper.readiness import ReadinessGate
from health_wrapper.utils.exception_logging import format_exception_message
from health_wrapper.vars import GATEWAY_COMMAND, GATEWAY_PORT

logger = logging.getLogger("uvicorn.error")

# Gateway log lines can be long (JSON payloads); asyncio's default is 64 KiB.
STREAM_LIMIT = 1024 * 1024


class BackendStartError(RuntimeError):
    """The gateway process could not be spawned."""


async def read_lines(stream: asyncio.StreamReader):
    """Decoded output lines until EOF. Over-long lines are skipped, the pipe keeps draining."""
    while True:
        try:
            raw = await stream.readline()
        except ValueError:
            logger.warning(f"[gateway] Skipped an output line longer than {STREAM_LIMIT} bytes")
            continue
        if not raw:
            return
        yield raw.decode("utf-8", errors="replace").rstrip("\r\n")


def gateway_command(
    template: str = GATEWAY_COMMAND, port: int = GATEWAY_PORT
) -> List[str]:
    """Split the configured command line, filling in the loopback port."""
    return [part.replace("{port}", str(port)) for part in shlex.split(template)]


class GatewayProcess:
    """
    The single supervised gateway.

    Exposes start, line-oriented output observation (stdout feeds the
    readiness gate), exit observation and termination. It is never restarted:
    when it exits, the wrapper exits with it.
    """

    def __init__(self, command: Sequence[str], gate: ReadinessGate, env: Optional[dict] = None):
        self.command = list(command)
        self.gate = gate
        self.env = env
        self.process: Optional[asyncio.subprocess.Process] = None
        self._pumps: List[asyncio.Task] = []

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    async def start(self) -> None:
        logger.info(f"[gateway] Starting: {shlex.join(self.command)}")
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            logger.error(f"[gateway] Failed to start: {format_exception_message(e)}")
            raise BackendStartError(str(e)) from e

        self._pumps = [
            asyncio.create_task(self._pump_stdout(self.process.stdout)),
            asyncio.create_task(self._pump_stderr(self.process.stderr)),
        ]

    async def _pump_stdout(self, stream: asyncio.StreamReader) -> None:
        async for line in read_lines(stream):
            logger.info(f"[gateway] {line}")
            self.gate.observe(line)

    async def _pump_stderr(self, stream: asyncio.StreamReader) -> None:
        async for line in read_lines(stream):
            logger.error(f"[gateway] {line}")

    async def wait(self) -> int:
        """
        Wait for the gateway to exit and its output to drain.

        Returns the exit code, or 1 when there is none (killed by a signal).
        """
        if self.process is None:
            raise RuntimeError("Gateway process was never started")
        returncode = await self.process.wait()
        await asyncio.gather(*self._pumps, return_exceptions=True)
        logger.info(f"[gateway] Exited with code {returncode}")
        if returncode is None or returncode < 0:
            return 1
        return returncode

    def terminate(self) -> None:
        if self.process is None or self.process.returncode is not None:
            return
        logger.info(f"[gateway] Sending SIGTERM to pid {self.process.pid}")
        try:
            self.process.terminate()
        except ProcessLookupError:
            logger.debug("[gateway] Process already gone")
