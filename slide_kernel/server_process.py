"""
Background Server Supervision
=============================

Owns the lifetime of the Jupyter server process that backs one document:

- Spawning `<python> -m jupyter_server` on the fixed endpoint
- Polling /api/status until the server answers (bounded attempts)
- Failing fast when stderr reports a missing module
- Graceful (SIGINT) then forceful (SIGKILL) shutdown

State machine:
    IDLE -> STARTING -> POLLING -> READY -> SHUTTING_DOWN -> STOPPED
    STARTING/POLLING -> FAILED

At most one live process per supervisor: start() stops the previous one first.
"""

import os
import sys
import signal
import asyncio
from enum import Enum
from typing import List, Optional

import httpx
import psutil
import structlog

from .config import settings as default_settings, SlideKernelSettings
from .environment import EnvironmentProvider, merge_environment
from .errors import MissingDependency, StartupTimeout, ServerExited
from .models import ServerEndpoint
from .observability import get_tracer

logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)


class ServerState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    POLLING = "polling"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"
    FAILED = "failed"


class ProcessSupervisor:
    """
    Spawns and supervises the background Jupyter server process.

    The HTTP client used for health polling is injected so callers share one
    connection pool and tests can swap in a mock transport.
    """

    def __init__(
        self,
        endpoint: ServerEndpoint,
        http_client: httpx.AsyncClient,
        settings: Optional[SlideKernelSettings] = None,
        environment_provider: Optional[EnvironmentProvider] = None,
    ):
        self.endpoint = endpoint
        self.http = http_client
        self.settings = settings or default_settings
        self.environment_provider = environment_provider or EnvironmentProvider()

        self.state = ServerState.IDLE
        self._process: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._stop_task: Optional[asyncio.Task] = None
        # Set by the stderr scanner or by stop() to cut polling short
        self._startup_abort = asyncio.Event()
        self._stop_requested = False
        self._missing_module_line: Optional[str] = None

    @property
    def process(self) -> Optional[asyncio.subprocess.Process]:
        return self._process

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def build_command(self, interpreter: str) -> List[str]:
        return [
            interpreter,
            "-m",
            self.settings.SERVER_MODULE,
            "--no-browser",
            f"--port={self.endpoint.port}",
            f"--ServerApp.token={self.endpoint.token}",
            "--ServerApp.password=''",
        ]

    async def start(self, interpreter: str) -> ServerEndpoint:
        """
        Spawn the server and wait until it answers the health endpoint.

        Raises:
            MissingDependency: stderr reported a missing module
            StartupTimeout: no healthy response within the poll budget
            ServerExited: the process exited (or was stopped) before ready
        """
        if self._process is not None:
            await self.stop()

        with tracer.start_as_current_span("server.start") as span:
            span.set_attribute("server.port", self.endpoint.port)
            self.state = ServerState.STARTING
            self._startup_abort = asyncio.Event()
            self._stop_requested = False
            self._missing_module_line = None
            self._stop_task = None

            resolved = await self.environment_provider.resolve_environment(interpreter)
            env = merge_environment(resolved)
            cmd = self.build_command(interpreter)
            logger.info(f"[SERVER] Spawning {cmd[0]} on port {self.endpoint.port}")

            try:
                self._process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                    env=env,
                    start_new_session=(os.name != "nt"),
                )
            except OSError as e:
                self.state = ServerState.FAILED
                raise ServerExited(f"Could not launch Jupyter server with {interpreter}: {e}") from e

            self._stderr_task = asyncio.create_task(self._scan_stderr(self._process))
            self.state = ServerState.POLLING

            try:
                await self._poll_until_ready(self._process)
            except BaseException:
                await self._kill_now()
                self.state = ServerState.STOPPED if self._stop_requested else ServerState.FAILED
                raise

            self.state = ServerState.READY
            logger.info(f"[SERVER] Ready at {self.endpoint.base_url}", pid=self._process.pid)
            return self.endpoint

    async def _poll_until_ready(self, process: asyncio.subprocess.Process) -> None:
        status_url = self.endpoint.url("api/status")
        attempts = self.settings.MAX_POLL_ATTEMPTS

        for attempt in range(1, attempts + 1):
            await self._raise_if_aborted(process)

            try:
                # A server that accepts but answers slowly must not stretch the attempt
                response = await asyncio.wait_for(
                    self.http.get(status_url, headers=self.endpoint.auth_headers),
                    timeout=self.settings.POLL_INTERVAL,
                )
                if response.is_success:
                    return
                logger.debug(f"[SERVER] Health check returned {response.status_code} (attempt {attempt})")
            except httpx.TransportError:
                # Expected while the server is still binding its port
                pass
            except asyncio.TimeoutError:
                logger.debug(f"[SERVER] Health check timed out (attempt {attempt})")

            try:
                await asyncio.wait_for(self._startup_abort.wait(), timeout=self.settings.POLL_INTERVAL)
            except asyncio.TimeoutError:
                pass

        await self._raise_if_aborted(process)
        logger.error(f"[SERVER] No healthy response after {attempts} attempts")
        raise StartupTimeout(
            f"Jupyter server startup timed out after {attempts} attempts "
            f"({attempts * self.settings.POLL_INTERVAL:.1f}s)."
        )

    async def _raise_if_aborted(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None and self._stderr_task is not None:
            # The exit can be observed before the last stderr lines are scanned
            await asyncio.wait({self._stderr_task}, timeout=1.0)
        if self._missing_module_line is not None:
            raise MissingDependency(
                f"Jupyter server could not start: {self._missing_module_line}. "
                f"Install ipykernel and jupyter_server into the selected environment.",
                line=self._missing_module_line,
            )
        if self._stop_requested:
            raise ServerExited("Jupyter server was stopped before it became ready.")
        if process.returncode is not None:
            raise ServerExited(
                f"Jupyter server exited with code {process.returncode} before it became ready.",
                returncode=process.returncode,
            )

    async def _scan_stderr(self, process: asyncio.subprocess.Process) -> None:
        marker = self.settings.MISSING_MODULE_MARKER
        stream = process.stderr
        if stream is None:
            return
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip()
            logger.debug("[SERVER stderr]", line=line)
            if marker in line and self._missing_module_line is None:
                logger.error(f"[SERVER] Missing dependency reported: {line}")
                self._missing_module_line = line.strip()
                self._startup_abort.set()
                self._force_kill(process)

    def _send_interrupt(self, process: asyncio.subprocess.Process) -> None:
        if sys.platform == "win32":
            process.terminate()
        else:
            process.send_signal(signal.SIGINT)

    def _force_kill(self, process: asyncio.subprocess.Process) -> None:
        """SIGKILL the server and any kernels it spawned."""
        if process.returncode is not None:
            return
        try:
            children = psutil.Process(process.pid).children(recursive=True)
        except psutil.Error:
            children = []
        for child in children:
            try:
                child.kill()
            except psutil.Error:
                pass
        try:
            process.kill()
            logger.warning(f"[SERVER] Force-killed pid {process.pid}")
        except ProcessLookupError:
            pass

    async def _kill_now(self) -> None:
        process = self._process
        if process is None:
            return
        if self._stop_task is not None:
            # A concurrent stop() owns the teardown
            await asyncio.shield(self._stop_task)
            return
        self._force_kill(process)
        await process.wait()
        await self._reap_stderr()
        self._process = None

    async def stop(self) -> None:
        """
        Interrupt the server, escalating to kill after the grace period.

        Idempotent: concurrent and repeated calls share one shutdown.
        """
        self._stop_requested = True
        self._startup_abort.set()
        process = self._process
        if process is None:
            if self.state not in (ServerState.IDLE, ServerState.FAILED):
                self.state = ServerState.STOPPED
            return

        if self._stop_task is None:
            self._stop_task = asyncio.ensure_future(self._shutdown(process))
        await asyncio.shield(self._stop_task)

    async def _shutdown(self, process: asyncio.subprocess.Process) -> None:
        self.state = ServerState.SHUTTING_DOWN
        loop = asyncio.get_running_loop()
        kill_timer = None

        if process.returncode is None:
            logger.info(f"[SERVER] Stopping pid {process.pid}")
            try:
                self._send_interrupt(process)
            except ProcessLookupError:
                pass
            kill_timer = loop.call_later(
                self.settings.SHUTDOWN_GRACE_PERIOD, self._force_kill, process
            )

        try:
            await process.wait()
        finally:
            if kill_timer is not None:
                kill_timer.cancel()

        await self._reap_stderr()
        if self._process is process:
            self._process = None
        self.state = ServerState.STOPPED
        logger.info(f"[SERVER] Stopped (exit code {process.returncode})")

    async def _reap_stderr(self) -> None:
        task = self._stderr_task
        self._stderr_task = None
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"[SERVER] stderr reader ended with {e}")
