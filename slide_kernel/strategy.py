"""
Kernel Execution Strategy
=========================

KernelExecutionStrategy declares the whole kernel-lifecycle contract the
DocumentManager depends on, so callers never need to know which concrete
strategy they hold.

BackgroundServerStrategy is the one implementation: it resolves an
interpreter, supervises a private Jupyter server, talks to it over REST and
streams executions over the kernel WebSocket.
"""

import os
import uuid
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog

from .config import settings as default_settings, SlideKernelSettings
from .environment import (
    EnvironmentProvider,
    InterpreterResolver,
    kernel_name_for_interpreter,
    register_kernel,
)
from .errors import RestartFailed, SwitchKernelFailed, SlideKernelError
from .io_multiplexer import ExecutionMultiplexer
from .kernel_channel import KernelChannel
from .models import KernelSpec, ServerEndpoint, SessionHandle
from .notifications import Notifier, Signal
from .server_process import ProcessSupervisor
from .session_client import SessionClient

logger = structlog.get_logger(__name__)


def cell_source(cell: Dict[str, Any]) -> str:
    source = cell.get("source", "")
    if isinstance(source, list):
        return "".join(source)
    return str(source)


class KernelExecutionStrategy(ABC):
    """Everything the execution orchestrator may ask of a kernel backend."""

    @abstractmethod
    async def initialize(self) -> None:
        ...

    @abstractmethod
    async def execute_cell(self, cell: Dict[str, Any]) -> List[Any]:
        ...

    @abstractmethod
    async def restart_kernel(self) -> None:
        ...

    @abstractmethod
    async def switch_kernel_session(self, kernel_name: str) -> None:
        ...

    @abstractmethod
    def get_available_kernel_specs(self) -> Dict[str, KernelSpec]:
        ...

    @abstractmethod
    def get_active_kernel_name(self) -> Optional[str]:
        ...

    @abstractmethod
    def get_active_kernel_display_name(self) -> Optional[str]:
        ...

    @abstractmethod
    def on_kernel_changed(self, callback: Callable[[Optional[str]], Any]) -> Callable[[], None]:
        """Subscribe to active-kernel changes; returns an unsubscribe callable."""

    @property
    @abstractmethod
    def is_initialized(self) -> bool:
        ...

    @abstractmethod
    async def dispose(self) -> None:
        ...


class BackgroundServerStrategy(KernelExecutionStrategy):
    """
    Runs cells on a kernel hosted by a private background Jupyter server.

    Collaborators are injectable for tests: the HTTP client, the WebSocket
    connect function, the interpreter resolver and the process supervisor.
    """

    def __init__(
        self,
        document_path: str,
        saved_interpreter: Optional[str] = None,
        is_untitled: bool = False,
        settings: Optional[SlideKernelSettings] = None,
        notifier: Optional[Notifier] = None,
        environment_provider: Optional[EnvironmentProvider] = None,
        resolver: Optional[InterpreterResolver] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        connect: Optional[Callable[[str], Awaitable[Any]]] = None,
        register: Optional[Callable[..., Awaitable[str]]] = None,
    ):
        self.document_path = document_path
        self.saved_interpreter = saved_interpreter
        self.is_untitled = is_untitled
        self.settings = settings or default_settings
        self.notifier = notifier or Notifier()

        self.endpoint = ServerEndpoint(
            host=self.settings.HOST, port=self.settings.PORT, token=self.settings.TOKEN
        )
        self._owns_http = http_client is None
        self.http = http_client or httpx.AsyncClient(timeout=self.settings.REQUEST_TIMEOUT)

        provider = environment_provider or EnvironmentProvider()
        self.resolver = resolver or InterpreterResolver(provider=provider)
        self.supervisor = supervisor or ProcessSupervisor(
            self.endpoint, self.http, settings=self.settings, environment_provider=provider
        )
        self.client = SessionClient(self.endpoint, self.http)
        self.multiplexer = ExecutionMultiplexer(self.notifier)
        self._connect = connect
        self._register = register or register_kernel

        self.interpreter: Optional[str] = None
        self.session: Optional[SessionHandle] = None
        self.channel: Optional[KernelChannel] = None
        self._specs: Dict[str, KernelSpec] = {}
        self._kernel_changed = Signal("kernel-changed")
        self._disposed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self.session is not None and self.channel is not None and self.channel.is_open

    def _session_path_and_name(self) -> tuple:
        name = os.path.basename(self.document_path)
        if self.is_untitled:
            return name, name
        return self.document_path, name

    async def initialize(self) -> None:
        """
        Resolve an interpreter, start the server, create a session and connect.

        Any failure is shown to the user, the server is stopped again and the
        error propagates so the caller can leave the document unconfigured.
        """
        try:
            self.interpreter = await self.resolver.resolve(self.saved_interpreter, self.document_path)
            await self.supervisor.start(self.interpreter)

            self._specs = await self.client.list_kernel_specs()
            kernel_name = await self._choose_kernel(self.interpreter)

            path, name = self._session_path_and_name()
            logger.info(f"[SESSION] Creating session '{name}'", path=path, kernel=kernel_name)
            handle = await self.client.create_session(path, name, kernel_name)
            channel = await self._open_channel(handle)
        except Exception as e:
            logger.error(f"[SESSION] Initialization failed: {e}")
            self.notifier.error(f"Failed to start Jupyter session. Error: {e}")
            await self.supervisor.stop()
            raise

        self.session = handle
        self.channel = channel
        self.notifier.info(f"Kernel Connected: {handle.kernel_name}")
        self._kernel_changed.fire(handle.kernel_name)

    async def _choose_kernel(self, interpreter: str) -> str:
        """
        Prefer the interpreter's own registered kernel, registering it when
        allowed; fall back to any spec launching the same interpreter, then to
        the server default.
        """
        own_name = kernel_name_for_interpreter(interpreter, self.settings.KERNEL_NAME_PREFIX)
        if own_name in self._specs:
            return own_name

        if self.settings.AUTO_REGISTER_KERNEL:
            try:
                await self._register(interpreter, settings=self.settings)
                self._specs = await self.client.list_kernel_specs()
                if own_name in self._specs:
                    return own_name
            except SlideKernelError as e:
                logger.warning(f"[SESSION] Could not register kernel for {interpreter}: {e}")

        for name, spec in self._specs.items():
            if spec.interpreter_path == interpreter:
                return name

        default = self.client.default_kernel_name
        if default and default in self._specs:
            return default
        return next(iter(self._specs))

    async def _open_channel(self, handle: SessionHandle) -> KernelChannel:
        client_session_id = uuid.uuid4().hex
        channel = KernelChannel(
            self.client.channel_url(handle, client_session_id),
            client_session_id=client_session_id,
            connect=self._connect,
        )
        return await channel.open()

    async def dispose(self) -> None:
        """Close the channel, delete the session and stop the server. Idempotent."""
        if self._disposed:
            return
        self._disposed = True
        logger.info("[SESSION] Disposing strategy", document=self.document_path)

        channel, self.channel = self.channel, None
        if channel is not None:
            await channel.close()

        session, self.session = self.session, None
        if session is not None:
            try:
                await self.client.delete_session(session.id)
            except SlideKernelError as e:
                logger.warning(f"[SESSION] Error during session shutdown: {e}")

        await self.supervisor.stop()
        if self._owns_http:
            await self.http.aclose()
        self._kernel_changed.fire(None)
        self._kernel_changed.clear()

    # ------------------------------------------------------------------
    # Kernel operations
    # ------------------------------------------------------------------

    async def execute_cell(self, cell: Dict[str, Any]) -> List[Any]:
        channel = self.channel if self.is_initialized else None
        return await self.multiplexer.execute(channel, cell_source(cell), store_history=True)

    async def restart_kernel(self) -> None:
        if self.session is None:
            raise RestartFailed("Cannot restart: no active kernel session.")
        await self.client.restart_kernel(self.session.kernel_id)

    async def switch_kernel_session(self, kernel_name: str) -> None:
        """
        Move the session to another kernel.

        The new channel is opened before the old one is closed; on any failure
        the previous session and channel stay active.
        """
        previous = self.session
        if previous is None:
            raise SwitchKernelFailed("Cannot switch kernel: no active kernel session.")

        logger.info(f"[SESSION] Switching kernel to '{kernel_name}'", previous=previous.kernel_name)
        try:
            handle = await self.client.patch_session(previous.id, kernel_name)
            new_channel = await self._open_channel(handle)
        except SwitchKernelFailed:
            self.session = previous
            raise
        except Exception as e:
            self.session = previous
            raise SwitchKernelFailed(f"Failed to switch kernel to '{kernel_name}'. Error: {e}") from e

        old_channel = self.channel
        self.session = handle
        self.channel = new_channel
        if old_channel is not None:
            await old_channel.close()
        self._kernel_changed.fire(handle.kernel_name)

    # ------------------------------------------------------------------
    # Read-only queries
    # ------------------------------------------------------------------

    def get_available_kernel_specs(self) -> Dict[str, KernelSpec]:
        return dict(self._specs)

    def get_active_kernel_name(self) -> Optional[str]:
        return self.session.kernel_name if self.session else None

    def get_active_kernel_display_name(self) -> Optional[str]:
        name = self.get_active_kernel_name()
        if name is None:
            return None
        spec = self._specs.get(name)
        return spec.display_name if spec else name

    def on_kernel_changed(self, callback: Callable[[Optional[str]], Any]) -> Callable[[], None]:
        return self._kernel_changed.subscribe(callback)
