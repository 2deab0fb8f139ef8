"""
Notebook Session

Glue for one open notebook: loads the document, wires a DocumentManager to a
kernel strategy, and persists the chosen interpreter and slide position in the
workspace state.

A failed kernel startup never fails open(): the document stays usable in an
unconfigured state until an environment is selected.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Union

import structlog

from .config import settings as default_settings, SlideKernelSettings
from .document import SlideDocument
from .document_manager import DocumentManager
from .environment import has_required_packages, install_packages, register_kernel
from .errors import SlideKernelError
from .models import KernelSpec
from .notifications import Notifier
from .strategy import BackgroundServerStrategy, KernelExecutionStrategy
from .workspace_state import WorkspaceState

logger = structlog.get_logger(__name__)

StrategyFactory = Callable[[SlideDocument, Optional[str]], KernelExecutionStrategy]


@dataclass
class KernelChoice:
    kernel_name: str
    display_name: str
    python_path: str
    is_active: bool = False


def kernel_choices(
    specs: Dict[str, KernelSpec],
    active_kernel: Optional[str],
    prefix: Optional[str] = None,
) -> List[KernelChoice]:
    """
    One entry per interpreter. When several specs launch the same interpreter,
    the one registered by this package wins.
    """
    prefix = prefix if prefix is not None else default_settings.KERNEL_NAME_PREFIX
    by_path: Dict[str, KernelChoice] = {}
    for spec in specs.values():
        python_path = spec.interpreter_path
        if not python_path:
            continue
        existing = by_path.get(python_path)
        if existing is not None and not (
            spec.name.startswith(prefix) and not existing.kernel_name.startswith(prefix)
        ):
            continue
        by_path[python_path] = KernelChoice(
            kernel_name=spec.name,
            display_name=spec.display_name or "Unnamed Kernel",
            python_path=python_path,
            is_active=spec.name == active_kernel,
        )
    return list(by_path.values())


def document_uri(path: Union[str, Path], is_untitled: bool = False) -> str:
    if is_untitled:
        return f"untitled:{os.path.basename(str(path))}"
    return Path(path).resolve().as_uri()


class NotebookSession:
    def __init__(
        self,
        path: Union[str, Path],
        state: WorkspaceState,
        settings: Optional[SlideKernelSettings] = None,
        notifier: Optional[Notifier] = None,
        is_untitled: bool = False,
        strategy_factory: Optional[StrategyFactory] = None,
        probe: Optional[Callable[[str], Awaitable[bool]]] = None,
        installer: Optional[Callable[[str, Sequence[str]], Awaitable[None]]] = None,
        registrar: Optional[Callable[..., Awaitable[str]]] = None,
    ):
        self.path = Path(path)
        self.state = state
        self.settings = settings or default_settings
        self.notifier = notifier or Notifier()
        self.is_untitled = is_untitled
        self.uri = document_uri(self.path, is_untitled)

        self._strategy_factory = strategy_factory or self._default_strategy
        self._probe = probe or has_required_packages
        self._install = installer or install_packages
        self._register = registrar or register_kernel

        self.document: Optional[SlideDocument] = None
        self.manager: Optional[DocumentManager] = None
        self._unsubscribe: List[Callable[[], None]] = []

    def _default_strategy(
        self, document: SlideDocument, interpreter: Optional[str]
    ) -> KernelExecutionStrategy:
        return BackgroundServerStrategy(
            str(document.path),
            saved_interpreter=interpreter,
            is_untitled=document.is_untitled,
            settings=self.settings,
            notifier=self.notifier,
        )

    def _build_manager(self, interpreter: Optional[str]) -> DocumentManager:
        strategy = self._strategy_factory(self.document, interpreter)
        manager = DocumentManager(self.document, strategy, notifier=self.notifier)
        manager.on_kernel_changed(self._on_kernel_changed)
        return manager

    def _on_kernel_changed(self, kernel_name: Optional[str]) -> None:
        logger.info(f"[SESSION] Active kernel for {self.uri} is now {kernel_name}")

    @property
    def is_configured(self) -> bool:
        return self.manager is not None and self.manager.is_strategy_initialized()

    async def open(self, start_kernel: bool = True) -> Optional[DocumentManager]:
        """
        Load the document and try to start a kernel for it.

        With start_kernel=False only the document is loaded; the caller is
        expected to follow up with select_environment().
        """
        self.document = SlideDocument.load(self.path, is_untitled=self.is_untitled)
        self._restore_slide_index()
        self._unsubscribe.append(self.document.content_changed.subscribe(self._persist_slide_index))
        if not start_kernel:
            return None

        saved = self.state.get_interpreter(self.uri)
        logger.info(f"[SESSION] Opening {self.uri}", saved_interpreter=saved)
        self.manager = self._build_manager(saved)
        try:
            await self.manager.initialize()
        except SlideKernelError as e:
            # The user was already notified; the document stays open unconfigured
            logger.warning(f"[SESSION] Initial kernel startup failed for {self.uri}: {e}")
        return self.manager

    def _restore_slide_index(self) -> None:
        index = self.state.get_slide_index(self.uri)
        if isinstance(index, int) and 0 <= index < len(self.document.cells):
            self.document.current_slide_index = index

    def _persist_slide_index(self) -> None:
        self.state.set_slide_index(self.uri, self.document.current_slide_index)

    async def select_environment(self, python_path: Optional[str]) -> bool:
        """
        Configure the notebook to run on `python_path`.

        Installs the kernel packages when missing, registers the kernel,
        replaces the running manager and only then remembers the choice.
        """
        if not python_path:
            return False
        if self.document is None:
            raise SlideKernelError("Notebook session is not open.")

        logger.info(f"[SESSION] Configuring environment: {os.path.basename(python_path)}")
        try:
            if not await self._probe(python_path):
                self.notifier.info("Installing 'ipykernel' package...")
                await self._install(python_path, self.settings.INSTALL_PACKAGES)
            await self._register(python_path, settings=self.settings)

            if self.manager is not None:
                await self.manager.dispose()
            self.manager = self._build_manager(python_path)
            await self.manager.initialize()
        except SlideKernelError as e:
            logger.error(f"[SESSION] Error during environment handling: {e}")
            self.notifier.error(f"Failed to configure environment: {e}")
            return False

        self.notifier.info(
            f"Successfully started server with {self.manager.get_active_kernel_display_name()}"
        )
        self.state.set_interpreter(self.uri, python_path)
        return True

    def available_kernels(self) -> List[KernelChoice]:
        if self.manager is None:
            return []
        return kernel_choices(
            self.manager.get_available_kernel_specs(),
            self.manager.get_active_kernel_name(),
            self.settings.KERNEL_NAME_PREFIX,
        )

    async def switch_kernel(self, kernel_name: str, python_path: Optional[str] = None) -> bool:
        """Switch to another kernel on the running server; remembers its interpreter on success."""
        if self.manager is None or not self.manager.is_strategy_initialized():
            self.notifier.error("Cannot switch kernel: No active kernel session.")
            return False
        if kernel_name == self.manager.get_active_kernel_name():
            return True

        if not await self.manager.switch_kernel_session(kernel_name):
            return False

        if python_path is None:
            spec = self.manager.get_available_kernel_specs().get(kernel_name)
            python_path = spec.interpreter_path if spec else None
        if python_path:
            self.state.set_interpreter(self.uri, python_path)
        return True

    async def close(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()
        if self.manager is not None:
            manager, self.manager = self.manager, None
            await manager.dispose()
