"""
Execution Orchestrator
======================

DocumentManager drives a KernelExecutionStrategy on behalf of one
SlideDocument. Every kernel-affecting operation goes through a single busy
gate: while one is in flight, the next is refused with a notice and does
nothing.
"""

import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from .document import SlideDocument
from .models import ExecutionSummary, KernelSpec
from .notifications import Notifier, Signal
from .observability import get_tracer
from .strategy import KernelExecutionStrategy

logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)

BUSY_MESSAGE = "An operation is already in progress."


class DocumentManager:
    def __init__(
        self,
        document: SlideDocument,
        strategy: KernelExecutionStrategy,
        notifier: Optional[Notifier] = None,
    ):
        self.document = document
        self.strategy = strategy
        self.notifier = notifier or Notifier()
        self._busy = False
        self.on_busy_state_changed = Signal("busy-state-changed")

    @property
    def is_busy(self) -> bool:
        return self._busy

    async def _perform_busy_action(self, name: str, action: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run `action` holding the busy flag.

        Errors are shown to the user and swallowed here; the flag is always
        cleared afterwards.
        """
        if self._busy:
            self.notifier.info(BUSY_MESSAGE)
            return None

        self._busy = True
        self.on_busy_state_changed.fire(True)
        try:
            return await action()
        except Exception as e:
            logger.error(f"[DocumentManager] {name} failed: {e}", exc_info=True)
            self.notifier.error(str(e) or "An unexpected error occurred.")
            return None
        finally:
            self._busy = False
            self.on_busy_state_changed.fire(False)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        await self.strategy.initialize()

    async def dispose(self) -> None:
        await self.strategy.dispose()
        self.on_busy_state_changed.clear()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute_at(self, index: int) -> bool:
        cell = self.document.cells[index]
        with tracer.start_as_current_span("cell.execute") as span:
            span.set_attribute("cell.index", index)
            started = time.perf_counter()
            outputs = await self.strategy.execute_cell(cell)
            elapsed = time.perf_counter() - started
            success = not any(o.get("output_type") == "error" for o in outputs)
            span.set_attribute("cell.success", success)

        summary = ExecutionSummary(success=success, duration=f"{elapsed:.2f}s")
        self.document.update_cell_execution_result(index, outputs, summary.model_dump())
        logger.info(f"[DocumentManager] Cell {index} finished", success=success, duration=summary.duration)
        return success

    async def run_cell(self, index: int) -> None:
        async def action():
            if not 0 <= index < len(self.document.cells):
                return
            if self.document.cells[index].get("cell_type") != "code":
                return
            await self._execute_at(index)

        await self._perform_busy_action("run_cell", action)

    async def run_all_cells(self) -> Optional[int]:
        """
        Run code cells in order, stopping at the first failure.

        Returns the index of the cell that halted the run, or None.
        """

        async def action():
            logger.info("[DocumentManager] Starting Run All")
            for i in range(len(self.document.cells)):
                if self.document.cells[i].get("cell_type") != "code":
                    continue
                if not await self._execute_at(i):
                    self.notifier.error(f"Execution failed at slide {i + 1}. Halting Run All.")
                    return i
            return None

        return await self._perform_busy_action("run_all_cells", action)

    def clear_all_outputs(self) -> None:
        if self._busy:
            self.notifier.info(BUSY_MESSAGE)
            return
        self.document.clear_all_outputs()

    async def restart_kernel(self) -> None:
        async def action():
            self.notifier.info("Restarting Jupyter Kernel")
            await self.strategy.restart_kernel()
            self.document.clear_all_outputs()
            self.document.reset_execution_order()

        await self._perform_busy_action("restart_kernel", action)

    async def switch_kernel_session(self, kernel_name: str) -> bool:
        """Returns True when the switch went through."""

        async def action():
            await self.strategy.switch_kernel_session(kernel_name)
            return True

        return bool(await self._perform_busy_action("switch_kernel_session", action))

    # ------------------------------------------------------------------
    # Passthroughs
    # ------------------------------------------------------------------

    def is_strategy_initialized(self) -> bool:
        return self.strategy.is_initialized

    def get_active_kernel_name(self) -> Optional[str]:
        return self.strategy.get_active_kernel_name()

    def get_active_kernel_display_name(self) -> Optional[str]:
        return self.strategy.get_active_kernel_display_name()

    def get_available_kernel_specs(self) -> Dict[str, KernelSpec]:
        return self.strategy.get_available_kernel_specs()

    def on_kernel_changed(self, callback: Callable[[Optional[str]], Any]) -> Callable[[], None]:
        return self.strategy.on_kernel_changed(callback)
