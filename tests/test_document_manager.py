"""
Tests for DocumentManager: the busy gate, Run All halting, restart
bookkeeping and per-cell execution summaries.
"""

import asyncio
from typing import Any, Dict, List, Optional

import nbformat
import pytest

from slide_kernel.document import EDITOR_METADATA_KEY, SlideDocument
from slide_kernel.document_manager import BUSY_MESSAGE, DocumentManager
from slide_kernel.errors import RestartFailed
from slide_kernel.notifications import RecordingNotifier, Signal
from slide_kernel.strategy import KernelExecutionStrategy, cell_source


def stream(text):
    return nbformat.v4.new_output("stream", name="stdout", text=text)


def error_output():
    return nbformat.v4.new_output("error", ename="ValueError", evalue="boom", traceback=[])


class ScriptedStrategy(KernelExecutionStrategy):
    """Returns canned outputs; cells whose source starts with 'fail' produce an error."""

    def __init__(self):
        self.executed: List[str] = []
        self.restarts = 0
        self.switched: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.restart_error: Optional[Exception] = None
        self.kernel_name = "python3"
        self._changed = Signal("kernel-changed")
        self._initialized = False

    async def initialize(self):
        self._initialized = True

    async def execute_cell(self, cell: Dict[str, Any]) -> List[Any]:
        source = cell_source(cell)
        self.executed.append(source)
        if self.gate is not None:
            await self.gate.wait()
        if source.startswith("fail"):
            return [error_output()]
        return [stream(f"{source}\n")]

    async def restart_kernel(self):
        if self.restart_error is not None:
            raise self.restart_error
        self.restarts += 1

    async def switch_kernel_session(self, kernel_name):
        self.switched.append(kernel_name)
        self.kernel_name = kernel_name
        self._changed.fire(kernel_name)

    def get_available_kernel_specs(self):
        return {}

    def get_active_kernel_name(self):
        return self.kernel_name

    def get_active_kernel_display_name(self):
        return self.kernel_name

    def on_kernel_changed(self, callback):
        return self._changed.subscribe(callback)

    @property
    def is_initialized(self):
        return self._initialized

    async def dispose(self):
        self._initialized = False


def make_document(*sources, markdown_at=()):
    nb = nbformat.v4.new_notebook()
    for i, source in enumerate(sources):
        if i in markdown_at:
            nb.cells.append(nbformat.v4.new_markdown_cell(source))
        else:
            nb.cells.append(nbformat.v4.new_code_cell(source))
    return SlideDocument("/work/deck.ipynb", nb)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def strategy():
    return ScriptedStrategy()


@pytest.mark.asyncio
class TestRunCell:
    async def test_run_cell_records_outputs_and_summary(self, strategy, notifier):
        doc = make_document("a", "b")
        manager = DocumentManager(doc, strategy, notifier)

        await manager.run_cell(1)

        cell = doc.cells[1]
        assert cell.outputs[0]["text"] == "b\n"
        assert cell.execution_count == 1
        summary = cell.metadata[EDITOR_METADATA_KEY]["execution"]
        assert summary["success"] is True
        assert summary["duration"].endswith("s")
        float(summary["duration"][:-1])
        assert doc.cells[0].outputs == []

    async def test_failed_cell_summary(self, strategy, notifier):
        doc = make_document("fail here")
        manager = DocumentManager(doc, strategy, notifier)

        await manager.run_cell(0)

        assert doc.cells[0].metadata[EDITOR_METADATA_KEY]["execution"]["success"] is False

    async def test_markdown_and_out_of_range_are_ignored(self, strategy, notifier):
        doc = make_document("# Title", "x", markdown_at=(0,))
        manager = DocumentManager(doc, strategy, notifier)

        await manager.run_cell(0)
        await manager.run_cell(5)

        assert strategy.executed == []
        assert not manager.is_busy

    async def test_execution_counts_increase(self, strategy, notifier):
        doc = make_document("a", "b")
        manager = DocumentManager(doc, strategy, notifier)

        await manager.run_cell(1)
        await manager.run_cell(0)

        assert doc.cells[1].execution_count == 1
        assert doc.cells[0].execution_count == 2


@pytest.mark.asyncio
class TestBusyGate:
    async def test_second_operation_is_refused_while_busy(self, strategy, notifier):
        doc = make_document("a", "b")
        manager = DocumentManager(doc, strategy, notifier)
        strategy.gate = asyncio.Event()

        first = asyncio.create_task(manager.run_cell(0))
        while not strategy.executed:
            await asyncio.sleep(0)
        assert manager.is_busy

        await manager.run_cell(1)
        await manager.restart_kernel()

        assert strategy.executed == ["a"]
        assert strategy.restarts == 0
        assert manager.is_busy
        assert notifier.of_level("info") == [BUSY_MESSAGE, BUSY_MESSAGE]

        strategy.gate.set()
        await first
        assert not manager.is_busy

    async def test_clear_outputs_refused_while_busy(self, strategy, notifier):
        doc = make_document("a")
        manager = DocumentManager(doc, strategy, notifier)
        await manager.run_cell(0)
        strategy.gate = asyncio.Event()

        task = asyncio.create_task(manager.run_cell(0))
        while len(strategy.executed) < 2:
            await asyncio.sleep(0)
        manager.clear_all_outputs()

        assert doc.cells[0].outputs != []
        assert notifier.of_level("info") == [BUSY_MESSAGE]
        strategy.gate.set()
        await task

    async def test_busy_state_events(self, strategy, notifier):
        doc = make_document("a")
        manager = DocumentManager(doc, strategy, notifier)
        states = []
        manager.on_busy_state_changed.subscribe(states.append)

        await manager.run_cell(0)

        assert states == [True, False]

    async def test_errors_are_reported_and_clear_busy(self, strategy, notifier):
        doc = make_document("a")
        manager = DocumentManager(doc, strategy, notifier)
        strategy.restart_error = RestartFailed("Failed to restart kernel. Status: 500, Body: dead")

        await manager.restart_kernel()

        assert not manager.is_busy
        assert notifier.of_level("error") == ["Failed to restart kernel. Status: 500, Body: dead"]

    async def test_error_without_message_gets_generic_text(self, strategy, notifier):
        doc = make_document("a")
        manager = DocumentManager(doc, strategy, notifier)
        strategy.restart_error = RuntimeError()

        await manager.restart_kernel()

        assert notifier.of_level("error") == ["An unexpected error occurred."]


@pytest.mark.asyncio
class TestRunAll:
    async def test_run_all_halts_at_first_failure(self, strategy, notifier):
        doc = make_document("a", "fail", "c")
        manager = DocumentManager(doc, strategy, notifier)

        halted = await manager.run_all_cells()

        assert halted == 1
        assert strategy.executed == ["a", "fail"]
        assert doc.cells[2].outputs == []
        assert doc.cells[2].execution_count is None
        assert EDITOR_METADATA_KEY not in doc.cells[2].metadata
        assert notifier.of_level("error") == ["Execution failed at slide 2. Halting Run All."]
        assert not manager.is_busy

    async def test_run_all_skips_markdown(self, strategy, notifier):
        doc = make_document("# Intro", "a", "b", markdown_at=(0,))
        manager = DocumentManager(doc, strategy, notifier)

        assert await manager.run_all_cells() is None
        assert strategy.executed == ["a", "b"]
        assert [c.get("execution_count") for c in doc.cells[1:]] == [1, 2]


@pytest.mark.asyncio
class TestKernelOperations:
    async def test_restart_clears_outputs_and_numbering(self, strategy, notifier):
        doc = make_document("a", "b")
        manager = DocumentManager(doc, strategy, notifier)
        await manager.run_all_cells()

        await manager.restart_kernel()

        assert strategy.restarts == 1
        assert all(c.outputs == [] and c.execution_count is None for c in doc.cells)
        assert doc.execution_order == 0
        await manager.run_cell(1)
        assert doc.cells[1].execution_count == 1

    async def test_switch_kernel(self, strategy, notifier):
        manager = DocumentManager(make_document("a"), strategy, notifier)
        changes = []
        manager.on_kernel_changed(changes.append)

        assert await manager.switch_kernel_session("other") is True

        assert manager.get_active_kernel_name() == "other"
        assert changes == ["other"]

    async def test_switch_failure_returns_false(self, strategy, notifier):
        async def broken(kernel_name):
            raise RuntimeError("nope")

        strategy.switch_kernel_session = broken
        manager = DocumentManager(make_document("a"), strategy, notifier)

        assert await manager.switch_kernel_session("other") is False
        assert notifier.of_level("error") == ["nope"]

    async def test_lifecycle_passthrough(self, strategy, notifier):
        manager = DocumentManager(make_document("a"), strategy, notifier)
        assert not manager.is_strategy_initialized()

        await manager.initialize()
        assert manager.is_strategy_initialized()

        await manager.dispose()
        assert not manager.is_strategy_initialized()
