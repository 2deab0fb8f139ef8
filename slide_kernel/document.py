"""
Slide Document
==============

An .ipynb notebook presented as a deck of slides (one cell per slide).

Undoable edits are recorded as explicit command entries in a linear history.
Each entry carries the data needed both to apply and to invert itself, so
undo/redo never depend on closures over mutable document state. A new edit
drops any redo tail.

Execution results and execution-order resets are NOT undoable edits; they are
bookkeeping written by the execution orchestrator.
"""

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import nbformat
import structlog

from .notifications import Signal

logger = structlog.get_logger(__name__)

EDITOR_METADATA_KEY = "slide_show_editor"

NEW_CODE_SOURCE = "# New Code Cell"
NEW_MARKDOWN_SOURCE = "# New Markdown Slide"


def _source_text(source: Union[str, List[str], None]) -> str:
    if isinstance(source, list):
        return "".join(source)
    return source or ""


# ----------------------------------------------------------------------
# Edit log entries
# ----------------------------------------------------------------------


@dataclass
class EditSource:
    index: int
    old_source: str
    new_source: str
    label: str = "Edit Cell Content"

    def apply(self, doc: "SlideDocument") -> None:
        doc.notebook.cells[self.index]["source"] = self.new_source

    def invert(self, doc: "SlideDocument") -> None:
        doc.notebook.cells[self.index]["source"] = self.old_source


@dataclass
class InsertCell:
    index: int
    cell: Dict[str, Any]
    previous_slide: int
    label: str = "Add Cell"

    def apply(self, doc: "SlideDocument") -> None:
        doc.notebook.cells.insert(self.index, self.cell)
        doc._slide_index = self.index

    def invert(self, doc: "SlideDocument") -> None:
        del doc.notebook.cells[self.index]
        doc._slide_index = doc._clamp(self.previous_slide)


@dataclass
class DeleteCell:
    index: int
    cell: Dict[str, Any]
    previous_slide: int
    next_slide: int
    label: str = "Delete Cell"

    def apply(self, doc: "SlideDocument") -> None:
        del doc.notebook.cells[self.index]
        doc._slide_index = doc._clamp(self.next_slide)

    def invert(self, doc: "SlideDocument") -> None:
        doc.notebook.cells.insert(self.index, self.cell)
        doc._slide_index = doc._clamp(self.previous_slide)


@dataclass
class CellOutputState:
    index: int
    outputs: List[Any]
    execution_count: Optional[int]
    editor_metadata: Optional[Dict[str, Any]]


@dataclass
class ClearOutputs:
    """Snapshot of every cell the clear touched, enough to put them back."""

    cleared: List[CellOutputState] = field(default_factory=list)
    label: str = "Clear All Outputs"

    def apply(self, doc: "SlideDocument") -> None:
        for state in self.cleared:
            cell = doc.notebook.cells[state.index]
            if cell.get("cell_type") == "code":
                cell["outputs"] = []
                cell["execution_count"] = None
            cell.get("metadata", {}).pop(EDITOR_METADATA_KEY, None)

    def invert(self, doc: "SlideDocument") -> None:
        for state in self.cleared:
            cell = doc.notebook.cells[state.index]
            if cell.get("cell_type") == "code":
                cell["outputs"] = copy.deepcopy(state.outputs)
                cell["execution_count"] = state.execution_count
            if state.editor_metadata is not None:
                cell.setdefault("metadata", {})[EDITOR_METADATA_KEY] = copy.deepcopy(
                    state.editor_metadata
                )


Edit = Union[EditSource, InsertCell, DeleteCell, ClearOutputs]


# ----------------------------------------------------------------------
# Document
# ----------------------------------------------------------------------


class SlideDocument:
    """Notebook data, current slide and edit history for one open document."""

    def __init__(
        self,
        path: Union[str, Path],
        notebook: Optional[nbformat.NotebookNode] = None,
        is_untitled: bool = False,
    ):
        self.path = Path(path)
        self.is_untitled = is_untitled
        self.notebook = notebook if notebook is not None else nbformat.v4.new_notebook()
        self._slide_index = 0
        self._execution_order = 0
        self._history: List[Edit] = []
        self._cursor = 0

        self.content_changed = Signal("content-changed")
        self.document_changed = Signal("document-changed")

    @classmethod
    def load(cls, path: Union[str, Path], is_untitled: bool = False) -> "SlideDocument":
        return cls(path, cls._read_notebook(Path(path)), is_untitled=is_untitled)

    @staticmethod
    def _read_notebook(path: Path) -> nbformat.NotebookNode:
        if not path.exists() or path.stat().st_size == 0:
            return nbformat.v4.new_notebook()
        try:
            with open(path, "r", encoding="utf-8") as f:
                return nbformat.read(f, as_version=4)
        except ValueError as e:
            logger.error(f"Error parsing notebook {path}: {e}")
            return nbformat.v4.new_notebook()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def cells(self) -> List[Dict[str, Any]]:
        return self.notebook.cells

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.notebook.metadata

    def _clamp(self, index: int) -> int:
        if not self.cells:
            return 0
        return max(0, min(index, len(self.cells) - 1))

    @property
    def current_slide_index(self) -> int:
        return self._slide_index

    @current_slide_index.setter
    def current_slide_index(self, index: int) -> None:
        new_index = self._clamp(index)
        if new_index != self._slide_index:
            self._slide_index = new_index
            self.content_changed.fire()

    def current_slide(self) -> Optional[Dict[str, Any]]:
        if not self.cells:
            return None
        return self.cells[self._slide_index]

    @property
    def execution_order(self) -> int:
        return self._execution_order

    # ------------------------------------------------------------------
    # Edit history
    # ------------------------------------------------------------------

    def _record(self, edit: Edit) -> None:
        edit.apply(self)
        del self._history[self._cursor:]
        self._history.append(edit)
        self._cursor = len(self._history)
        self.content_changed.fire()
        self.document_changed.fire(edit)

    @property
    def can_undo(self) -> bool:
        return self._cursor > 0

    @property
    def can_redo(self) -> bool:
        return self._cursor < len(self._history)

    def undo(self) -> Optional[Edit]:
        if not self.can_undo:
            return None
        self._cursor -= 1
        edit = self._history[self._cursor]
        edit.invert(self)
        self.content_changed.fire()
        return edit

    def redo(self) -> Optional[Edit]:
        if not self.can_redo:
            return None
        edit = self._history[self._cursor]
        edit.apply(self)
        self._cursor += 1
        self.content_changed.fire()
        return edit

    # ------------------------------------------------------------------
    # Undoable edits
    # ------------------------------------------------------------------

    def update_cell_source(self, index: int, new_source: str) -> None:
        if not 0 <= index < len(self.cells):
            logger.warning(f"update_cell_source: invalid index {index}")
            return
        old_source = _source_text(self.cells[index].get("source"))
        if old_source == new_source:
            return
        self._record(EditSource(index, old_source, new_source))

    def insert_cell(self, index: int, cell_type: str = "code") -> None:
        if not 0 <= index <= len(self.cells):
            logger.warning(f"insert_cell: invalid index {index}")
            return
        if cell_type == "code":
            cell = nbformat.v4.new_code_cell(source=NEW_CODE_SOURCE)
        else:
            cell = nbformat.v4.new_markdown_cell(source=NEW_MARKDOWN_SOURCE)
        self._record(InsertCell(index, cell, self._slide_index))

    def add_cell_before(self, index: int, cell_type: str = "code") -> None:
        self.insert_cell(index, cell_type)

    def add_cell_after(self, index: int, cell_type: str = "code") -> None:
        self.insert_cell(index + 1, cell_type)

    def delete_cell(self, index: int) -> None:
        if not 0 <= index < len(self.cells):
            logger.warning(f"delete_cell: invalid index {index}")
            return
        before = self._slide_index
        remaining = len(self.cells) - 1
        if remaining == 0:
            after = 0
        elif before == index:
            after = min(index, remaining - 1)
        elif before > index:
            after = before - 1
        else:
            after = before
        self._record(DeleteCell(index, self.cells[index], before, after))

    def clear_all_outputs(self) -> None:
        cleared = []
        for i, cell in enumerate(self.cells):
            has_outputs = cell.get("cell_type") == "code" and bool(cell.get("outputs"))
            editor_meta = cell.get("metadata", {}).get(EDITOR_METADATA_KEY)
            if has_outputs or editor_meta is not None:
                cleared.append(
                    CellOutputState(
                        index=i,
                        outputs=copy.deepcopy(cell.get("outputs") or []),
                        execution_count=cell.get("execution_count"),
                        editor_metadata=copy.deepcopy(editor_meta),
                    )
                )
        if not cleared:
            return
        self._record(ClearOutputs(cleared))

    # ------------------------------------------------------------------
    # Execution bookkeeping (not undoable)
    # ------------------------------------------------------------------

    def update_cell_execution_result(
        self, index: int, outputs: List[Any], execution: Dict[str, Any]
    ) -> None:
        """Store outputs, the next execution count and the run summary on a code cell."""
        if not 0 <= index < len(self.cells):
            return
        cell = self.cells[index]
        if cell.get("cell_type") != "code":
            return

        self._execution_order += 1
        cell["execution_count"] = self._execution_order
        cell["outputs"] = list(outputs)
        cell.setdefault("metadata", {})[EDITOR_METADATA_KEY] = {"execution": dict(execution)}
        self.content_changed.fire()

    def reset_execution_order(self) -> None:
        self._execution_order = 0
        for cell in self.cells:
            if cell.get("cell_type") == "code":
                cell["execution_count"] = None
        self.content_changed.fire()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, destination: Optional[Union[str, Path]] = None) -> Path:
        target = Path(destination) if destination is not None else self.path
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w", encoding="utf-8") as f:
            nbformat.write(self.notebook, f)
        if destination is not None:
            self.path = target
            self.is_untitled = False
        logger.info(f"Document saved to {target}")
        return target

    def revert(self) -> None:
        """Reload from disk and go back to the first slide. History is dropped."""
        self.notebook = self._read_notebook(self.path)
        self._slide_index = 0
        self._history.clear()
        self._cursor = 0
        self.content_changed.fire()
