"""
Workspace document model: the ordered columns of an event board.

Every function takes the current columns and returns a new list; the input is
never modified. Column and task order is list order, so moving an item is a
splice.
"""
from typing import Callable, List, Optional, Sequence

from errors import NotFoundError, ValidationError
from schemas import Attachment, Column, Subtask, Task

Columns = List[Column]
Transform = Callable[[Columns], Columns]


def _require_text(value: str, what: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"{what} cannot be empty")
    return value.strip()


def _column_index(columns: Sequence[Column], column_id: str) -> int:
    for i, col in enumerate(columns):
        if col.id == column_id:
            return i
    raise NotFoundError("List not found", [column_id])


def _task_index(column: Column, task_id: str) -> int:
    for i, task in enumerate(column.tasks):
        if task.id == task_id:
            return i
    raise NotFoundError("Card not found", [task_id])


def _replace_task(columns: Sequence[Column], column_id: str, task_id: str,
                  edit: Callable[[Task], Optional[Task]]) -> Columns:
    """Rebuild columns with one task replaced by `edit(task)`, or dropped if it returns None."""
    ci = _column_index(columns, column_id)
    col = columns[ci]
    ti = _task_index(col, task_id)
    tasks = list(col.tasks)
    edited = edit(tasks[ti])
    if edited is None:
        del tasks[ti]
    else:
        tasks[ti] = edited
    updated = list(columns)
    updated[ci] = col.model_copy(update={"tasks": tasks})
    return updated


def dump_columns(columns: Sequence[Column]) -> list:
    """The stored form of the whole `columns` field."""
    return [col.model_dump(by_alias=True) for col in columns]


def find_task(columns: Sequence[Column], column_id: str, task_id: str) -> Task:
    col = columns[_column_index(columns, column_id)]
    return col.tasks[_task_index(col, task_id)]


# Lists
def add_column(columns: Sequence[Column], title: str) -> Columns:
    return [*columns, Column(title=_require_text(title, "List title"))]


def rename_column(columns: Sequence[Column], column_id: str, title: str) -> Columns:
    title = _require_text(title, "List title")
    ci = _column_index(columns, column_id)
    updated = list(columns)
    updated[ci] = columns[ci].model_copy(update={"title": title})
    return updated


def remove_column(columns: Sequence[Column], column_id: str) -> Columns:
    ci = _column_index(columns, column_id)
    return [col for i, col in enumerate(columns) if i != ci]


def move_column(columns: Sequence[Column], column_id: str, index: int) -> Columns:
    ci = _column_index(columns, column_id)
    updated = list(columns)
    col = updated.pop(ci)
    updated.insert(max(0, min(index, len(updated))), col)
    return updated


# Cards
def add_task(columns: Sequence[Column], column_id: str, text: str) -> Columns:
    task = Task(text=_require_text(text, "Card title"))
    ci = _column_index(columns, column_id)
    updated = list(columns)
    updated[ci] = columns[ci].model_copy(update={"tasks": [*columns[ci].tasks, task]})
    return updated


def remove_task(columns: Sequence[Column], column_id: str, task_id: str) -> Columns:
    return _replace_task(columns, column_id, task_id, lambda t: None)


def toggle_task(columns: Sequence[Column], column_id: str, task_id: str) -> Columns:
    return _replace_task(columns, column_id, task_id,
                         lambda t: t.model_copy(update={"completed": not t.completed}))


def save_task_details(columns: Sequence[Column], column_id: str, task: Task) -> Columns:
    """Replace the stored card with an edited copy carrying the same id."""
    _require_text(task.text, "Card title")
    return _replace_task(columns, column_id, task.id, lambda t: task.model_copy(deep=True))


def move_task(columns: Sequence[Column], column_id: str, task_id: str,
              to_column_id: str, index: int) -> Columns:
    dst = _column_index(columns, to_column_id)
    task = find_task(columns, column_id, task_id)
    # index is a position in the destination after the card is taken out
    updated = remove_task(columns, column_id, task_id)
    tasks = list(updated[dst].tasks)
    tasks.insert(max(0, min(index, len(tasks))), task)
    updated[dst] = updated[dst].model_copy(update={"tasks": tasks})
    return updated


# Checklist
def add_subtask(columns: Sequence[Column], column_id: str, task_id: str, text: str) -> Columns:
    subtask = Subtask(text=_require_text(text, "Checklist item"))
    return _replace_task(columns, column_id, task_id,
                         lambda t: t.model_copy(update={"subtasks": [*t.subtasks, subtask]}))


def _edit_subtask(task: Task, subtask_id: str, edit: Callable[[Subtask], Optional[Subtask]]) -> Task:
    for i, sub in enumerate(task.subtasks):
        if sub.id == subtask_id:
            subtasks = list(task.subtasks)
            edited = edit(sub)
            if edited is None:
                del subtasks[i]
            else:
                subtasks[i] = edited
            return task.model_copy(update={"subtasks": subtasks})
    raise NotFoundError("Checklist item not found", [subtask_id])


def toggle_subtask(columns: Sequence[Column], column_id: str, task_id: str, subtask_id: str) -> Columns:
    return _replace_task(columns, column_id, task_id, lambda t: _edit_subtask(
        t, subtask_id, lambda s: s.model_copy(update={"completed": not s.completed})))


def remove_subtask(columns: Sequence[Column], column_id: str, task_id: str, subtask_id: str) -> Columns:
    return _replace_task(columns, column_id, task_id,
                         lambda t: _edit_subtask(t, subtask_id, lambda s: None))


# Attachments
def add_attachment(columns: Sequence[Column], column_id: str, task_id: str, attachment: Attachment) -> Columns:
    return _replace_task(columns, column_id, task_id,
                         lambda t: t.model_copy(update={"attachments": [*t.attachments, attachment]}))


def remove_attachment(columns: Sequence[Column], column_id: str, task_id: str, attachment_id: str) -> Columns:
    def drop(task: Task) -> Task:
        remaining = [a for a in task.attachments if a.id != attachment_id]
        if len(remaining) == len(task.attachments):
            raise NotFoundError("Attachment not found", [attachment_id])
        return task.model_copy(update={"attachments": remaining})

    return _replace_task(columns, column_id, task_id, drop)
