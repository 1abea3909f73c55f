"""Plan optimizer: normalises a freshly parsed task list before execution."""

from __future__ import annotations

import copy
import uuid
from datetime import datetime
from typing import Iterable

import structlog

from .models import Task, TaskState, TaskType

logger = structlog.get_logger()

# Checked in order; the first marker found wins.
_TYPE_MARKERS: list[tuple[tuple[str, ...], TaskType]] = [
    (("<function_call>", "function:"), TaskType.FUNCTION_CALL),
    (("<agent_call>", "agent:"), TaskType.DELEGATE_CALL),
    (("<agent_gen>",), TaskType.DELEGATE_SPAWN),
]


def new_task_id(index: int) -> str:
    return f"task_{index}_{uuid.uuid4().hex[:8]}"


def infer_task_type(process: str) -> TaskType:
    """Infer a task type from markers in its process text."""
    lowered = (process or "").lower()
    for markers, task_type in _TYPE_MARKERS:
        if any(marker in lowered for marker in markers):
            return task_type
    return TaskType.PLAIN


def optimize_plan(tasks: Iterable[Task]) -> list[Task]:
    """
    Clean up a planned task list.

    Drops tasks with blank descriptions and later duplicates of an earlier
    description, then fills in missing ids, states and types. A predecessor
    that named a dropped duplicate is pointed at the kept first occurrence.
    Works on copies; the input tasks are left untouched.

    Args:
        tasks: Tasks as produced by the planner

    Returns:
        New list of normalised tasks, in input order
    """
    kept: list[Task] = []
    first_by_description: dict[str, Task] = {}
    # dropped duplicate id -> kept first occurrence
    replaced_by: dict[str, Task] = {}
    dropped = 0

    for original in tasks:
        description = original.description.strip()
        if not description:
            dropped += 1
            continue
        if description in first_by_description:
            dropped += 1
            if original.id:
                replaced_by[original.id] = first_by_description[description]
            continue
        task = copy.deepcopy(original)
        first_by_description[description] = task
        kept.append(task)

    now = datetime.now()
    for index, task in enumerate(kept):
        if not task.id:
            task.id = new_task_id(index)
        if task.state is None:
            task.state = TaskState.WAIT
        if task.type is None:
            task.type = infer_task_type(task.process)
        task.created_at = now
        task.updated_at = now

    if replaced_by:
        kept_ids = {task.id for task in kept}
        for task in kept:
            target = replaced_by.get(task.predecessor)
            if target is None or task.predecessor in kept_ids:
                continue
            task.predecessor = "" if target is task else target.id

    if dropped:
        logger.debug("plan_optimized", kept=len(kept), dropped=dropped)

    return kept
