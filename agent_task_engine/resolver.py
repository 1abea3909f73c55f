"""Dependency resolver: groups tasks into waves that can run together."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import structlog

from .models import Task

logger = structlog.get_logger()


@dataclass
class Resolution:
    """Execution waves plus the tasks that could never become eligible."""

    waves: list[list[Task]] = field(default_factory=list)
    unresolved: list[Task] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.unresolved

    @property
    def ordered(self) -> list[Task]:
        return [task for wave in self.waves for task in wave]


class DependencyResolver:
    """
    Iterative leveling over single-predecessor tasks.

    Each pass walks the remaining tasks in their original order and takes
    every task whose predecessor is empty, already placed in an earlier
    wave, or not part of the input at all. A pass that places nothing ends
    the loop; whatever is left over is part of a cycle or waits on one.
    """

    def resolve(self, tasks: Sequence[Task]) -> Resolution:
        known = {task.id for task in tasks}
        processed: set[str] = set()
        remaining = list(tasks)
        waves: list[list[Task]] = []

        while remaining:
            wave = [
                task for task in remaining
                if not task.predecessor
                or task.predecessor in processed
                or task.predecessor not in known
            ]
            if not wave:
                break

            waves.append(wave)
            processed.update(task.id for task in wave)
            remaining = [task for task in remaining if task.id not in processed]

        if remaining:
            logger.warning(
                "unresolvable_dependencies",
                task_ids=[task.id for task in remaining],
            )

        return Resolution(waves=waves, unresolved=remaining)

    def group(self, tasks: Sequence[Task]) -> list[list[Task]]:
        """Waves only; tasks that cannot be scheduled are left out."""
        return self.resolve(tasks).waves
