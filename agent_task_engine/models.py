"""Task graph data model for the Agent Task Engine."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from .exceptions import InvalidTransitionError

if TYPE_CHECKING:
    from .config import EngineConfig, LLMConfig


class TaskState(str, Enum):
    """Lifecycle state of a task."""

    WAIT = "wait"
    RUNNING = "running"
    SUCCESS = "success"
    FAIL = "fail"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.SUCCESS, TaskState.FAIL)


class TaskType(str, Enum):
    """Closed set of task execution types."""

    PLAIN = "task"
    FUNCTION_CALL = "function"
    DELEGATE_CALL = "agent_call"
    DELEGATE_SPAWN = "agent_gen"

    @classmethod
    def parse(cls, raw: Any) -> TaskType | None:
        """Map a free-form type tag onto a member, or None when unset/unknown."""
        if isinstance(raw, TaskType):
            return raw
        if not raw or not isinstance(raw, str):
            return None
        return _TASK_TYPE_ALIASES.get(raw.strip().lower().replace(" ", "_"))


_TASK_TYPE_ALIASES: dict[str, TaskType] = {
    "task": TaskType.PLAIN,
    "plain": TaskType.PLAIN,
    "plain-task": TaskType.PLAIN,
    "plain_task": TaskType.PLAIN,
    "execution": TaskType.PLAIN,
    "analysis": TaskType.PLAIN,
    "function": TaskType.FUNCTION_CALL,
    "function-call": TaskType.FUNCTION_CALL,
    "function_call": TaskType.FUNCTION_CALL,
    "tool": TaskType.FUNCTION_CALL,
    "agent_call": TaskType.DELEGATE_CALL,
    "delegate-call": TaskType.DELEGATE_CALL,
    "delegate_call": TaskType.DELEGATE_CALL,
    "research": TaskType.DELEGATE_CALL,
    "synthesis": TaskType.DELEGATE_CALL,
    "agent_gen": TaskType.DELEGATE_SPAWN,
    "delegate-spawn": TaskType.DELEGATE_SPAWN,
    "delegate_spawn": TaskType.DELEGATE_SPAWN,
    "generation": TaskType.DELEGATE_SPAWN,
}


@dataclass
class Message:
    """A conversation message."""

    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class TokenUsage:
    """Token usage tracking."""
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        """Get total token count."""
        return self.input_tokens + self.output_tokens

    def add(self, other: TokenUsage) -> None:
        """Add another TokenUsage to this one."""
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens

    def to_dict(self) -> dict[str, int]:
        """Convert to dictionary."""
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class LLMParams:
    """Sampling parameters passed to the reasoning oracle."""

    model: str
    temperature: float = 0.7
    max_tokens: int = 4096

    @classmethod
    def from_config(cls, config: LLMConfig) -> LLMParams:
        return cls(
            model=config.model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )


@dataclass
class Task:
    """A single unit of work in a task graph.

    ``type`` and ``state`` may be left unset by a planner; the plan optimizer
    fills them in. Only the execution scheduler moves ``state`` after
    hand-off.
    """

    id: str = ""
    name: str = ""
    description: str = ""
    process: str = ""
    type: TaskType | None = None
    predecessor: str = ""
    state: TaskState | None = None
    state_message: str = ""
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    output_location: str = ""
    record_id: str = ""
    result: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def has_predecessor(self) -> bool:
        return bool(self.predecessor)

    @property
    def is_terminal(self) -> bool:
        return self.state is not None and self.state.is_terminal

    def mark_running(self) -> None:
        """Move the task from wait to running."""
        if self.state not in (None, TaskState.WAIT):
            raise InvalidTransitionError(
                f"Task {self.id} cannot start from state '{self.state.value}'",
                error_code="INVALID_TRANSITION",
            )
        self.state = TaskState.RUNNING
        self.state_message = ""
        self.updated_at = datetime.now()

    def mark_success(self, result: Any = None) -> None:
        """Move the task from running to success."""
        self._finish(TaskState.SUCCESS)
        if result is not None:
            self.result = result

    def mark_failed(self, message: str) -> None:
        """Move the task from running to fail, keeping the reason."""
        if self._finish(TaskState.FAIL):
            self.state_message = message or "task failed"

    def _finish(self, target: TaskState) -> bool:
        if self.state == target:
            return False
        if self.state != TaskState.RUNNING:
            current = self.state.value if self.state else "unset"
            raise InvalidTransitionError(
                f"Task {self.id} cannot move from '{current}' to '{target.value}'",
                error_code="INVALID_TRANSITION",
            )
        self.state = target
        self.updated_at = datetime.now()
        return True

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "process": self.process,
            "type": self.type.value if self.type else "",
            "predecessor": self.predecessor,
            "state": self.state.value if self.state else "",
            "state_message": self.state_message,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "output_location": self.output_location,
            "record_id": self.record_id,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        """Create a task from a dictionary produced by ``to_dict``."""
        state = data.get("state")
        task = cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            description=data.get("description", ""),
            process=data.get("process", ""),
            type=TaskType.parse(data.get("type")),
            predecessor=data.get("predecessor", "") or "",
            state=TaskState(state) if state else None,
            state_message=data.get("state_message", ""),
            output_location=data.get("output_location", ""),
            record_id=data.get("record_id", ""),
            metadata=dict(data.get("metadata") or {}),
        )
        for key in ("created_at", "updated_at"):
            if data.get(key):
                setattr(task, key, datetime.fromisoformat(data[key]))
        return task


@dataclass
class TaskGraph:
    """Result of one planning attempt: ordered tasks plus derived predecessor map."""

    tasks: list[Task] = field(default_factory=list)
    dependencies: dict[str, list[str]] = field(default_factory=dict)
    summary: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def task_ids(self) -> list[str]:
        return [task.id for task in self.tasks]

    def get(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    @staticmethod
    def build_dependency_map(tasks: list[Task]) -> dict[str, list[str]]:
        """Map each task id to its predecessor ids (zero or one)."""
        return {
            task.id: [task.predecessor] if task.predecessor else []
            for task in tasks
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasks": [task.to_dict() for task in self.tasks],
            "dependencies": self.dependencies,
            "summary": self.summary,
            "metadata": self.metadata,
        }


@dataclass
class ExecutionContext:
    """Per-request runtime parameters shared by planning and execution.

    Read-only for the engine. Nested scopes are created with ``spawn`` and
    ``descend``, which return copies.
    """

    config: EngineConfig
    agent_id: str = ""
    agent_name: str = ""
    delegation_chain: list[str] = field(default_factory=list)
    session_id: str = ""
    parent_record_id: str = ""
    messages: list[Message] = field(default_factory=list)
    depth: int = 0

    def spawn(self, name: str, parent_record_id: str | None = None) -> ExecutionContext:
        """Copy with ``name`` appended to the delegation chain."""
        return replace(
            self,
            delegation_chain=[*self.delegation_chain, name],
            parent_record_id=self.parent_record_id if parent_record_id is None else parent_record_id,
            messages=list(self.messages),
        )

    def descend(self, parent_record_id: str | None = None) -> ExecutionContext:
        """Copy one planning level deeper."""
        return replace(
            self,
            depth=self.depth + 1,
            delegation_chain=list(self.delegation_chain),
            parent_record_id=self.parent_record_id if parent_record_id is None else parent_record_id,
            messages=list(self.messages),
        )

    def recent_messages(self, window: int) -> list[Message]:
        if window <= 0:
            return []
        return self.messages[-window:]

    @property
    def llm_params(self) -> LLMParams:
        return LLMParams.from_config(self.config.llm)
