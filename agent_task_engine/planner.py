"""
Planning engine.

Turns a natural-language request into a ``TaskGraph`` with one oracle call:
decides whether decomposition is worth it, prompts the oracle for a JSON
plan, parses it tolerantly, falls back to a keyword-derived plan when the
response is unusable, and brackets the attempt with ledger records.

Recursion depth is carried by ``ExecutionContext`` so a single planner
instance can serve concurrent requests.
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Optional, Sequence

import structlog

from .exceptions import OracleError, PlanningDepthExceededError, PlanningTransportError
from .ledger import ExecutionLedger, RecordKind, safe_append
from .models import ExecutionContext, Message, Task, TaskGraph, TaskState, TaskType
from .optimizer import new_task_id, optimize_plan
from .oracle import ReasoningOracle

logger = structlog.get_logger()

MULTI_STEP_KEYWORDS = (
    "analyze", "analyse", "compare", "generate", "create", "build",
    "research", "investigate", "design", "implement", "evaluate", "report",
    "multiple", "steps", "first", "then", "finally", "process",
)

SIMPLE_PREFIXES = (
    "what is", "who is", "when", "where", "define", "tell me", "show me", "list",
)

SYSTEM_PROMPT = """You are a task planner. Break the user's request into a small set of concrete, ordered subtasks.

Rules:
1. Each subtask must be specific and have a distinct description
2. A subtask may wait for at most one earlier subtask ("dependent")
3. Stay within the subtask limit you are given
4. Choose a type for every subtask:
   - task: answered directly by the language model
   - function: calls a capability; write the call in "process" as
     function: name(key=value, ...)
   - agent_call: delegated to a specialist persona; write "process" as
     agent: Persona: request
   - agent_gen: a larger piece of work handled by a new sub-agent

Respond with JSON only, in this shape:
{
  "tasks": [
    {
      "sub_task_id": "t1",
      "sub_task_name": "Short name",
      "sub_task_describe": "What this subtask must achieve",
      "process": "How to carry it out",
      "sub_task_type": "task|function|agent_call|agent_gen",
      "dependent": "sub_task_id of the subtask this one waits for, or empty"
    }
  ],
  "summary": "One sentence describing the plan"
}"""

REVISE_SYSTEM_PROMPT = (
    "You revise task plans based on feedback. Keep the same JSON format as the "
    "original plan and respond with JSON only."
)

# Keys consumed into Task fields; anything else in a task object lands in metadata.
_CONSUMED_KEYS = {
    "sub_task_id", "id",
    "sub_task_name", "name",
    "sub_task_describe", "description",
    "process",
    "sub_task_type", "type",
    "dependent", "predecessor", "dependencies",
}

_STEP_ALIAS = re.compile(r"^step[\s_#-]*(\d+)$")


class TaskPlanner:
    """
    Decomposes requests into task graphs.

    Example:
        >>> planner = TaskPlanner(oracle, ledger)
        >>> if planner.needs_plan(message):
        ...     graph = await planner.plan(message, context)
    """

    def __init__(
        self,
        oracle: ReasoningOracle,
        ledger: ExecutionLedger,
        length_threshold: int = 100,
        capabilities: Optional[Sequence[str]] = None,
    ) -> None:
        self._oracle = oracle
        self._ledger = ledger
        self.length_threshold = length_threshold
        self.capabilities = list(capabilities or [])

    def needs_plan(self, message: str) -> bool:
        """Heuristic: does this request benefit from decomposition?"""
        lowered = message.lower().strip()

        if any(keyword in lowered for keyword in MULTI_STEP_KEYWORDS):
            return True
        if len(message) > self.length_threshold:
            return True
        if lowered.startswith(SIMPLE_PREFIXES):
            return False
        return True

    def optimize_plan(self, tasks: Sequence[Task]) -> list[Task]:
        return optimize_plan(tasks)

    async def plan(self, message: str, context: ExecutionContext) -> TaskGraph:
        """
        Produce a task graph for ``message`` at ``context.depth``.

        Args:
            message: The request to decompose
            context: Execution context; its depth selects the budget entry

        Returns:
            Optimised task graph, never empty

        Raises:
            PlanningDepthExceededError: If the budget has no entry for this depth
            PlanningTransportError: If the oracle call fails or times out
        """
        planning = context.config.planning
        if context.depth >= len(planning.budget):
            raise PlanningDepthExceededError(context.depth, len(planning.budget))

        max_tasks = planning.budget[context.depth]
        base_payload = self._base_payload(context)

        start_record_id = await safe_append(self._ledger, RecordKind.PLANNING, {
            **base_payload,
            "status": "started",
            "message": message,
            "max_tasks": max_tasks,
        })

        logger.info(
            "planning_started",
            depth=context.depth,
            max_tasks=max_tasks,
            session_id=context.session_id,
        )

        messages = [
            Message("system", self._system_prompt()),
            Message("user", self._build_prompt(message, context, max_tasks)),
        ]
        text = await self._call_oracle(messages, context, base_payload, start_record_id)

        parsed = parse_plan_response(text)
        tasks = optimize_plan(parsed[0]) if parsed else []
        summary = parsed[1] if parsed else ""
        fallback = not tasks

        if fallback:
            logger.warning("planning_fallback", depth=context.depth, response_chars=len(text))
            tasks = optimize_plan(fallback_plan(message))
            summary = f"Fallback plan with {len(tasks)} task(s) for: {message}"

        if len(tasks) > max_tasks:
            logger.warning(
                "plan_truncated",
                proposed=len(tasks),
                max_tasks=max_tasks,
                depth=context.depth,
            )
            tasks = tasks[:max_tasks]

        graph = TaskGraph(
            tasks=tasks,
            dependencies=TaskGraph.build_dependency_map(tasks),
            summary=summary,
            metadata={
                "depth": context.depth,
                "fallback": fallback,
                "start_record_id": start_record_id,
            },
        )

        graph.metadata["record_id"] = await safe_append(self._ledger, RecordKind.PLANNING, {
            **base_payload,
            "status": "completed",
            "start_record_id": start_record_id,
            "fallback": fallback,
            "plan": graph.to_dict(),
        })

        logger.info(
            "planning_completed",
            depth=context.depth,
            task_count=len(tasks),
            fallback=fallback,
        )
        return graph

    async def revise_plan(
        self,
        graph: TaskGraph,
        feedback: str,
        context: ExecutionContext,
    ) -> TaskGraph:
        """Ask the oracle to revise ``graph``. An unusable answer keeps the original plan."""
        planning = context.config.planning
        depth = graph.metadata.get("depth", context.depth)
        max_tasks = planning.budget[min(depth, len(planning.budget) - 1)]
        base_payload = self._base_payload(context)

        current = [
            {
                "sub_task_id": task.id,
                "sub_task_name": task.name,
                "sub_task_describe": task.description,
                "process": task.process,
                "sub_task_type": task.type.value if task.type else "",
                "dependent": task.predecessor,
            }
            for task in graph.tasks
        ]
        prompt = (
            "Revise this plan based on the feedback.\n\n"
            f"Original plan:\n{json.dumps({'tasks': current, 'summary': graph.summary}, indent=2)}\n\n"
            f"Feedback: {feedback}\n\n"
            f"Use no more than {max_tasks} subtasks."
        )
        messages = [Message("system", REVISE_SYSTEM_PROMPT), Message("user", prompt)]
        text = await self._call_oracle(messages, context, base_payload, graph.metadata.get("record_id", ""))

        parsed = parse_plan_response(text)
        tasks = optimize_plan(parsed[0])[:max_tasks] if parsed else []
        if not tasks:
            logger.warning("plan_revision_unusable", task_count=len(graph.tasks))
            return graph

        revised = TaskGraph(
            tasks=tasks,
            dependencies=TaskGraph.build_dependency_map(tasks),
            summary=parsed[1] or graph.summary,
            metadata={**graph.metadata, "fallback": False, "revised": True, "feedback": feedback},
        )
        revised.metadata["record_id"] = await safe_append(self._ledger, RecordKind.PLANNING, {
            **base_payload,
            "status": "revised",
            "revised_from": graph.metadata.get("record_id", ""),
            "feedback": feedback,
            "plan": revised.to_dict(),
        })
        return revised

    async def _call_oracle(
        self,
        messages: list[Message],
        context: ExecutionContext,
        base_payload: dict[str, Any],
        start_record_id: str,
    ) -> str:
        timeout = context.config.planning.timeout
        try:
            response = await asyncio.wait_for(
                self._infer(messages, context),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            await self._record_failure(base_payload, start_record_id, f"timed out after {timeout}s")
            raise PlanningTransportError(
                f"Planning timed out after {timeout}s",
                error_code="TIMEOUT",
            ) from e
        except Exception as e:
            # CancelledError is a BaseException and propagates untouched
            error = str(e) or type(e).__name__
            await self._record_failure(base_payload, start_record_id, error)
            raise PlanningTransportError(
                f"Planning oracle call failed: {error}",
                error_code="TRANSPORT",
            ) from e
        return response.text

    async def _infer(self, messages: list[Message], context: ExecutionContext) -> Any:
        """Oracle call whose own timeouts cannot be mistaken for the planning deadline."""
        try:
            return await self._oracle.infer(messages, context.llm_params)
        except (asyncio.TimeoutError, TimeoutError) as e:
            raise OracleError(f"Oracle call timed out: {e}", error_code="TIMEOUT") from e

    async def _record_failure(self, base_payload: dict[str, Any], start_record_id: str, error: str) -> None:
        logger.error("planning_failed", error=error)
        await safe_append(self._ledger, RecordKind.PLANNING, {
            **base_payload,
            "status": "failed",
            "start_record_id": start_record_id,
            "error": error,
        })

    def _base_payload(self, context: ExecutionContext) -> dict[str, Any]:
        return {
            "parent_id": context.parent_record_id,
            "session_id": context.session_id,
            "agent_id": context.agent_id,
            "agent_name": context.agent_name,
            "depth": context.depth,
        }

    def _system_prompt(self) -> str:
        if not self.capabilities:
            return SYSTEM_PROMPT
        return SYSTEM_PROMPT + "\n\nAvailable capabilities for function tasks: " + ", ".join(self.capabilities)

    def _build_prompt(self, message: str, context: ExecutionContext, max_tasks: int) -> str:
        lines = [
            f"User request: {message}",
            "",
            "Context:",
            f"- Agent: {context.agent_name or 'unknown'}",
            f"- Current depth: {context.depth}",
            f"- Max subtasks for this level: {max_tasks}",
        ]

        history = context.recent_messages(context.config.planning.history_window)
        if history:
            lines.append("")
            lines.append("Recent conversation:")
            lines.extend(f"- {m.role}: {m.content}" for m in history)

        lines.append("")
        lines.append(
            f"Create a plan of no more than {max_tasks} subtasks for this request, "
            "noting which subtask each one waits for."
        )
        return "\n".join(lines)


def parse_plan_response(text: str) -> Optional[tuple[list[Task], str]]:
    """
    Parse an oracle planning response.

    The JSON object is taken from the first ``{`` to the last ``}``.
    Predecessor references are rewritten to the generated task ids.

    Returns:
        ``(tasks, summary)``, or None if the text holds no usable plan object
    """
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None

    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError:
        return None

    if not isinstance(data, dict):
        return None
    raw_tasks = data.get("tasks", data.get("subtasks"))
    if not isinstance(raw_tasks, list):
        return None

    tasks: list[Task] = []
    aliases: dict[str, str] = {}
    raw_refs: list[list[str]] = []

    for raw in raw_tasks:
        if not isinstance(raw, dict):
            continue
        index = len(tasks)
        task = Task(
            id=new_task_id(index),
            name=_text(raw, "sub_task_name", "name"),
            description=_text(raw, "sub_task_describe", "description"),
            process=_text(raw, "process") or _text(raw, "execution_strategy"),
            type=TaskType.parse(raw.get("sub_task_type", raw.get("type"))),
            state=TaskState.WAIT,
            metadata={k: v for k, v in raw.items() if k not in _CONSUMED_KEYS},
        )

        source_id = _text(raw, "sub_task_id", "id")
        if source_id:
            task.metadata["source_id"] = source_id
            aliases.setdefault(source_id.lower(), task.id)
        if task.name:
            aliases.setdefault(task.name.lower(), task.id)
        aliases.setdefault(f"task_{index}", task.id)

        refs = _references(raw)
        if len(refs) > 1:
            task.metadata["dependencies"] = refs
        raw_refs.append(refs)
        tasks.append(task)

    for task, refs in zip(tasks, raw_refs):
        if refs:
            task.predecessor = _resolve_reference(refs[0], aliases, tasks)
        if task.predecessor == task.id:
            task.predecessor = ""

    summary = data.get("summary", "")
    return tasks, summary if isinstance(summary, str) else str(summary)


def _text(raw: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return str(value).strip()
    return ""


def _references(raw: dict[str, Any]) -> list[str]:
    for key in ("dependent", "predecessor", "dependencies"):
        value = raw.get(key)
        if value is None or value == "" or value == []:
            continue
        if isinstance(value, list):
            return [str(v).strip() for v in value if str(v).strip()]
        return [str(value).strip()]
    return []


def _resolve_reference(ref: str, aliases: dict[str, str], tasks: list[Task]) -> str:
    key = ref.strip().lower()
    if key in aliases:
        return aliases[key]

    # Bare numbers and "step 2" style references count from one.
    step = _STEP_ALIAS.match(key)
    number = int(key) if key.isdigit() else int(step.group(1)) if step else None
    if number is not None and 1 <= number <= len(tasks):
        return tasks[number - 1].id

    return ref


def fallback_plan(message: str) -> list[Task]:
    """Deterministic plan used when the oracle's answer cannot be used."""
    lowered = message.lower()

    if any(word in lowered for word in ("research", "analy", "investigate", "study")):
        steps = [
            ("Gather information", f"Collect relevant information and data for: {message}",
             TaskType.DELEGATE_CALL),
            ("Analyze findings", f"Analyze and organise the collected information for: {message}",
             TaskType.PLAIN),
            ("Write report", f"Produce a detailed report from the analysis of: {message}",
             TaskType.DELEGATE_SPAWN),
        ]
    elif any(word in lowered for word in ("generate", "create", "write", "build")):
        steps = [
            ("Clarify requirements", f"Identify the requirements and constraints of: {message}",
             TaskType.PLAIN),
            ("Generate content", f"Produce the requested output for: {message}",
             TaskType.DELEGATE_SPAWN),
            ("Review output", f"Check and refine the generated output for: {message}",
             TaskType.PLAIN),
        ]
    else:
        steps = [("Execute request", f"Carry out the request: {message}", TaskType.PLAIN)]

    tasks: list[Task] = []
    for index, (name, description, task_type) in enumerate(steps):
        tasks.append(Task(
            id=new_task_id(index),
            name=name,
            description=description,
            type=task_type,
            state=TaskState.WAIT,
            predecessor=tasks[-1].id if tasks else "",
            metadata={"fallback": True},
        ))
    return tasks
