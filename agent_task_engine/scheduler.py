"""
Execution scheduler.

Runs tasks through the ``wait -> running -> success | fail`` state machine,
dispatching on task type, and executes whole batches wave by wave with
optional bounded parallelism inside a wave.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Sequence

import aiofiles
import structlog

from .capabilities import CapabilityRegistry
from .exceptions import BatchExecutionError, ExecutionError, TaskExecutionError, TaskTimeoutError
from .ledger import ExecutionLedger, RecordKind, safe_append
from .logging_config import LogContext, log_task_event
from .models import ExecutionContext, Message, Task, TaskState, TaskType
from .optimizer import infer_task_type
from .oracle import ReasoningOracle
from .resolver import DependencyResolver

if TYPE_CHECKING:
    from .planner import TaskPlanner

logger = structlog.get_logger()

Handler = Callable[[Task, ExecutionContext], Awaitable[Any]]

PREDECESSOR_RESULT_LIMIT = 4000

_FUNCTION_TAG = re.compile(r"<function_call>(.*?)</function_call>", re.IGNORECASE | re.DOTALL)
_AGENT_TAG = re.compile(r"<agent_call>(.*?)</agent_call>", re.IGNORECASE | re.DOTALL)
_CALL = re.compile(r"([A-Za-z_][\w.\-]*)\s*\((.*)\)", re.DOTALL)
_BARE_NAME = re.compile(r"^[A-Za-z_][\w.\-]*$")


@dataclass
class FunctionCall:
    """A capability call parsed from a task's process text."""

    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    positional: List[Any] = field(default_factory=list)


@dataclass
class BatchReport:
    """Outcome of ``execute_batch``."""

    waves: List[List[str]] = field(default_factory=list)
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    unresolved: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.unresolved

    def raise_for_failures(self) -> None:
        """Raise ``BatchExecutionError`` if any task failed or could not be scheduled."""
        if self.ok:
            return
        parts = []
        if self.failed:
            parts.append(f"{len(self.failed)} task(s) failed")
        if self.unresolved:
            parts.append(f"{len(self.unresolved)} task(s) had unresolvable dependencies")
        raise BatchExecutionError("Batch finished with errors: " + ", ".join(parts), report=self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "waves": self.waves,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "unresolved": self.unresolved,
            "ok": self.ok,
        }


class TaskScheduler:
    """
    Executes single tasks and dependency-ordered batches.

    Example:
        >>> scheduler = TaskScheduler(oracle, ledger, registry)
        >>> report = await scheduler.execute_batch(graph.tasks, context)
        >>> report.ok
        True
    """

    def __init__(
        self,
        oracle: ReasoningOracle,
        ledger: ExecutionLedger,
        registry: CapabilityRegistry,
        planner: Optional[TaskPlanner] = None,
        resolver: Optional[DependencyResolver] = None,
    ) -> None:
        self._oracle = oracle
        self._ledger = ledger
        self._registry = registry
        self._planner = planner
        self._resolver = resolver or DependencyResolver()

        self._handlers: Dict[TaskType, Handler] = {
            TaskType.PLAIN: self._execute_plain,
            TaskType.FUNCTION_CALL: self._execute_function_call,
            TaskType.DELEGATE_CALL: self._execute_delegate_call,
            TaskType.DELEGATE_SPAWN: self._execute_delegate_spawn,
        }
        missing = [t.value for t in TaskType if t not in self._handlers]
        if missing:
            raise ExecutionError(f"No handler for task types: {missing}", error_code="NO_HANDLER")

    def register_handler(self, task_type: TaskType, handler: Handler) -> None:
        """Replace the handler used for ``task_type``."""
        self._handlers[task_type] = handler

    # Single task

    async def execute_task(self, task: Task, context: ExecutionContext) -> Any:
        """
        Run one task to a terminal state.

        Returns:
            The handler result, also stored in ``task.result``

        Raises:
            Whatever the handler raised, after the task is marked failed.
            ``TaskTimeoutError`` if ``execution.task_timeout`` elapsed.
        """
        if task.type is None:
            task.type = infer_task_type(task.process)

        task.mark_running()
        task.record_id = await safe_append(self._ledger, RecordKind.SUBTASK_EXECUTION, {
            **self._payload(context),
            "parent_id": context.parent_record_id,
            "task_id": task.id,
            "task_name": task.name,
            "task_type": task.type.value,
            "status": "started",
            "delegation_chain": list(context.delegation_chain),
        })

        timeout = context.config.execution.task_timeout
        start = time.monotonic()

        with LogContext(task_id=task.id):
            log_task_event("start", task.id, task_type=task.type.value)
            try:
                call = self._run_handler(task, context)
                if timeout:
                    result = await asyncio.wait_for(call, timeout=timeout)
                else:
                    result = await call
            except asyncio.CancelledError:
                task.mark_failed("cancelled")
                await self._record_completion(task, context, start)
                raise
            except asyncio.TimeoutError as e:
                error = TaskTimeoutError(
                    f"Task {task.id} timed out after {timeout}s",
                    error_code="TIMEOUT",
                )
                await self._record_failure(task, context, error, start)
                raise error from e
            except Exception as e:
                await self._record_failure(task, context, e, start)
                raise

            task.mark_success(result)
            if context.config.execution.save_output:
                await self._save_output(task, context)
            await self._record_completion(task, context, start)
            log_task_event(
                "complete",
                task.id,
                task_type=task.type.value,
                state=task.state.value,
                duration_ms=round((time.monotonic() - start) * 1000, 1),
            )
            return result

    async def _run_handler(self, task: Task, context: ExecutionContext) -> Any:
        """Dispatch on type. A TimeoutError from the handler itself is not the task deadline."""
        try:
            return await self._handlers[task.type](task, context)
        except (asyncio.TimeoutError, TimeoutError) as e:
            raise TaskExecutionError(
                f"Task {task.id} handler timed out: {str(e) or type(e).__name__}",
                error_code="HANDLER_TIMEOUT",
            ) from e

    async def _record_failure(
        self,
        task: Task,
        context: ExecutionContext,
        error: BaseException,
        start: float,
    ) -> None:
        message = str(error) or type(error).__name__
        task.mark_failed(message)
        await safe_append(self._ledger, RecordKind.ERROR, {
            **self._payload(context),
            "parent_id": task.record_id,
            "task_id": task.id,
            "error": message,
            "error_type": type(error).__name__,
        })
        await self._record_completion(task, context, start)
        log_task_event(
            "complete",
            task.id,
            task_type=task.type.value if task.type else None,
            state=task.state.value,
            error=message,
        )

    async def _record_completion(self, task: Task, context: ExecutionContext, start: float) -> None:
        await safe_append(self._ledger, RecordKind.SUBTASK_EXECUTION, {
            **self._payload(context),
            "parent_id": context.parent_record_id,
            "start_record_id": task.record_id,
            "task_id": task.id,
            "status": task.state.value,
            "state_message": task.state_message,
            "output_location": task.output_location,
            "duration_ms": round((time.monotonic() - start) * 1000, 1),
        })

    async def _save_output(self, task: Task, context: ExecutionContext) -> None:
        output_dir = Path(context.config.execution.output_dir)
        path = output_dir / f"{context.session_id or 'session'}_{task.id}.txt"
        content = task.result if isinstance(task.result, str) else json.dumps(task.result, default=str, indent=2)
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, "w", encoding="utf-8") as f:
                await f.write(content)
        except OSError as e:
            logger.warning("task_output_not_saved", task_id=task.id, path=str(path), error=str(e))
            return
        task.output_location = str(path)

    # Handlers

    async def _execute_plain(self, task: Task, context: ExecutionContext) -> str:
        messages = [Message("system", self._system_prompt(context))]
        messages.extend(context.recent_messages(context.config.planning.history_window))
        messages.append(Message("user", self._task_prompt(task, context)))

        response = await self._oracle.infer(messages, context.llm_params)

        await safe_append(self._ledger, RecordKind.LLM_CALL, {
            **self._payload(context),
            "parent_id": task.record_id,
            "task_id": task.id,
            "model": response.model or context.llm_params.model,
            "prompt": messages[-1].content,
            "response": response.text,
            "usage": response.usage.to_dict(),
        })
        return response.text

    async def _execute_function_call(self, task: Task, context: ExecutionContext) -> Any:
        call = parse_function_call(task.process or task.description)
        capability = self._registry.get(call.name)
        task.metadata["capability"] = call.name

        args = dict(call.args)
        if call.positional:
            free = [name for name in capability.get_schema().parameters if name not in args]
            if len(call.positional) > len(free):
                raise TaskExecutionError(
                    f"Too many positional arguments for '{call.name}'",
                    error_code="BAD_CALL",
                )
            args.update(zip(free, call.positional))

        capability.validate(args)
        result = await capability.invoke(args)

        await safe_append(self._ledger, RecordKind.FUNCTION_CALL, {
            **self._payload(context),
            "parent_id": task.record_id,
            "task_id": task.id,
            "capability": call.name,
            "args": args,
            "result": result,
        })
        return result

    async def _execute_delegate_call(self, task: Task, context: ExecutionContext) -> str:
        persona, request = parse_delegate_call(task.process, default_request=task.description)

        messages = [
            Message(
                "system",
                f"You are {persona}, a specialist agent. "
                f"{context.agent_name or 'An agent'} has delegated a request to you. "
                "Answer it thoroughly and stay within your specialty.",
            ),
            Message("user", self._delegate_prompt(task, request)),
        ]
        response = await self._oracle.infer(messages, context.llm_params)

        await safe_append(self._ledger, RecordKind.AGENT_EXECUTION, {
            **self._payload(context),
            "parent_id": task.record_id,
            "task_id": task.id,
            "delegate": persona,
            "request": request,
            "response": response.text,
            "usage": response.usage.to_dict(),
        })
        return response.text

    async def _execute_delegate_spawn(self, task: Task, context: ExecutionContext) -> Any:
        spawned = context.spawn(task.name or task.id, parent_record_id=task.record_id)
        planning = context.config.planning

        if (
            planning.recursive
            and self._planner is not None
            and context.depth + 1 < len(planning.budget)
            and self._planner.needs_plan(task.description)
        ):
            nested = spawned.descend()
            graph = await self._planner.plan(task.description, nested)
            nested.parent_record_id = graph.metadata.get("record_id") or nested.parent_record_id

            logger.info(
                "nested_batch_started",
                task_id=task.id,
                depth=nested.depth,
                task_count=len(graph.tasks),
            )
            report = await self.execute_batch(graph.tasks, nested)
            task.metadata["nested_report"] = report.to_dict()
            if not report.ok:
                raise TaskExecutionError(
                    f"{len(report.failed) + len(report.unresolved)} nested task(s) did not complete",
                    error_code="NESTED_FAILED",
                )
            return _combine_results(graph.tasks)

        return await self._execute_plain(task, spawned)

    # Batches

    def can_parallelize(self, tasks: Sequence[Task]) -> bool:
        """True if no task waits on another task of the group and none spawns a delegate."""
        ids = {task.id for task in tasks}
        for task in tasks:
            if task.predecessor and task.predecessor in ids:
                return False
            if task.type == TaskType.DELEGATE_SPAWN:
                return False
        return True

    async def execute_batch(self, tasks: Sequence[Task], context: ExecutionContext) -> BatchReport:
        """
        Execute ``tasks`` wave by wave.

        A failing task never aborts its siblings. With ``on_failure="stop"``
        no further waves are dispatched after a wave with failures.

        Returns:
            BatchReport describing every task

        Raises:
            BatchExecutionError: With ``execution.raise_on_failure``, after all waves
        """
        execution = context.config.execution
        resolution = self._resolver.resolve(tasks)
        report = BatchReport(
            waves=[[task.id for task in wave] for wave in resolution.waves],
            unresolved=[task.id for task in resolution.unresolved],
        )

        if resolution.unresolved:
            await safe_append(self._ledger, RecordKind.ERROR, {
                **self._payload(context),
                "parent_id": context.parent_record_id,
                "error": "unresolvable task dependencies",
                "task_ids": report.unresolved,
            })

        by_id = {task.id: task for task in tasks}
        stopped = False

        for index, wave in enumerate(resolution.waves):
            if stopped:
                report.skipped.extend(task.id for task in wave)
                continue

            runnable = []
            for task in wave:
                if task.is_terminal:
                    logger.debug("task_already_finished", task_id=task.id, state=task.state.value)
                    report.skipped.append(task.id)
                    continue
                self._attach_predecessor_result(task, by_id)
                runnable.append(task)

            parallel = execution.parallel and len(runnable) > 1 and self.can_parallelize(runnable)
            logger.debug(
                "wave_started",
                wave=index,
                size=len(runnable),
                mode="parallel" if parallel else "serial",
            )

            failures_before = len(report.failed)
            if parallel:
                semaphore = asyncio.Semaphore(execution.max_workers)

                async def worker(task: Task) -> None:
                    async with semaphore:
                        await self._run_reported(task, context, report)

                await asyncio.gather(*(worker(task) for task in runnable))
            else:
                for task in runnable:
                    await self._run_reported(task, context, report)

            if len(report.failed) > failures_before and execution.on_failure == "stop":
                logger.warning("batch_stopped", wave=index, failed=len(report.failed))
                stopped = True

        logger.info(
            "batch_completed",
            waves=len(report.waves),
            succeeded=len(report.succeeded),
            failed=len(report.failed),
            skipped=len(report.skipped),
            unresolved=len(report.unresolved),
        )

        if execution.raise_on_failure:
            report.raise_for_failures()
        return report

    async def _run_reported(self, task: Task, context: ExecutionContext, report: BatchReport) -> None:
        try:
            await self.execute_task(task, context)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            report.failed[task.id] = task.state_message or str(e)
        else:
            report.succeeded.append(task.id)

    def _attach_predecessor_result(self, task: Task, by_id: Dict[str, Task]) -> None:
        predecessor = by_id.get(task.predecessor) if task.predecessor else None
        if predecessor is not None and predecessor.state == TaskState.SUCCESS and predecessor.result is not None:
            task.metadata["predecessor_result"] = _truncate(_as_text(predecessor.result))

    # Prompts

    def _payload(self, context: ExecutionContext) -> Dict[str, Any]:
        return {
            "session_id": context.session_id,
            "agent_id": context.agent_id,
            "agent_name": context.agent_name,
        }

    def _system_prompt(self, context: ExecutionContext) -> str:
        agent = context.config.agent
        name = context.agent_name or agent.name
        prompt = f"You are {name}. {agent.role_description}"
        if context.delegation_chain:
            prompt += f"\nYou are acting as: {' > '.join(context.delegation_chain)}"
        return prompt

    def _task_prompt(self, task: Task, context: ExecutionContext) -> str:
        lines = [f"Task: {task.name or task.id}", f"Description: {task.description}"]
        if task.process:
            lines.append(f"Approach: {task.process}")
        if task.metadata.get("predecessor_result"):
            lines.append("")
            lines.append("Result of the previous step:")
            lines.append(task.metadata["predecessor_result"])
        lines.append("")
        lines.append(f"Session: {context.session_id or 'n/a'}")
        lines.append("Complete this task and reply with the result only.")
        return "\n".join(lines)

    def _delegate_prompt(self, task: Task, request: str) -> str:
        prompt = request
        if task.metadata.get("predecessor_result"):
            prompt += "\n\nRelevant earlier result:\n" + task.metadata["predecessor_result"]
        return prompt


def parse_function_call(text: str) -> FunctionCall:
    """
    Parse ``name(k1=v1, k2="v2")`` out of a process string.

    Accepts ``<function_call>...</function_call>`` tags and a ``function:``
    prefix. Integers and floats are coerced, ``[...]`` is read as a JSON
    list, quoted values are kept verbatim, and anything else is a bare
    string. Commas inside quotes or brackets do not split arguments.

    Raises:
        TaskExecutionError: If no call can be found
    """
    body = text.strip()
    tagged = _FUNCTION_TAG.search(body)
    if tagged:
        body = tagged.group(1).strip()
    else:
        marker = body.lower().find("function:")
        if marker != -1:
            body = body[marker + len("function:"):].strip()

    match = _CALL.search(body)
    if match is None:
        if _BARE_NAME.match(body):
            return FunctionCall(name=body)
        raise TaskExecutionError(f"Cannot parse function call from: {text!r}", error_code="BAD_CALL")

    call = FunctionCall(name=match.group(1))
    for piece in _split_args(match.group(2)):
        key, sep, value = piece.partition("=")
        if sep and _BARE_NAME.match(key.strip()) and not _is_quoted(piece.strip()):
            call.args[key.strip()] = _coerce(value)
        else:
            call.positional.append(_coerce(piece))
    return call


def _split_args(raw: str) -> List[str]:
    pieces: List[str] = []
    current: List[str] = []
    quote = ""
    depth = 0

    for char in raw:
        if quote:
            current.append(char)
            if char == quote:
                quote = ""
            continue
        if char in ("'", '"'):
            quote = char
        elif char in "[({":
            depth += 1
        elif char in "])}":
            depth -= 1
        elif char == "," and depth == 0:
            pieces.append("".join(current).strip())
            current = []
            continue
        current.append(char)

    tail = "".join(current).strip()
    if tail:
        pieces.append(tail)
    return [p for p in pieces if p]


def _is_quoted(value: str) -> bool:
    return len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"')


def _coerce(raw: str) -> Any:
    value = raw.strip()
    if _is_quoted(value):
        return value[1:-1]
    if value.startswith("[") and value.endswith("]"):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value


def parse_delegate_call(process: str, default_request: str = "") -> tuple[str, str]:
    """
    Extract ``(persona, request)`` from ``<agent_call>Name: request</agent_call>``
    or ``agent: Name: request``. Missing parts fall back to a generic
    specialist and ``default_request``.
    """
    body = ""
    tagged = _AGENT_TAG.search(process or "")
    if tagged:
        body = tagged.group(1).strip()
    else:
        marker = (process or "").lower().find("agent:")
        if marker != -1:
            body = process[marker + len("agent:"):].strip()

    persona, sep, request = body.partition(":")
    persona = persona.strip()
    request = request.strip() if sep else ""
    if not sep and len(persona.split()) > 4:
        # Too long for a persona name: it is the request itself.
        persona, request = "", persona

    return persona or "Specialist", request or default_request


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def _truncate(text: str) -> str:
    if len(text) <= PREDECESSOR_RESULT_LIMIT:
        return text
    return text[:PREDECESSOR_RESULT_LIMIT] + "..."


def _combine_results(tasks: Sequence[Task]) -> str:
    return "\n\n".join(
        _as_text(task.result)
        for task in tasks
        if task.state == TaskState.SUCCESS and task.result is not None
    )
