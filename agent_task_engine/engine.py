"""Engine facade wiring the planner, resolver and scheduler for one request at a time."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

import structlog

from .capabilities import CapabilityRegistry, create_default_registry
from .config import EngineConfig, create_default_config, load_config
from .exceptions import BatchExecutionError, EngineError, PlanningError
from .ledger import ExecutionLedger, RecordKind, create_ledger, safe_append
from .logging_config import LogContext
from .models import ExecutionContext, Message, Task, TaskGraph, TaskState, TaskType
from .optimizer import new_task_id
from .oracle import AnthropicOracle, ReasoningOracle
from .planner import TaskPlanner
from .resolver import DependencyResolver
from .reporting import ReportFormat, ResultProcessor, summarize
from .scheduler import BatchReport, TaskScheduler

logger = structlog.get_logger()


@dataclass
class EngineResult:
    """Outcome of one ``TaskEngine.run`` call."""

    request: str
    answer: str
    graph: TaskGraph
    report: BatchReport
    planned: bool = False
    record_id: str = ""
    duration_seconds: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.report.ok

    def summary(self) -> str:
        """One-line success/failure summary."""
        return summarize(self.graph).describe()

    def render(self, fmt: ReportFormat | str = ReportFormat.MARKDOWN) -> str:
        return ResultProcessor().generate_report(self.graph, fmt, request=self.request, report=self.report)

    async def save_report(
        self,
        path: str | Path,
        fmt: ReportFormat | str = ReportFormat.MARKDOWN,
        processor: Optional[ResultProcessor] = None,
    ) -> Path:
        """Write the report; relative paths go under the processor's output directory."""
        processor = processor or ResultProcessor()
        return await processor.save_report(self.graph, path, fmt, request=self.request, report=self.report)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request": self.request,
            "answer": self.answer,
            "planned": self.planned,
            "success": self.success,
            "record_id": self.record_id,
            "duration_seconds": self.duration_seconds,
            "graph": self.graph.to_dict(),
            "report": self.report.to_dict(),
        }


class TaskEngine:
    """
    Runs requests end to end: plan if needed, resolve waves, execute.

    Example:
        >>> async with await TaskEngine.create(config_path="engine.yaml") as engine:
        ...     result = await engine.run("Research and compare vector databases")
        ...     print(result.answer)
    """

    def __init__(
        self,
        config: EngineConfig,
        oracle: ReasoningOracle,
        ledger: ExecutionLedger,
        registry: Optional[CapabilityRegistry] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.config = config
        self.session_id = session_id or uuid4().hex
        self.agent_id = f"agent_{uuid4().hex[:8]}"
        self.oracle = oracle
        self.ledger = ledger
        self.registry = registry if registry is not None else create_default_registry(config.capabilities)
        self.history: list[Message] = []

        self.planner = TaskPlanner(
            oracle,
            ledger,
            length_threshold=config.planning.length_threshold,
            capabilities=self.registry.names(),
        )
        self.resolver = DependencyResolver()
        self.scheduler = TaskScheduler(
            oracle,
            ledger,
            self.registry,
            planner=self.planner,
            resolver=self.resolver,
        )

    @classmethod
    async def create(
        cls,
        config: Optional[EngineConfig] = None,
        config_path: Optional[str | Path] = None,
        api_key: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> TaskEngine:
        """
        Build an engine backed by the Anthropic oracle.

        Args:
            config: Ready configuration (takes precedence over ``config_path``)
            config_path: YAML file to load when ``config`` is not given
            api_key: Anthropic API key overriding the configuration
            session_id: Session id for the ledger; generated if omitted

        Raises:
            EngineError: If initialization fails
        """
        try:
            if config is None:
                config = load_config(config_path) if config_path else create_default_config()
            session_id = session_id or uuid4().hex
            oracle = AnthropicOracle.from_config(config.llm, api_key=api_key)
            ledger = create_ledger(config.ledger, session_id)
        except EngineError:
            raise
        except Exception as e:
            raise EngineError(f"Failed to initialize engine: {e}", error_code="INIT_ERROR") from e

        engine = cls(config, oracle, ledger, session_id=session_id)
        logger.info(
            "engine_created",
            session_id=session_id,
            model=config.llm.model,
            capabilities=engine.registry.names(),
        )
        return engine

    def new_context(
        self,
        agent_name: Optional[str] = None,
        parent_record_id: str = "",
        messages: Optional[list[Message]] = None,
    ) -> ExecutionContext:
        """Execution context for this engine's agent, carrying the conversation so far."""
        return ExecutionContext(
            config=self.config,
            agent_id=self.agent_id,
            agent_name=agent_name or self.config.agent.name,
            session_id=self.session_id,
            parent_record_id=parent_record_id,
            messages=list(self.history) if messages is None else list(messages),
        )

    async def run(self, message: str, context: Optional[ExecutionContext] = None) -> EngineResult:
        """
        Handle one request.

        Raises:
            PlanningError: If planning fails (depth exceeded or oracle unreachable)
            BatchExecutionError: If ``execution.raise_on_failure`` is set and a task failed
        """
        context = context or self.new_context()
        start = time.monotonic()

        with LogContext(session_id=context.session_id, agent_id=context.agent_id):
            record_id = await safe_append(self.ledger, RecordKind.AGENT_EXECUTION, {
                "parent_id": context.parent_record_id,
                "session_id": context.session_id,
                "agent_id": context.agent_id,
                "agent_name": context.agent_name,
                "status": "started",
                "message": message,
            })
            run_context = replace(context, parent_record_id=record_id or context.parent_record_id)

            try:
                planned = self.planner.needs_plan(message)
                if planned:
                    graph = await self.planner.plan(message, run_context)
                    batch_context = replace(
                        run_context,
                        parent_record_id=graph.metadata.get("record_id") or run_context.parent_record_id,
                    )
                else:
                    graph = self._direct_graph(message)
                    batch_context = run_context

                logger.info("run_started", planned=planned, task_count=len(graph.tasks))
                report = await self.scheduler.execute_batch(graph.tasks, batch_context)
            except (PlanningError, BatchExecutionError) as e:
                await self._record_run(run_context, record_id, "failed", error=str(e))
                raise

            answer = final_answer(graph)
            await self._record_run(
                run_context,
                record_id,
                "completed" if report.ok else "failed",
                answer=answer,
                report=report.to_dict(),
            )

            self.history.append(Message("user", message))
            self.history.append(Message("assistant", answer))

            duration = time.monotonic() - start
            logger.info("run_completed", ok=report.ok, duration_seconds=round(duration, 2))

            return EngineResult(
                request=message,
                answer=answer,
                graph=graph,
                report=report,
                planned=planned,
                record_id=record_id,
                duration_seconds=duration,
            )

    def _direct_graph(self, message: str) -> TaskGraph:
        task = Task(
            id=new_task_id(0),
            name="Direct answer",
            description=message,
            type=TaskType.PLAIN,
            state=TaskState.WAIT,
        )
        return TaskGraph(
            tasks=[task],
            dependencies=TaskGraph.build_dependency_map([task]),
            summary="Answered directly without planning",
        )

    async def _record_run(
        self,
        context: ExecutionContext,
        start_record_id: str,
        status: str,
        **extra: Any,
    ) -> None:
        await safe_append(self.ledger, RecordKind.AGENT_EXECUTION, {
            "parent_id": start_record_id,
            "session_id": context.session_id,
            "agent_id": context.agent_id,
            "status": status,
            **extra,
        })

    async def close(self) -> None:
        """Release the oracle client, capabilities and ledger."""
        await self.oracle.close()
        await self.registry.close()
        await self.ledger.close()

    async def __aenter__(self) -> TaskEngine:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def final_answer(graph: TaskGraph) -> str:
    """Result of the last successful task, in plan order."""
    for task in reversed(graph.tasks):
        if task.state == TaskState.SUCCESS and task.result is not None:
            result = task.result
            return result if isinstance(result, str) else str(result)
    return ""
