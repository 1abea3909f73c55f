"""
Result reporting.

Turns an executed task graph into a markdown, JSON or plain-text report with
a success/failure summary, and saves reports to disk.
"""

from __future__ import annotations

import json
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

import aiofiles
import structlog

from .exceptions import EngineError
from .models import TaskGraph, TaskState

if TYPE_CHECKING:
    from .config import ReportingConfig
    from .scheduler import BatchReport

logger = structlog.get_logger()

OUTPUT_PREVIEW_LIMIT = 2000

STATUS_LABELS = {
    TaskState.SUCCESS: "✅ success",
    TaskState.FAIL: "❌ fail",
    TaskState.RUNNING: "🔄 running",
    TaskState.WAIT: "⏳ wait",
}


class ReportFormat(str, Enum):
    """Output format for reports."""
    MARKDOWN = "markdown"
    JSON = "json"
    TEXT = "text"


class ReportError(EngineError):
    """Exception raised when a report cannot be written."""
    pass


@dataclass
class TaskSummary:
    """One task's line in a report."""
    task_id: str
    task_name: str
    status: str
    task_type: str = ""
    output: Any = None
    error: str = ""
    capability: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_name": self.task_name,
            "status": self.status,
            "task_type": self.task_type,
            "output": self.output,
            "error": self.error,
            "capability": self.capability,
        }


@dataclass
class ExecutionSummary:
    """Counts over a task graph."""
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    pending: int = 0
    capabilities: List[str] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        return self.succeeded / self.total * 100 if self.total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_tasks": self.total,
            "successful_tasks": self.succeeded,
            "failed_tasks": self.failed,
            "pending_tasks": self.pending,
            "success_rate": round(self.success_rate, 1),
            "capabilities_used": self.capabilities,
        }

    def describe(self) -> str:
        text = (
            f"Completed: {self.total} task(s), {self.succeeded} succeeded, {self.failed} failed"
        )
        if self.pending:
            text += f", {self.pending} not run"
        if self.total:
            text += f" (success rate {self.success_rate:.1f}%)"
        if self.capabilities:
            text += f"; capabilities used: {', '.join(self.capabilities)}"
        return text


def summarize_tasks(graph: TaskGraph) -> List[TaskSummary]:
    summaries = []
    for task in graph.tasks:
        state = task.state or TaskState.WAIT
        summaries.append(TaskSummary(
            task_id=task.id,
            task_name=task.name or task.description[:60],
            status=state.value,
            task_type=task.type.value if task.type else "",
            output=task.result if state == TaskState.SUCCESS else None,
            error=task.state_message if state == TaskState.FAIL else "",
            capability=task.metadata.get("capability", ""),
        ))
    return summaries


def summarize(graph: TaskGraph) -> ExecutionSummary:
    """Success/failure counts and the capabilities used, in first-use order."""
    summary = ExecutionSummary(total=len(graph.tasks))
    for task in graph.tasks:
        if task.state == TaskState.SUCCESS:
            summary.succeeded += 1
        elif task.state == TaskState.FAIL:
            summary.failed += 1
        else:
            summary.pending += 1
        capability = task.metadata.get("capability")
        if capability and capability not in summary.capabilities:
            summary.capabilities.append(capability)
    return summary


def _preview(output: Any) -> str:
    text = output if isinstance(output, str) else json.dumps(output, default=str, indent=2)
    if len(text) > OUTPUT_PREVIEW_LIMIT:
        return text[:OUTPUT_PREVIEW_LIMIT] + "\n... (truncated)"
    return text


class ResultProcessor:
    """
    Renders and saves execution reports.

    Example:
        >>> processor = ResultProcessor(output_dir="./reports")
        >>> text = processor.generate_report(result.graph, ReportFormat.MARKDOWN)
        >>> path = await processor.save_report(result.graph, "run.md")
    """

    def __init__(
        self,
        output_dir: Union[str, Path] = "./reports",
        enable_backup: bool = True,
        max_file_size: int = 10 * 1024 * 1024,
    ) -> None:
        self.output_dir = Path(output_dir)
        self.enable_backup = enable_backup
        self.max_file_size = max_file_size

    @classmethod
    def from_config(cls, config: ReportingConfig) -> ResultProcessor:
        return cls(
            output_dir=config.output_dir,
            enable_backup=config.backup,
            max_file_size=config.max_file_size_mb * 1024 * 1024,
        )

    def generate_summary(self, graph: TaskGraph) -> str:
        return summarize(graph).describe()

    def generate_report(
        self,
        graph: TaskGraph,
        fmt: Union[ReportFormat, str] = ReportFormat.MARKDOWN,
        request: str = "",
        report: Optional[BatchReport] = None,
    ) -> str:
        """Render ``graph`` in ``fmt``. Unknown format names raise ``ValueError``."""
        fmt = ReportFormat(fmt)
        tasks = summarize_tasks(graph)
        summary = summarize(graph)
        unresolved = list(report.unresolved) if report else []

        if fmt == ReportFormat.JSON:
            return self._json_report(request, graph, tasks, summary, unresolved)
        if fmt == ReportFormat.TEXT:
            return self._text_report(request, tasks, summary, unresolved)
        return self._markdown_report(request, graph, tasks, summary, unresolved)

    def _markdown_report(
        self,
        request: str,
        graph: TaskGraph,
        tasks: List[TaskSummary],
        summary: ExecutionSummary,
        unresolved: List[str],
    ) -> str:
        lines = ["# Task Execution Report", ""]
        lines.append(f"**Generated**: {datetime.now():%Y-%m-%d %H:%M:%S}")
        if request:
            lines.append(f"**Request**: {request}")
        if graph.summary:
            lines.append(f"**Plan**: {graph.summary}")
        lines.append("")

        lines.extend(["## Summary", ""])
        lines.append(f"- **Total tasks**: {summary.total}")
        lines.append(f"- **Succeeded**: {summary.succeeded}")
        lines.append(f"- **Failed**: {summary.failed}")
        if summary.pending:
            lines.append(f"- **Not run**: {summary.pending}")
        if summary.total:
            lines.append(f"- **Success rate**: {summary.success_rate:.1f}%")
        if unresolved:
            lines.append(f"- **Unresolved dependencies**: {', '.join(unresolved)}")
        lines.append("")

        lines.extend(["## Tasks", ""])
        for index, task in enumerate(tasks, start=1):
            lines.append(f"### {index}. {task.task_name}")
            lines.append("")
            lines.append(f"- **ID**: `{task.task_id}`")
            lines.append(f"- **Status**: {STATUS_LABELS.get(TaskState(task.status), task.status)}")
            if task.capability:
                lines.append(f"- **Capability**: {task.capability}")
            if task.error:
                lines.append(f"- **Error**: {task.error}")
            if task.output is not None:
                lines.extend(["- **Output**:", "```", _preview(task.output), "```"])
            lines.append("")

        return "\n".join(lines)

    def _json_report(
        self,
        request: str,
        graph: TaskGraph,
        tasks: List[TaskSummary],
        summary: ExecutionSummary,
        unresolved: List[str],
    ) -> str:
        data = {
            "generated_at": datetime.now().isoformat(),
            "request": request,
            "plan_summary": graph.summary,
            "summary": summary.to_dict(),
            "unresolved": unresolved,
            "tasks": [t.to_dict() for t in tasks],
        }
        return json.dumps(data, default=str, indent=2, ensure_ascii=False)

    def _text_report(
        self,
        request: str,
        tasks: List[TaskSummary],
        summary: ExecutionSummary,
        unresolved: List[str],
    ) -> str:
        lines = ["Task Execution Report", "=" * 51, ""]
        lines.append(f"Generated: {datetime.now():%Y-%m-%d %H:%M:%S}")
        if request:
            lines.append(f"Request: {request}")
        lines.append("")
        lines.append(summary.describe())
        if unresolved:
            lines.append(f"Unresolved dependencies: {', '.join(unresolved)}")
        lines.append("")

        lines.extend(["Tasks:", "-" * 51])
        for index, task in enumerate(tasks, start=1):
            lines.append(f"{index}. {task.task_name}")
            lines.append(f"   ID: {task.task_id}")
            lines.append(f"   Status: {task.status}")
            if task.capability:
                lines.append(f"   Capability: {task.capability}")
            if task.error:
                lines.append(f"   Error: {task.error}")
            lines.append("")

        return "\n".join(lines)

    async def save_report(
        self,
        graph: TaskGraph,
        path: Union[str, Path],
        fmt: Union[ReportFormat, str] = ReportFormat.MARKDOWN,
        request: str = "",
        report: Optional[BatchReport] = None,
    ) -> Path:
        """
        Render and write a report.

        Relative paths are placed under ``output_dir``. An existing file is
        copied to ``<name>.backup.<timestamp>`` first when backups are enabled.

        Raises:
            ReportError: If the report is too large or cannot be written
        """
        content = self.generate_report(graph, fmt, request=request, report=report)
        return await self.write(content, path)

    async def write(self, content: str, path: Union[str, Path]) -> Path:
        target = Path(path)
        if not target.is_absolute():
            target = self.output_dir / target

        size = len(content.encode("utf-8"))
        if size > self.max_file_size:
            raise ReportError(
                f"Report size {size} exceeds maximum allowed size {self.max_file_size}",
                error_code="TOO_LARGE",
            )

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if self.enable_backup and target.exists():
                backup = target.with_name(f"{target.name}.backup.{datetime.now():%Y%m%d_%H%M%S_%f}")
                shutil.copy2(target, backup)
                logger.debug("report_backed_up", path=str(target), backup=str(backup))
            async with aiofiles.open(target, "w", encoding="utf-8") as f:
                await f.write(content)
        except OSError as e:
            raise ReportError(f"Failed to write report {target}: {e}", error_code="WRITE_FAILED") from e

        logger.info("report_saved", path=str(target), bytes=size)
        return target
