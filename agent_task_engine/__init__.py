"""
Agent Task Engine

Plans natural-language requests into task graphs with a language model,
orders them into dependency waves and executes them with bounded
concurrency, recording every step in an execution ledger.

Example:
    >>> from agent_task_engine import TaskEngine
    >>> async with await TaskEngine.create() as engine:
    ...     result = await engine.run("Research and summarise recent work on RAG")
"""

__version__ = "1.0.0"
__author__ = "Agent Task Engine Contributors"

from .capabilities import Capability, CapabilityRegistry, CapabilitySchema, create_default_registry
from .config import ConfigLoader, EngineConfig, create_default_config, load_config
from .engine import EngineResult, TaskEngine
from .exceptions import (
    BatchExecutionError,
    CapabilityError,
    CapabilityExecutionError,
    CapabilityNotFoundError,
    CapabilityValidationError,
    ConfigurationError,
    EngineError,
    ExecutionError,
    InvalidTransitionError,
    LedgerError,
    OracleError,
    PlanningDepthExceededError,
    PlanningError,
    PlanningTransportError,
    TaskExecutionError,
    TaskTimeoutError,
)
from .ledger import ExecutionLedger, InMemoryLedger, JSONLLedger, RecordKind, create_ledger
from .logging_config import configure_logging, get_logger
from .models import ExecutionContext, LLMParams, Message, Task, TaskGraph, TaskState, TaskType, TokenUsage
from .optimizer import infer_task_type, optimize_plan
from .oracle import AnthropicOracle, OracleResponse, ReasoningOracle
from .planner import TaskPlanner
from .reporting import ExecutionSummary, ReportFormat, ResultProcessor
from .resolver import DependencyResolver, Resolution
from .scheduler import BatchReport, TaskScheduler

__all__ = [
    "__version__",
    # Engine
    "TaskEngine",
    "EngineResult",
    # Core
    "TaskPlanner",
    "DependencyResolver",
    "Resolution",
    "TaskScheduler",
    "BatchReport",
    "ResultProcessor",
    "ReportFormat",
    "ExecutionSummary",
    "optimize_plan",
    "infer_task_type",
    # Models
    "Task",
    "TaskGraph",
    "TaskState",
    "TaskType",
    "ExecutionContext",
    "Message",
    "LLMParams",
    "TokenUsage",
    # Collaborators
    "ReasoningOracle",
    "AnthropicOracle",
    "OracleResponse",
    "Capability",
    "CapabilitySchema",
    "CapabilityRegistry",
    "create_default_registry",
    "ExecutionLedger",
    "InMemoryLedger",
    "JSONLLedger",
    "RecordKind",
    "create_ledger",
    # Config and logging
    "EngineConfig",
    "ConfigLoader",
    "load_config",
    "create_default_config",
    "configure_logging",
    "get_logger",
    # Exceptions
    "EngineError",
    "ConfigurationError",
    "InvalidTransitionError",
    "OracleError",
    "LedgerError",
    "PlanningError",
    "PlanningDepthExceededError",
    "PlanningTransportError",
    "ExecutionError",
    "TaskExecutionError",
    "TaskTimeoutError",
    "BatchExecutionError",
    "CapabilityError",
    "CapabilityNotFoundError",
    "CapabilityValidationError",
    "CapabilityExecutionError",
]
