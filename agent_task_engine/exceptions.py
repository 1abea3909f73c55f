"""Custom exceptions for the Agent Task Engine."""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, error_code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class ConfigurationError(EngineError):
    """Exception raised when configuration is invalid."""
    pass


class InvalidTransitionError(EngineError):
    """Exception raised when a task is moved to a state it cannot reach."""
    pass


class OracleError(EngineError):
    """Exception raised when the reasoning oracle call fails."""
    pass


class LedgerError(EngineError):
    """Exception raised when a ledger record cannot be written or read."""
    pass


class PlanningError(EngineError):
    """Exception raised for errors in task planning."""
    pass


class PlanningDepthExceededError(PlanningError):
    """Exception raised when the planning budget has no entry for the current depth."""

    def __init__(self, depth: int, budget_length: int) -> None:
        super().__init__("max planning depth reached", error_code="MAX_DEPTH")
        self.depth = depth
        self.budget_length = budget_length


class PlanningTransportError(PlanningError):
    """Exception raised when the oracle cannot be reached during planning."""
    pass


class ExecutionError(EngineError):
    """Exception raised for errors in task execution."""
    pass


class TaskExecutionError(ExecutionError):
    """Exception raised when a task handler fails."""
    pass


class TaskTimeoutError(ExecutionError):
    """Exception raised when a task exceeds its execution timeout."""
    pass


class BatchExecutionError(ExecutionError):
    """Exception raised when a batch finishes with failed tasks."""

    def __init__(self, message: str, report: Any = None) -> None:
        super().__init__(message, error_code="BATCH_FAILED")
        self.report = report


class CapabilityError(EngineError):
    """Exception raised for capability errors."""
    pass


class CapabilityNotFoundError(CapabilityError):
    """Exception raised when a requested capability is not registered."""
    pass


class CapabilityValidationError(CapabilityError):
    """Exception raised when capability arguments are invalid."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message, error_code="INVALID_ARGS")
        self.errors = errors or []


class CapabilityExecutionError(CapabilityError):
    """Exception raised when a capability fails while running."""
    pass
