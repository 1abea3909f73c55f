"""
Capability system for the Agent Task Engine.

Capabilities are named callables that function-call tasks invoke. The
registry is an explicit object handed to the scheduler; there is no global
instance.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import structlog

from ..exceptions import (
    CapabilityError,
    CapabilityExecutionError,
    CapabilityNotFoundError,
    CapabilityValidationError,
)
from ..logging_config import log_capability_call

if TYPE_CHECKING:
    from ..config import CapabilitiesConfig

logger = structlog.get_logger()


@dataclass
class CapabilitySchema:
    """Schema definition for a capability."""
    name: str
    description: str
    parameters: Dict[str, Any]
    required: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
            "required": self.required,
        }

    def to_claude_schema(self) -> Dict[str, Any]:
        """Convert to the Anthropic tool schema shape."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": {
                "type": "object",
                "properties": self.parameters,
                "required": self.required,
            },
        }


_TYPE_CHECKS = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
}


class Capability(ABC):
    """Abstract base class for all capabilities."""

    def __init__(self, name: str, description: str):
        self.name = name
        self.description = description
        self._call_count = 0
        self._total_time_ms = 0.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> Any:
        """Run the capability and return its result."""

    @abstractmethod
    def get_schema(self) -> CapabilitySchema:
        """Get the capability's schema definition."""

    def validate_args(self, args: Dict[str, Any]) -> List[str]:
        """Check arguments against the schema and return a list of problems."""
        schema = self.get_schema()
        errors = []

        for param in schema.required:
            if param not in args:
                errors.append(f"Missing required parameter: {param}")

        for param, value in args.items():
            spec = schema.parameters.get(param)
            if spec is None:
                continue
            expected = _TYPE_CHECKS.get(spec.get("type", ""))
            if expected and not isinstance(value, expected):
                errors.append(f"Parameter '{param}' must be of type {spec['type']}")
            elif "enum" in spec and value not in spec["enum"]:
                errors.append(f"Parameter '{param}' must be one of {spec['enum']}")

        return errors

    def validate(self, args: Dict[str, Any]) -> None:
        """Raise ``CapabilityValidationError`` if ``args`` do not fit the schema."""
        errors = self.validate_args(args)
        if errors:
            raise CapabilityValidationError(
                f"Invalid arguments for '{self.name}': {'; '.join(errors)}",
                errors=errors,
            )

    async def invoke(self, args: Dict[str, Any]) -> Any:
        """Execute with timing; unexpected failures become ``CapabilityExecutionError``."""
        start = time.monotonic()
        try:
            result = await self.execute(**args)
        except CapabilityError as e:
            log_capability_call(self.name, success=False, error=str(e))
            raise
        except Exception as e:
            log_capability_call(self.name, success=False, error=str(e))
            raise CapabilityExecutionError(
                f"Capability '{self.name}' failed: {e}",
                error_code="EXECUTION_FAILED",
            ) from e

        elapsed = (time.monotonic() - start) * 1000
        self._call_count += 1
        self._total_time_ms += elapsed
        log_capability_call(self.name, duration_ms=round(elapsed, 2))
        return result

    async def close(self) -> None:
        """Release resources held by the capability."""
        return None

    def get_metrics(self) -> Dict[str, Any]:
        avg = self._total_time_ms / self._call_count if self._call_count else 0.0
        return {
            "name": self.name,
            "call_count": self._call_count,
            "average_time_ms": avg,
        }


class CapabilityRegistry:
    """Name to capability mapping."""

    def __init__(self) -> None:
        self._capabilities: Dict[str, Capability] = {}

    def register(self, capability: Capability) -> None:
        if capability.name in self._capabilities:
            logger.warning("capability_replaced", capability=capability.name)
        self._capabilities[capability.name] = capability

    def unregister(self, name: str) -> None:
        self._capabilities.pop(name, None)

    def get(self, name: str) -> Capability:
        """Get a capability by name.

        Raises:
            CapabilityNotFoundError: If nothing is registered under ``name``
        """
        if name not in self._capabilities:
            raise CapabilityNotFoundError(
                f"Capability not found: {name}",
                error_code="NOT_FOUND",
            )
        return self._capabilities[name]

    def lookup(self, name: str) -> Optional[Capability]:
        return self._capabilities.get(name)

    def names(self) -> List[str]:
        return list(self._capabilities.keys())

    def schemas(self) -> List[Dict[str, Any]]:
        return [c.get_schema().to_claude_schema() for c in self._capabilities.values()]

    async def close(self) -> None:
        for capability in self._capabilities.values():
            await capability.close()

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)


def create_default_registry(config: Optional[CapabilitiesConfig] = None) -> CapabilityRegistry:
    """Registry with the built-in capabilities enabled in ``config``."""
    from .calculator import CalculatorCapability
    from .file_ops import FileCapability
    from .search import SearchCapability

    registry = CapabilityRegistry()
    enabled = config.enabled if config else ["calculator", "file", "search"]

    if "calculator" in enabled:
        registry.register(CalculatorCapability())
    if "file" in enabled:
        registry.register(FileCapability(root=config.file_root if config else "./workspace"))
    if "search" in enabled:
        registry.register(SearchCapability(
            provider=config.search_provider if config else "mock",
            api_key=config.search_api_key if config else None,
            max_results=config.search_max_results if config else 10,
        ))

    for name in enabled:
        if name not in registry:
            logger.warning("unknown_capability_skipped", capability=name)

    return registry


__all__ = [
    "Capability",
    "CapabilitySchema",
    "CapabilityRegistry",
    "create_default_registry",
]
