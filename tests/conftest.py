"""
Pytest configuration and fixtures.
"""

import asyncio
from typing import Callable, List, Optional, Sequence, Union

import pytest
from unittest.mock import AsyncMock, MagicMock

from agent_task_engine.capabilities import create_default_registry
from agent_task_engine.config import CapabilitiesConfig, EngineConfig
from agent_task_engine.ledger import InMemoryLedger
from agent_task_engine.models import ExecutionContext, LLMParams, Message, Task, TaskState, TaskType, TokenUsage
from agent_task_engine.oracle import OracleResponse, ReasoningOracle


class FakeOracle(ReasoningOracle):
    """Scripted oracle.

    Replies are taken from ``responses`` in order (an exception in the list
    is raised instead), then from ``responder(messages)`` if given, then
    ``default``. Tracks concurrent calls so tests can check worker bounds.
    """

    def __init__(
        self,
        responses: Optional[Sequence[Union[str, BaseException]]] = None,
        default: str = "done",
        delay: float = 0.0,
        responder: Optional[Callable[[List[Message]], str]] = None,
    ):
        self.responses = list(responses or [])
        self.default = default
        self.delay = delay
        self.responder = responder
        self.calls: List[List[Message]] = []
        self.params: List[LLMParams] = []
        self.active = 0
        self.peak = 0
        self.closed = False

    async def infer(self, messages, params):
        self.calls.append(list(messages))
        self.params.append(params)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.responses:
                reply = self.responses.pop(0)
            elif self.responder is not None:
                reply = self.responder(list(messages))
            else:
                reply = self.default
            if isinstance(reply, BaseException):
                raise reply
            return OracleResponse(text=reply, usage=TokenUsage(10, 5), model=params.model)
        finally:
            self.active -= 1

    async def close(self):
        self.closed = True

    def last_user_prompt(self) -> str:
        return self.calls[-1][-1].content


def make_task(
    task_id: str,
    predecessor: str = "",
    task_type: TaskType = TaskType.PLAIN,
    description: Optional[str] = None,
    process: str = "",
    name: Optional[str] = None,
) -> Task:
    return Task(
        id=task_id,
        name=name or task_id,
        description=description or f"Do {task_id}",
        process=process,
        type=task_type,
        predecessor=predecessor,
        state=TaskState.WAIT,
    )


@pytest.fixture
def engine_config(tmp_path):
    """Engine configuration with short timeouts and a temporary workspace."""
    config = EngineConfig()
    config.planning.timeout = 5.0
    config.execution.task_timeout = 5.0
    config.execution.output_dir = str(tmp_path / "output")
    config.capabilities = CapabilitiesConfig(file_root=str(tmp_path / "workspace"))
    config.ledger.base_dir = str(tmp_path / "records")
    return config


@pytest.fixture
def context(engine_config):
    return ExecutionContext(
        config=engine_config,
        agent_id="agent_test",
        agent_name="TestAgent",
        session_id="session_test",
        parent_record_id="root_record",
    )


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def registry(engine_config):
    return create_default_registry(engine_config.capabilities)


@pytest.fixture
def mock_anthropic_client():
    """Mock AsyncAnthropic client returning a single text block."""
    client = MagicMock()
    client.messages = MagicMock()
    client.messages.create = AsyncMock(return_value=MagicMock(
        content=[MagicMock(type="text", text="Test response")],
        usage=MagicMock(input_tokens=12, output_tokens=34),
        model="claude-test",
    ))
    client.close = AsyncMock()
    return client
