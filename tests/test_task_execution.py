"""
Tests for single-task execution and process-text parsing.
"""

import asyncio

import pytest

from agent_task_engine.exceptions import (
    CapabilityExecutionError,
    CapabilityNotFoundError,
    CapabilityValidationError,
    TaskExecutionError,
    TaskTimeoutError,
)
from agent_task_engine.ledger import RecordKind
from agent_task_engine.models import TaskState, TaskType
from agent_task_engine.scheduler import (
    TaskScheduler,
    parse_delegate_call,
    parse_function_call,
)

from conftest import FakeOracle, make_task


class TestParseFunctionCall:
    """Test cases for function call parsing."""

    def test_keyword_arguments_are_coerced(self):
        call = parse_function_call('function: calculator(a=2, b=3.5, flag=true, name="x, y", values=[1, 2])')

        assert call.name == "calculator"
        assert call.args == {"a": 2, "b": 3.5, "flag": True, "name": "x, y", "values": [1, 2]}
        assert call.positional == []

    def test_tagged_call(self):
        call = parse_function_call("<function_call>file(operation=read, path=notes.txt)</function_call>")

        assert call.name == "file"
        assert call.args == {"operation": "read", "path": "notes.txt"}

    def test_positional_arguments(self):
        call = parse_function_call("calculator('2 + 2')")
        assert call.positional == ["2 + 2"]

    def test_bare_name(self):
        call = parse_function_call("function: calculator")
        assert call.name == "calculator"
        assert call.args == {}

    def test_unparsable(self):
        with pytest.raises(TaskExecutionError) as exc_info:
            parse_function_call("please compute something")
        assert exc_info.value.error_code == "BAD_CALL"


class TestParseDelegateCall:
    """Test cases for delegate call parsing."""

    def test_tagged(self):
        assert parse_delegate_call("<agent_call>Analyst: check the numbers</agent_call>") == (
            "Analyst", "check the numbers",
        )

    def test_prefixed(self):
        assert parse_delegate_call("agent: Researcher: find sources") == ("Researcher", "find sources")

    def test_persona_only_uses_default_request(self):
        assert parse_delegate_call("agent: Editor", default_request="polish it") == ("Editor", "polish it")

    def test_long_text_is_the_request(self):
        persona, request = parse_delegate_call("agent: please look at all of the numbers again")
        assert persona == "Specialist"
        assert request == "please look at all of the numbers again"

    def test_no_marker(self):
        assert parse_delegate_call("", default_request="do it") == ("Specialist", "do it")


class TestExecuteTask:
    """Test cases for TaskScheduler.execute_task."""

    @pytest.mark.asyncio
    async def test_plain_task_success(self, ledger, registry, context):
        oracle = FakeOracle(default="the answer")
        scheduler = TaskScheduler(oracle, ledger, registry)
        task = make_task("t1", description="Answer the question")

        result = await scheduler.execute_task(task, context)

        assert result == "the answer"
        assert task.state == TaskState.SUCCESS
        assert task.result == "the answer"
        assert "Answer the question" in oracle.last_user_prompt()

    @pytest.mark.asyncio
    async def test_ledger_records_form_a_tree(self, oracle, ledger, registry, context):
        scheduler = TaskScheduler(oracle, ledger, registry)
        task = make_task("t1")

        await scheduler.execute_task(task, context)

        started, completed = ledger.by_kind(RecordKind.SUBTASK_EXECUTION)
        assert started.id == task.record_id
        assert started.payload["parent_id"] == "root_record"
        assert started.payload["status"] == "started"
        assert completed.payload["status"] == "success"
        assert completed.payload["start_record_id"] == started.id

        llm_call = ledger.by_kind(RecordKind.LLM_CALL)[0]
        assert llm_call.parent_id == task.record_id

    @pytest.mark.asyncio
    async def test_untyped_task_is_inferred(self, oracle, ledger, registry, context):
        scheduler = TaskScheduler(oracle, ledger, registry)
        task = make_task("t1", process='function: calculator(expression="6*7")')
        task.type = None

        result = await scheduler.execute_task(task, context)

        assert task.type is TaskType.FUNCTION_CALL
        assert result["result"] == 42

    @pytest.mark.asyncio
    async def test_function_call(self, oracle, ledger, registry, context):
        scheduler = TaskScheduler(oracle, ledger, registry)
        task = make_task(
            "t1",
            task_type=TaskType.FUNCTION_CALL,
            process="function: calculator(operation=statistics, stat=mean, values=[1, 2, 3])",
        )

        result = await scheduler.execute_task(task, context)

        assert result["result"] == 2.0
        assert oracle.calls == []
        record = ledger.by_kind(RecordKind.FUNCTION_CALL)[0]
        assert record.payload["capability"] == "calculator"
        assert record.parent_id == task.record_id

    @pytest.mark.asyncio
    async def test_function_call_positional_argument(self, oracle, ledger, registry, context):
        scheduler = TaskScheduler(oracle, ledger, registry)
        task = make_task("t1", task_type=TaskType.FUNCTION_CALL, process="calculator('2 ^ 3')")

        result = await scheduler.execute_task(task, context)

        assert result["result"] == 8

    @pytest.mark.asyncio
    async def test_unknown_capability_fails_task(self, oracle, ledger, registry, context):
        scheduler = TaskScheduler(oracle, ledger, registry)
        task = make_task("t1", task_type=TaskType.FUNCTION_CALL, process="function: teleport(to=mars)")

        with pytest.raises(CapabilityNotFoundError):
            await scheduler.execute_task(task, context)

        assert task.state == TaskState.FAIL
        assert "teleport" in task.state_message
        error = ledger.by_kind(RecordKind.ERROR)[0]
        assert error.parent_id == task.record_id

    @pytest.mark.asyncio
    async def test_invalid_arguments_fail_task(self, oracle, ledger, registry, context):
        scheduler = TaskScheduler(oracle, ledger, registry)
        task = make_task("t1", task_type=TaskType.FUNCTION_CALL, process="function: file(operation=read)")

        with pytest.raises(CapabilityValidationError):
            await scheduler.execute_task(task, context)

        assert task.state == TaskState.FAIL

    @pytest.mark.asyncio
    async def test_delegate_call_uses_persona(self, oracle, ledger, registry, context):
        scheduler = TaskScheduler(oracle, ledger, registry)
        task = make_task("t1", task_type=TaskType.DELEGATE_CALL, process="agent: Statistician: check variance")

        await scheduler.execute_task(task, context)

        system, user = oracle.calls[0]
        assert "Statistician" in system.content
        assert user.content == "check variance"
        record = ledger.by_kind(RecordKind.AGENT_EXECUTION)[0]
        assert record.payload["delegate"] == "Statistician"

    @pytest.mark.asyncio
    async def test_spawn_runs_in_copied_context(self, oracle, ledger, registry, context):
        scheduler = TaskScheduler(oracle, ledger, registry)
        task = make_task("t1", task_type=TaskType.DELEGATE_SPAWN, name="writer")

        await scheduler.execute_task(task, context)

        assert "You are acting as: writer" in oracle.calls[0][0].content
        assert context.delegation_chain == []
        assert context.parent_record_id == "root_record"
        llm_call = ledger.by_kind(RecordKind.LLM_CALL)[0]
        assert llm_call.parent_id == task.record_id

    @pytest.mark.asyncio
    async def test_handler_error_marks_failed_and_propagates(self, ledger, registry, context):
        oracle = FakeOracle(responses=[RuntimeError("model exploded")])
        scheduler = TaskScheduler(oracle, ledger, registry)
        task = make_task("t1")

        with pytest.raises(RuntimeError):
            await scheduler.execute_task(task, context)

        assert task.state == TaskState.FAIL
        assert task.state_message == "model exploded"
        statuses = [r.payload["status"] for r in ledger.by_kind(RecordKind.SUBTASK_EXECUTION)]
        assert statuses == ["started", "fail"]

    @pytest.mark.asyncio
    async def test_task_timeout(self, ledger, registry, context):
        context.config.execution.task_timeout = 0.05
        scheduler = TaskScheduler(FakeOracle(delay=1.0), ledger, registry)
        task = make_task("t1")

        with pytest.raises(TaskTimeoutError):
            await scheduler.execute_task(task, context)

        assert task.state == TaskState.FAIL
        assert "timed out" in task.state_message

    @pytest.mark.asyncio
    async def test_handler_timeout_without_task_deadline(self, ledger, registry, context):
        context.config.execution.task_timeout = None
        oracle = FakeOracle(responses=[TimeoutError("upstream read timed out")])
        scheduler = TaskScheduler(oracle, ledger, registry)
        task = make_task("t1")

        with pytest.raises(TaskExecutionError) as exc_info:
            await scheduler.execute_task(task, context)

        assert not isinstance(exc_info.value, TaskTimeoutError)
        assert exc_info.value.error_code == "HANDLER_TIMEOUT"
        assert task.state == TaskState.FAIL
        assert "upstream read timed out" in task.state_message
        assert "None" not in task.state_message

    @pytest.mark.asyncio
    async def test_handler_timeout_inside_task_deadline(self, ledger, registry, context):
        context.config.execution.task_timeout = 30
        oracle = FakeOracle(responses=[TimeoutError()])
        scheduler = TaskScheduler(oracle, ledger, registry)
        task = make_task("t1")

        with pytest.raises(TaskExecutionError) as exc_info:
            await scheduler.execute_task(task, context)

        assert exc_info.value.error_code == "HANDLER_TIMEOUT"
        assert "TimeoutError" in task.state_message

    @pytest.mark.asyncio
    async def test_oversized_power_fails_the_task(self, oracle, ledger, registry, context):
        scheduler = TaskScheduler(oracle, ledger, registry)
        task = make_task(
            "t1",
            task_type=TaskType.FUNCTION_CALL,
            process='calculator(expression="((9**999)**999)**999")',
        )

        with pytest.raises(CapabilityExecutionError):
            await scheduler.execute_task(task, context)

        assert task.state == TaskState.FAIL
        assert "too large" in task.state_message

    @pytest.mark.asyncio
    async def test_cancellation_marks_failed(self, ledger, registry, context):
        scheduler = TaskScheduler(FakeOracle(delay=5.0), ledger, registry)
        task = make_task("t1")

        job = asyncio.ensure_future(scheduler.execute_task(task, context))
        await asyncio.sleep(0.01)
        job.cancel()

        with pytest.raises(asyncio.CancelledError):
            await job

        assert task.state == TaskState.FAIL
        assert task.state_message == "cancelled"

    @pytest.mark.asyncio
    async def test_finished_task_cannot_run_again(self, oracle, ledger, registry, context):
        from agent_task_engine.exceptions import InvalidTransitionError

        scheduler = TaskScheduler(oracle, ledger, registry)
        task = make_task("t1")
        await scheduler.execute_task(task, context)

        with pytest.raises(InvalidTransitionError):
            await scheduler.execute_task(task, context)

    @pytest.mark.asyncio
    async def test_save_output(self, oracle, ledger, registry, context, tmp_path):
        context.config.execution.save_output = True
        scheduler = TaskScheduler(FakeOracle(default="saved text"), ledger, registry)
        task = make_task("t1")

        await scheduler.execute_task(task, context)

        assert task.output_location.endswith("session_test_t1.txt")
        with open(task.output_location, encoding="utf-8") as f:
            assert f.read() == "saved text"

    @pytest.mark.asyncio
    async def test_registered_handler_overrides_dispatch(self, oracle, ledger, registry, context):
        scheduler = TaskScheduler(oracle, ledger, registry)

        async def custom(task, ctx):
            return f"custom:{task.id}"

        scheduler.register_handler(TaskType.PLAIN, custom)

        assert await scheduler.execute_task(make_task("t1"), context) == "custom:t1"
        assert oracle.calls == []
