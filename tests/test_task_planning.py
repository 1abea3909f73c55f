"""
Tests for the planning engine.
"""

import asyncio
import json

import pytest

from agent_task_engine.exceptions import (
    OracleError,
    PlanningDepthExceededError,
    PlanningTransportError,
)
from agent_task_engine.ledger import RecordKind
from agent_task_engine.models import TaskState, TaskType
from agent_task_engine.planner import TaskPlanner, fallback_plan, parse_plan_response

from conftest import FakeOracle


def plan_json(tasks, summary="plan"):
    return json.dumps({"tasks": tasks, "summary": summary})


THREE_STEP_PLAN = plan_json([
    {"sub_task_id": "t1", "sub_task_name": "Collect", "sub_task_describe": "Collect sources",
     "process": "agent: Researcher: find sources", "sub_task_type": "agent_call", "dependent": ""},
    {"sub_task_id": "t2", "sub_task_name": "Compute", "sub_task_describe": "Compute totals",
     "process": "function: calculator(expression=\"2+2\")", "sub_task_type": "function", "dependent": "t1"},
    {"sub_task_id": "t3", "sub_task_name": "Write", "sub_task_describe": "Write the summary",
     "process": "", "sub_task_type": "task", "dependent": "t2"},
])


class TestNeedsPlan:
    """Test cases for the decomposition heuristic."""

    @pytest.mark.parametrize("message,expected", [
        ("What is the capital of France?", False),
        ("who is Ada Lovelace", False),
        ("Define entropy", False),
        ("list prime numbers below 10", False),
        ("Research and compare three vector databases", True),
        ("First fetch the data, then summarise it", True),
        ("What is the best way to build a compiler?", True),
        ("Hello there", True),
        ("what is " + "x" * 120, True),
    ])
    def test_heuristic(self, oracle, ledger, message, expected):
        planner = TaskPlanner(oracle, ledger)
        assert planner.needs_plan(message) is expected

    def test_length_threshold_is_configurable(self, oracle, ledger):
        planner = TaskPlanner(oracle, ledger, length_threshold=10)
        assert planner.needs_plan("what is the weather") is True


class TestParsePlanResponse:
    """Test cases for parsing oracle plans."""

    def test_parses_original_keys_and_rewrites_references(self):
        tasks, summary = parse_plan_response("Here you go:\n" + THREE_STEP_PLAN + "\nThanks")

        assert summary == "plan"
        assert [t.name for t in tasks] == ["Collect", "Compute", "Write"]
        assert tasks[0].predecessor == ""
        assert tasks[1].predecessor == tasks[0].id
        assert tasks[2].predecessor == tasks[1].id
        assert tasks[1].type is TaskType.FUNCTION_CALL
        assert tasks[0].metadata["source_id"] == "t1"

    def test_parses_rich_keys_and_keeps_extras(self):
        text = plan_json([
            {"id": "a", "name": "Gather", "description": "Gather", "type": "research",
             "dependencies": [], "expected_output": "notes"},
            {"id": "b", "name": "Draft", "description": "Draft", "type": "generation",
             "dependencies": ["a", "x"], "required_capabilities": ["file"]},
        ])

        tasks, _ = parse_plan_response(text)

        assert tasks[0].type is TaskType.DELEGATE_CALL
        assert tasks[0].metadata["expected_output"] == "notes"
        assert tasks[1].type is TaskType.DELEGATE_SPAWN
        assert tasks[1].predecessor == tasks[0].id
        assert tasks[1].metadata["dependencies"] == ["a", "x"]
        assert tasks[1].metadata["required_capabilities"] == ["file"]

    @pytest.mark.parametrize("reference", ["task_0", "step 1", "1", "First"])
    def test_reference_aliases(self, reference):
        text = plan_json([
            {"sub_task_name": "First", "sub_task_describe": "one"},
            {"sub_task_name": "Second", "sub_task_describe": "two", "dependent": reference},
        ])

        tasks, _ = parse_plan_response(text)

        assert tasks[1].predecessor == tasks[0].id

    def test_self_reference_is_cleared(self):
        text = plan_json([{"sub_task_id": "a", "sub_task_describe": "loop", "dependent": "a"}])
        tasks, _ = parse_plan_response(text)
        assert tasks[0].predecessor == ""

    def test_unknown_reference_is_kept(self):
        text = plan_json([{"sub_task_describe": "one", "dependent": "elsewhere"}])
        tasks, _ = parse_plan_response(text)
        assert tasks[0].predecessor == "elsewhere"

    @pytest.mark.parametrize("text", [
        "no json at all",
        "{not valid json}",
        '{"summary": "no tasks"}',
        '["a", "b"]',
    ])
    def test_unusable_text(self, text):
        assert parse_plan_response(text) is None


class TestFallbackPlan:
    """Test cases for the deterministic fallback plan."""

    def test_research_chain(self):
        tasks = fallback_plan("Research quantum error correction")

        assert [t.type for t in tasks] == [
            TaskType.DELEGATE_CALL, TaskType.PLAIN, TaskType.DELEGATE_SPAWN,
        ]
        assert tasks[1].predecessor == tasks[0].id
        assert tasks[2].predecessor == tasks[1].id

    def test_generation_chain(self):
        tasks = fallback_plan("Create a landing page")
        assert len(tasks) == 3
        assert tasks[1].type is TaskType.DELEGATE_SPAWN

    def test_generic_single_task(self):
        tasks = fallback_plan("Say hello")
        assert len(tasks) == 1
        assert "Say hello" in tasks[0].description


class TestTaskPlanner:
    """Test cases for TaskPlanner.plan."""

    @pytest.mark.asyncio
    async def test_plan_from_oracle(self, ledger, context):
        oracle = FakeOracle(responses=[THREE_STEP_PLAN])
        planner = TaskPlanner(oracle, ledger)

        graph = await planner.plan("Research and compute", context)

        assert len(graph.tasks) == 3
        assert graph.metadata["fallback"] is False
        assert all(t.state is TaskState.WAIT for t in graph.tasks)
        assert graph.dependencies[graph.tasks[2].id] == [graph.tasks[1].id]
        assert "Max subtasks for this level: 5" in oracle.last_user_prompt()

    @pytest.mark.asyncio
    async def test_unparsable_response_falls_back(self, ledger, context):
        oracle = FakeOracle(responses=["I cannot produce JSON today"])
        planner = TaskPlanner(oracle, ledger)

        graph = await planner.plan("Research solar panels", context)

        assert graph.metadata["fallback"] is True
        assert len(graph.tasks) == 3

    @pytest.mark.asyncio
    async def test_plan_without_usable_tasks_falls_back(self, ledger, context):
        oracle = FakeOracle(responses=[plan_json([{"sub_task_describe": "  "}])])
        planner = TaskPlanner(oracle, ledger)

        graph = await planner.plan("Say hello", context)

        assert graph.metadata["fallback"] is True
        assert len(graph.tasks) == 1

    @pytest.mark.asyncio
    async def test_truncates_to_depth_budget(self, ledger, context):
        context.config.planning.budget = [2]
        oracle = FakeOracle(responses=[THREE_STEP_PLAN])
        planner = TaskPlanner(oracle, ledger)

        graph = await planner.plan("Research", context)

        assert len(graph.tasks) == 2
        assert set(graph.dependencies) == {t.id for t in graph.tasks}

    @pytest.mark.asyncio
    async def test_depth_exceeded(self, oracle, ledger, context):
        context.config.planning.budget = [5, 3]
        deep = context.descend().descend()
        planner = TaskPlanner(oracle, ledger)

        with pytest.raises(PlanningDepthExceededError) as exc_info:
            await planner.plan("Research", deep)

        assert exc_info.value.message == "max planning depth reached"
        assert oracle.calls == []
        assert len(ledger) == 0

    @pytest.mark.asyncio
    async def test_uses_budget_of_current_depth(self, ledger, context):
        oracle = FakeOracle(responses=[THREE_STEP_PLAN])
        planner = TaskPlanner(oracle, ledger)

        graph = await planner.plan("Research", context.descend())

        assert graph.metadata["depth"] == 1
        assert "Max subtasks for this level: 3" in oracle.last_user_prompt()

    @pytest.mark.asyncio
    async def test_transport_error_is_raised(self, ledger, context):
        oracle = FakeOracle(responses=[OracleError("connection refused")])
        planner = TaskPlanner(oracle, ledger)

        with pytest.raises(PlanningTransportError):
            await planner.plan("Research", context)

        statuses = [r.payload["status"] for r in ledger.by_kind(RecordKind.PLANNING)]
        assert statuses == ["started", "failed"]

    @pytest.mark.asyncio
    async def test_timeout_is_raised(self, ledger, context):
        context.config.planning.timeout = 0.05
        oracle = FakeOracle(delay=1.0)
        planner = TaskPlanner(oracle, ledger)

        with pytest.raises(PlanningTransportError) as exc_info:
            await planner.plan("Research", context)

        assert exc_info.value.error_code == "TIMEOUT"

    @pytest.mark.asyncio
    async def test_unexpected_oracle_error_is_transport_error(self, ledger, context):
        oracle = FakeOracle(responses=[RuntimeError("boom")])
        planner = TaskPlanner(oracle, ledger)

        with pytest.raises(PlanningTransportError) as exc_info:
            await planner.plan("Research", context)

        assert exc_info.value.error_code == "TRANSPORT"
        assert "boom" in str(exc_info.value)
        statuses = [r.payload["status"] for r in ledger.by_kind(RecordKind.PLANNING)]
        assert statuses == ["started", "failed"]

    @pytest.mark.asyncio
    async def test_oracle_timeout_is_not_the_planning_deadline(self, ledger, context):
        context.config.planning.timeout = 30
        oracle = FakeOracle(responses=[TimeoutError("slow upstream")])
        planner = TaskPlanner(oracle, ledger)

        with pytest.raises(PlanningTransportError) as exc_info:
            await planner.plan("Research", context)

        assert exc_info.value.error_code == "TRANSPORT"
        assert "slow upstream" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_caller_cancellation_propagates(self, ledger, context):
        oracle = FakeOracle(delay=5.0)
        planner = TaskPlanner(oracle, ledger)

        job = asyncio.ensure_future(planner.plan("Research", context))
        await asyncio.sleep(0.01)
        job.cancel()

        with pytest.raises(asyncio.CancelledError):
            await job

    @pytest.mark.asyncio
    async def test_ledger_records_are_parented_to_caller(self, ledger, context):
        oracle = FakeOracle(responses=[THREE_STEP_PLAN])
        planner = TaskPlanner(oracle, ledger)

        graph = await planner.plan("Research", context)

        started, completed = ledger.by_kind(RecordKind.PLANNING)
        assert started.payload["status"] == "started"
        assert started.payload["parent_id"] == "root_record"
        assert started.payload["message"] == "Research"
        assert completed.payload["status"] == "completed"
        assert completed.payload["parent_id"] == "root_record"
        assert completed.payload["start_record_id"] == started.id
        assert len(completed.payload["plan"]["tasks"]) == 3
        assert graph.metadata["record_id"] == completed.id

    @pytest.mark.asyncio
    async def test_history_window_in_prompt(self, ledger, context):
        from agent_task_engine.models import Message

        context.messages = [Message("user", f"message {i}") for i in range(8)]
        oracle = FakeOracle(responses=[THREE_STEP_PLAN])
        planner = TaskPlanner(oracle, ledger)

        await planner.plan("Research", context)

        prompt = oracle.last_user_prompt()
        assert "message 7" in prompt
        assert "message 3" in prompt
        assert "message 2" not in prompt

    @pytest.mark.asyncio
    async def test_capabilities_listed_in_system_prompt(self, ledger, context):
        oracle = FakeOracle(responses=[THREE_STEP_PLAN])
        planner = TaskPlanner(oracle, ledger, capabilities=["calculator", "file"])

        await planner.plan("Research", context)

        assert "calculator, file" in oracle.calls[0][0].content


class TestRevisePlan:
    """Test cases for plan revision."""

    @pytest.mark.asyncio
    async def test_revision_replaces_plan(self, ledger, context):
        revised = plan_json([{"sub_task_name": "Only", "sub_task_describe": "Single step"}], "shorter")
        oracle = FakeOracle(responses=[THREE_STEP_PLAN, revised])
        planner = TaskPlanner(oracle, ledger)

        graph = await planner.plan("Research", context)
        new_graph = await planner.revise_plan(graph, "make it one step", context)

        assert [t.name for t in new_graph.tasks] == ["Only"]
        assert new_graph.summary == "shorter"
        assert new_graph.metadata["revised"] is True
        assert "make it one step" in oracle.last_user_prompt()

    @pytest.mark.asyncio
    async def test_unusable_revision_keeps_original(self, ledger, context):
        oracle = FakeOracle(responses=[THREE_STEP_PLAN, "sorry"])
        planner = TaskPlanner(oracle, ledger)

        graph = await planner.plan("Research", context)
        same = await planner.revise_plan(graph, "feedback", context)

        assert same is graph
