"""Tests for walemcp.orchestrator: the end-to-end task state machine."""

import sqlite3

import httpx
import pytest

from conftest import FakeSensor, RecordingTool
from walemcp.errors import StorageError, TemplateValidationError
from walemcp.integrations.solana import SolanaConnector
from walemcp.intent import IntentParser
from walemcp.models import (
    BranchStep,
    Entity,
    InputDefinition,
    Intent,
    PlannedStep,
    StepCondition,
    StepDefinition,
    StepExecutionResult,
    StepInput,
    StepOutput,
    TaskContext,
    TaskTemplate,
    ToolType,
)
from walemcp.orchestrator import TaskOrchestrator, condition_holds
from walemcp.planner import IntentPlanner, PlannerConfig, PlanningTemplate
from walemcp.policy import ExecutionPolicy
from walemcp.tools.executor import StepExecutor


def declared(name, *steps, inputs=()):
    return TaskTemplate(name=name, steps=list(steps), inputs=list(inputs))


def rebuild(orchestrator, **overrides):
    parts = dict(
        parser=orchestrator.parser,
        planner=orchestrator.planner,
        executor=orchestrator.executor,
        monitor=orchestrator.monitor,
        sensor=orchestrator.sensor,
        connector=orchestrator.connector,
        storage=orchestrator.storage,
        policy=orchestrator.policy,
    )
    parts.update(overrides)
    return TaskOrchestrator(**parts)


class TestDynamicScenarios:
    """Dynamic plans run end to end against the built-in tools."""

    @pytest.mark.asyncio
    async def test_query_runs_four_steps(self, orchestrator):
        intent = Intent(type="query", content="price of SOL", entities=[Entity(type="token", value="SOL")])
        result = await orchestrator.process_intent(intent)
        assert result.status == "success"
        assert result.metadata.executed_steps == [
            "step_1_env_sensing",
            "step_2_data_retrieval",
            "step_3_data_processing",
            "step_4_analysis",
        ]
        assert "SOL: $150.0" in result.outputs["summary"]

    @pytest.mark.asyncio
    async def test_low_risk_transaction_takes_then_arm(self, orchestrator):
        result = await orchestrator.process_intent(Intent(type="transaction", content="send 5 SOL"))
        meta = result.metadata
        assert result.status == "success"
        assert "step_4_transaction" in meta.executed_steps
        assert "step_5_report" in meta.executed_steps
        assert "step_5_risk_report" not in meta.executed_steps
        assert meta.skipped_steps == ["step_5_risk_report"]
        assert result.outputs["report"]["executed"] is True

    @pytest.mark.asyncio
    async def test_high_risk_transaction_takes_else_arm(self, orchestrator):
        result = await orchestrator.process_intent(Intent(type="transaction", content="send 5000 SOL"))
        meta = result.metadata
        assert meta.executed_steps[-1] == "step_5_risk_report"
        assert set(meta.skipped_steps) == {"step_4_transaction", "step_5_report"}
        assert result.outputs["report"]["executed"] is False

    @pytest.mark.asyncio
    async def test_degraded_environment_does_not_abort(self, orchestrator):
        degraded = rebuild(orchestrator, sensor=FakeSensor({"timestamp": 1, "error": True, "error_message": "rpc down"}))
        result = await degraded.process_intent(Intent(type="query", content="what is happening"))
        assert result.status == "success"

    @pytest.mark.asyncio
    async def test_unsupported_intent_fails_task(self, orchestrator):
        result = await orchestrator.process_intent(Intent(type="governance", content="vote"))
        assert result.status == "failure"
        assert "governance" in result.error
        assert result.outputs == {"error": result.error}


class TestDeclaredTemplates:
    """Templates with declared steps, conditions and failures."""

    @pytest.mark.asyncio
    async def test_oversized_plan_never_invokes_tools(self, orchestrator):
        counter = RecordingTool("counter", ToolType.DATA_TRANSFORMATION)
        orchestrator.executor.registry.register(counter)
        template = declared(
            "Huge",
            *[StepDefinition(id=f"s{i}", type=ToolType.DATA_TRANSFORMATION, tool_id="counter") for i in range(25)],
        )
        result = await orchestrator.execute_task(template, {"content": "do it"})
        assert result.status == "failure"
        assert "maximum number of steps" in result.error
        assert counter.calls == []

    @pytest.mark.asyncio
    async def test_false_condition_skips_step(self, orchestrator):
        template = declared(
            "Gated",
            StepDefinition(
                id="check",
                type=ToolType.CONDITIONAL,
                inputs=[StepInput(name="value", source="user_input", source_reference="amount")],
                config={"condition": {"operator": "less_than", "value": 10}},
                outputs=[StepOutput(name="conditionMet")],
            ),
            StepDefinition(id="act", type=ToolType.API_CALL, condition="check.conditionMet"),
            inputs=[InputDefinition(name="amount", type="number", required=True)],
        )
        result = await orchestrator.execute_task(template, {"amount": 50})
        assert result.metadata.executed_steps == ["check"]
        assert result.metadata.skipped_steps == ["act"]
        assert result.outputs["conditionMet"] is False

    def test_condition_on_unknown_step_rejected(self, orchestrator):
        template = declared(
            "Chain",
            StepDefinition(id="first", type=ToolType.API_CALL, condition='missing_never.ok'),
        )
        with pytest.raises(TemplateValidationError):
            orchestrator.validate_template(template)

    @pytest.mark.asyncio
    async def test_failed_step_is_routed_around(self, orchestrator):
        orchestrator.executor.registry.register(RecordingTool("broken", error=RuntimeError("upstream exploded")))
        template = declared(
            "Partial",
            StepDefinition(id="s1", type=ToolType.API_CALL, tool_id="broken"),
            StepDefinition(
                id="s2",
                type=ToolType.DATA_TRANSFORMATION,
                inputs=[StepInput(name="data", source="previous_step", source_reference="s1.data")],
            ),
            StepDefinition(id="s3", type=ToolType.API_CALL),
        )
        result = await orchestrator.execute_task(template, {"content": "go"})
        meta = result.metadata
        assert result.status == "success"
        assert meta.executed_steps == ["s1", "s3", "s1_failure_report"]
        assert meta.failed_steps == ["s1"]
        assert meta.adaptations == 1
        assert "upstream exploded" in result.outputs["summary"]

    @pytest.mark.asyncio
    async def test_task_timeout(self, orchestrator):
        slow_policy = ExecutionPolicy(step_timeout_ms=1_000, task_timeout_ms=50)
        orchestrator.executor.registry.register(RecordingTool("slow", delay_s=0.1))
        timed = rebuild(
            orchestrator,
            executor=StepExecutor(orchestrator.executor.registry, slow_policy),
            policy=slow_policy,
        )
        template = declared(
            "Slow",
            StepDefinition(id="first", type=ToolType.API_CALL, tool_id="slow"),
            StepDefinition(id="second", type=ToolType.API_CALL, tool_id="slow"),
        )
        result = await timed.execute_task(template, {})
        assert result.status == "failure"
        assert "timed out" in result.error
        assert result.metadata.executed_steps == ["first"]
        assert result.metadata.skipped_steps == ["second"]

    @pytest.mark.asyncio
    async def test_deadline_interrupts_a_running_step(self, orchestrator):
        tight = ExecutionPolicy(step_timeout_ms=1_000, task_timeout_ms=100)
        orchestrator.executor.registry.register(RecordingTool("sluggish", delay_s=0.6))
        timed = rebuild(
            orchestrator,
            executor=StepExecutor(orchestrator.executor.registry, tight),
            policy=tight,
        )
        template = declared("Sluggish", StepDefinition(id="only", type=ToolType.API_CALL, tool_id="sluggish"))
        result = await timed.execute_task(template, {})
        assert result.status == "failure"
        assert "timed out" in result.error
        assert result.metadata.executed_steps == ["only"]
        assert result.metadata.execution_time < 500

    @pytest.mark.asyncio
    async def test_skipped_step_suppresses_its_dependents(self, orchestrator):
        counter = RecordingTool("counter", ToolType.DATA_TRANSFORMATION)
        orchestrator.executor.registry.register(counter)
        template = declared(
            "Cascade",
            StepDefinition(
                id="check",
                type=ToolType.CONDITIONAL,
                inputs=[StepInput(name="value", source="user_input", source_reference="amount")],
                config={"condition": {"operator": "less_than", "value": 10}},
                outputs=[StepOutput(name="conditionMet")],
            ),
            StepDefinition(id="B", type=ToolType.DATA_TRANSFORMATION, tool_id="counter", condition="check.conditionMet"),
            StepDefinition(id="C", type=ToolType.DATA_TRANSFORMATION, tool_id="counter", condition="B.value"),
            inputs=[InputDefinition(name="amount", type="number", required=True)],
        )
        result = await orchestrator.execute_task(template, {"amount": 50})
        assert result.metadata.executed_steps == ["check"]
        assert result.metadata.skipped_steps == ["B", "C"]
        assert counter.calls == []

    @pytest.mark.asyncio
    async def test_branch_on_skipped_step_runs_neither_arm(self, orchestrator):
        orchestrator.executor.registry.register(RecordingTool("check", outputs={"ok": False}))
        counter = RecordingTool("counter", ToolType.DATA_TRANSFORMATION)
        orchestrator.executor.registry.register(counter)

        def steps(intent, ctx):
            return [
                PlannedStep(step_id="check", tool_id="check"),
                PlannedStep(step_id="maybe", tool_id="counter", condition=StepCondition(source="check", key="ok")),
                BranchStep(
                    step_id="gate",
                    condition=StepCondition(source="maybe", key="value", expected="counter"),
                    then_steps=[PlannedStep(step_id="yes", tool_id="counter")],
                    else_steps=[PlannedStep(step_id="no", tool_id="counter")],
                ),
            ]

        planner = IntentPlanner(PlannerConfig(), [PlanningTemplate("gated", "Gated", "", lambda i: True, steps)])
        result = await rebuild(orchestrator, planner=planner).process_intent(Intent(type="query", content="go"))
        assert result.status == "success"
        assert result.metadata.executed_steps == ["check"]
        assert result.metadata.skipped_steps == ["maybe", "yes", "no"]
        assert counter.calls == []


class TestConditions:
    """Conditions compare without type coercion."""

    @pytest.fixture
    def ctx(self):
        return TaskContext(task_id="task_cond", user_id="tester")

    def record(self, ctx, outputs):
        ctx.history.append(StepExecutionResult(step_id="s1", status="success", outputs=outputs))

    @pytest.mark.parametrize(
        "value, expected, holds",
        [
            (True, True, True),
            (1, True, False),
            (0, False, False),
            ("true", True, False),
            (3, 3.0, True),
            ("3", 3, False),
            ("done", "done", True),
        ],
    )
    def test_strict_comparison(self, ctx, value, expected, holds):
        self.record(ctx, {"k": value})
        assert condition_holds(StepCondition(source="s1", key="k", expected=expected), ctx) is holds

    def test_missing_key_is_false(self, ctx):
        self.record(ctx, {})
        assert condition_holds(StepCondition(source="s1", key="k"), ctx) is False

    def test_source_that_never_ran(self, ctx):
        assert condition_holds(StepCondition(source="s1", key="k"), ctx) is None

    @pytest.mark.asyncio
    async def test_truthy_number_does_not_satisfy_bare_condition(self, orchestrator):
        orchestrator.executor.registry.register(RecordingTool("flagger", outputs={"flag": 1}))
        template = declared(
            "Flagged",
            StepDefinition(id="s1", type=ToolType.API_CALL, tool_id="flagger"),
            StepDefinition(id="s2", type=ToolType.API_CALL, condition="s1.flag"),
        )
        result = await orchestrator.execute_task(template, {})
        assert result.metadata.executed_steps == ["s1"]
        assert result.metadata.skipped_steps == ["s2"]


class TestResults:
    """Persistence, proofs and resource accounting."""

    @pytest.mark.asyncio
    async def test_result_is_stored_and_retrievable(self, orchestrator, storage):
        result = await orchestrator.process_intent(Intent(type="query", content="price of SOL"))
        assert result.metadata.storage_ref == f"local://results/{result.task_id}"
        assert result.metadata.on_chain_verification.startswith("proof_")
        assert storage.get_task_result(result.task_id).status == "success"
        assert orchestrator.get_task_result(result.task_id).model_dump(mode="json") == result.model_dump(mode="json")
        assert orchestrator.get_task_result("task_unknown") is None

    @pytest.mark.asyncio
    async def test_resource_usage(self, orchestrator):
        result = await orchestrator.process_intent(Intent(type="query", content="price of SOL"))
        usage = result.metadata.resource_usage
        assert usage["api_calls"] == 4
        assert usage["token_usage"] == 0
        assert usage["processing_time"] >= 0

    @pytest.mark.asyncio
    async def test_storage_failure_is_not_fatal(self, orchestrator):
        class BrokenStorage:
            def store_result(self, result):
                raise StorageError("disk full")

            def get_task_result(self, task_id):
                return None

        broken = rebuild(orchestrator, storage=BrokenStorage())
        result = await broken.process_intent(Intent(type="query", content="price of SOL"))
        assert result.status == "success"
        assert result.metadata.storage_error == "disk full"
        assert result.metadata.storage_ref is None

    @pytest.mark.asyncio
    async def test_chain_failure_is_not_fatal(self, orchestrator):
        live = SolanaConnector(
            "http://rpc.test",
            dry_run=False,
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )
        result = await rebuild(orchestrator, connector=live).process_intent(Intent(type="query", content="hi"))
        assert result.status == "success"
        assert "HTTP 503" in result.metadata.chain_error
        assert result.metadata.on_chain_verification is None

    @pytest.mark.asyncio
    async def test_results_are_read_back_from_storage(self, orchestrator, storage):
        result = await orchestrator.process_intent(Intent(type="query", content="price of SOL"))
        with sqlite3.connect(storage.db_path) as conn:
            conn.execute("DELETE FROM task_results WHERE task_id=?", (result.task_id,))
        assert orchestrator.get_task_result(result.task_id) is None

    @pytest.mark.asyncio
    async def test_unpersisted_results_are_bounded(self, orchestrator):
        small = ExecutionPolicy(step_timeout_ms=2_000, task_timeout_ms=10_000, max_unpersisted_results=2)
        memory_only = rebuild(orchestrator, storage=None, policy=small)
        results = [await memory_only.process_intent(Intent(type="query", content="hi")) for _ in range(3)]
        assert memory_only.get_task_result(results[0].task_id) is None
        assert memory_only.get_task_result(results[2].task_id) == results[2]


class TestTemplateRegistry:
    """Registration, validation and search."""

    @pytest.fixture
    def template(self):
        return TaskTemplate(
            name="Price Watch",
            category="analytics",
            inputs=[InputDefinition(name="token", type="token", required=True)],
            steps=[StepDefinition(id="fetch", type=ToolType.API_CALL)],
        )

    @pytest.mark.asyncio
    async def test_register_and_search(self, orchestrator, storage, template):
        template_id = await orchestrator.register_template(template, "creator-1")
        assert template_id.startswith("tpl_")
        assert storage.get_template(template_id).name == "Price Watch"

        found = await orchestrator.search_templates({"name": "price", "category": "analytics"})
        assert [t.id for t in found] == [template_id]
        assert await orchestrator.search_templates({"creator": "someone-else"}) == []

    @pytest.mark.asyncio
    async def test_persisted_templates_survive_restart(self, orchestrator, storage, template):
        template_id = await orchestrator.register_template(template, "creator-1")
        restarted = rebuild(orchestrator, connector=SolanaConnector("http://rpc.invalid", dry_run=True))

        assert [t.id for t in await restarted.search_templates({})] == [template_id]
        assert [t.id for t in await restarted.search_templates({"name": "price"})] == [template_id]
        assert [t.id for t in await restarted.search_templates({"creator": "creator-1"})] == [template_id]
        assert await restarted.search_templates({"category": "defi"}) == []

    @pytest.mark.asyncio
    async def test_registered_template_executes(self, orchestrator, template):
        template_id = await orchestrator.register_template(template, "creator-1")
        result = await orchestrator.execute_task(orchestrator.get_template(template_id), {"token": "SOL"}, "u9")
        assert result.status == "success"
        assert result.metadata.executed_steps == ["fetch"]

    @pytest.mark.parametrize(
        "bad",
        [
            TaskTemplate(name="dup", inputs=[InputDefinition(name="a"), InputDefinition(name="a")]),
            TaskTemplate(name="unknown", steps=[StepDefinition(id="s", type=ToolType.API_CALL, tool_id="nope")]),
            TaskTemplate(name="blank", version=" "),
            TaskTemplate(
                name="forward",
                steps=[
                    StepDefinition(
                        id="a",
                        type=ToolType.API_CALL,
                        inputs=[StepInput(name="x", source="previous_step", source_reference="b.x")],
                    ),
                    StepDefinition(id="b", type=ToolType.API_CALL),
                ],
            ),
        ],
    )
    @pytest.mark.asyncio
    async def test_invalid_templates_rejected(self, orchestrator, bad):
        with pytest.raises(TemplateValidationError):
            await orchestrator.register_template(bad, "creator-1")

    @pytest.mark.asyncio
    async def test_parser_failure_fails_task(self, orchestrator):
        class BrokenParser(IntentParser):
            def parse_intent(self, *args, **kwargs):
                from walemcp.errors import ParseError

                raise ParseError("Failed to parse intent: bad input")

        broken = rebuild(orchestrator, parser=BrokenParser())
        result = await broken.execute_task(TaskTemplate(name="t"), {})
        assert result.status == "failure"
        assert result.error == "Failed to parse intent: bad input"
