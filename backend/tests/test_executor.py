"""Tests for walemcp.tools: registry lookup and the step executor."""

import pytest

from conftest import RecordingTool
from walemcp.models import PlannedStep, RetryConfig, StepExecutionResult, TaskContext, ToolType
from walemcp.policy import ExecutionPolicy, backoff_delay_ms
from walemcp.refs import PreviousStepRef
from walemcp.tools.executor import StepExecutor
from walemcp.tools.registry import ToolRegistry


@pytest.fixture
def ctx():
    return TaskContext(task_id="task_exec", user_id="tester")


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class TestRegistry:
    """Registration and lookup order."""

    def test_overwrite_keeps_last(self, caplog):
        registry = ToolRegistry()
        first = RecordingTool("api_call")
        second = RecordingTool("api_call")
        registry.register(first)
        registry.register(second)
        assert registry.find_for_step(PlannedStep(tool_id="api_call")) is second
        assert "already exists" in caplog.text

    def test_lookup_by_id_then_type(self):
        registry = ToolRegistry()
        generic = RecordingTool("http_client", ToolType.API_CALL)
        registry.register(generic)
        assert registry.find_for_step(PlannedStep(tool_id="api_call")) is generic
        assert registry.find_for_step(PlannedStep(tool_id="http_client")) is generic
        assert registry.find_for_step(PlannedStep(tool_id="custom_missing_tool")) is None

    def test_builtin_tools_registered(self, registry):
        assert len(registry) == 6
        for tool_type in ToolType:
            assert registry.find_for_step(PlannedStep(tool_id=tool_type.value)) is not None


class TestExecuteStep:
    """execute_step turns every outcome into a result."""

    @pytest.mark.asyncio
    async def test_tool_selected_by_id(self, ctx):
        registry = ToolRegistry()
        tool = RecordingTool("api_call", outputs={"data": 1})
        registry.register(tool)
        result = await StepExecutor(registry).execute_step(PlannedStep(step_id="s1", tool_id="api_call"), ctx)
        assert result.ok
        assert result.outputs == {"data": 1}
        assert len(tool.calls) == 1
        assert result.metadata["tool_id"] == "api_call"

    @pytest.mark.asyncio
    async def test_missing_tool_is_reported(self, ctx):
        registry = ToolRegistry()
        registry.register(RecordingTool("api_call"))
        result = await StepExecutor(registry).execute_step(
            PlannedStep(step_id="s1", tool_id="custom_missing_tool"), ctx
        )
        assert result.status == "failure"
        assert "custom_missing_tool" in result.error
        assert result.metadata["attempts"] == 0

    @pytest.mark.asyncio
    async def test_raising_tool_never_raises(self, ctx):
        registry = ToolRegistry()
        registry.register(RecordingTool("api_call", error=ValueError("kaboom")))
        result = await StepExecutor(registry).execute_step(PlannedStep(step_id="s1", tool_id="api_call"), ctx)
        assert result.status == "failure"
        assert "kaboom" in result.error
        assert result.duration >= 0

    @pytest.mark.asyncio
    async def test_timeout_becomes_failure(self, ctx):
        registry = ToolRegistry()
        registry.register(RecordingTool("slow", delay_s=1.0))
        step = PlannedStep(step_id="s1", tool_id="slow", timeout_ms=20)
        result = await StepExecutor(registry).execute_step(step, ctx)
        assert result.status == "failure"
        assert "timed out after 20ms" in result.error

    @pytest.mark.asyncio
    async def test_output_mappings(self, ctx):
        registry = ToolRegistry()
        registry.register(RecordingTool("api_call", outputs={"data": {"items": [1, 2]}}))
        step = PlannedStep(step_id="s1", tool_id="api_call", output_mappings={"items": "data.items"})
        result = await StepExecutor(registry).execute_step(step, ctx)
        assert result.outputs["items"] == [1, 2]

    @pytest.mark.asyncio
    async def test_references_are_resolved_before_the_call(self, ctx):
        ctx.history.append(StepExecutionResult(step_id="prev", status="success", outputs={"v": 42}))
        registry = ToolRegistry()
        tool = RecordingTool("api_call")
        registry.register(tool)
        step = PlannedStep(
            step_id="s1",
            tool_id="api_call",
            inputs={"value": PreviousStepRef(step_id="prev", path="v"), "later": PreviousStepRef(step_id="nope")},
        )
        result = await StepExecutor(registry).execute_step(step, ctx)
        assert tool.calls[0]["value"] == 42
        assert "later" not in tool.calls[0]
        assert result.metadata["unresolved_inputs"] == ["later"]


class TestRetry:
    """Retry policy declared per step, enforced by the executor."""

    @pytest.mark.asyncio
    async def test_retries_until_success(self, ctx):
        registry = ToolRegistry()
        tool = RecordingTool("flaky", fail_times=2)
        registry.register(tool)
        sleep = FakeSleep()
        step = PlannedStep(
            step_id="s1",
            tool_id="flaky",
            retry=RetryConfig(max_attempts=3, delay_ms=100, backoff_factor=2.0),
        )
        result = await StepExecutor(registry, sleep=sleep).execute_step(step, ctx)
        assert result.ok
        assert result.metadata["attempts"] == 3
        assert sleep.delays == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, ctx):
        registry = ToolRegistry()
        tool = RecordingTool("flaky", fail_times=10)
        registry.register(tool)
        step = PlannedStep(step_id="s1", tool_id="flaky", retry=RetryConfig(max_attempts=2))
        result = await StepExecutor(registry, sleep=FakeSleep()).execute_step(step, ctx)
        assert result.status == "failure"
        assert result.metadata["attempts"] == 2
        assert len(tool.calls) == 2

    @pytest.mark.asyncio
    async def test_timeout_only_condition_skips_plain_failures(self, ctx):
        registry = ToolRegistry()
        tool = RecordingTool("flaky", fail_times=10)
        registry.register(tool)
        step = PlannedStep(step_id="s1", tool_id="flaky", retry=RetryConfig(max_attempts=3, retry_condition="timeout"))
        result = await StepExecutor(registry, sleep=FakeSleep()).execute_step(step, ctx)
        assert result.metadata["attempts"] == 1

    @pytest.mark.asyncio
    async def test_no_implicit_retry(self, ctx):
        registry = ToolRegistry()
        tool = RecordingTool("flaky", fail_times=1)
        registry.register(tool)
        result = await StepExecutor(registry, ExecutionPolicy()).execute_step(
            PlannedStep(step_id="s1", tool_id="flaky"), ctx
        )
        assert result.status == "failure"
        assert len(tool.calls) == 1

    @pytest.mark.asyncio
    async def test_budget_caps_a_single_attempt(self, ctx):
        registry = ToolRegistry()
        registry.register(RecordingTool("slow", delay_s=1.0))
        step = PlannedStep(step_id="s1", tool_id="slow", timeout_ms=5_000)
        result = await StepExecutor(registry).execute_step(step, ctx, budget_ms=30)
        assert result.status == "failure"
        assert "timed out" in result.error
        assert result.duration < 500

    @pytest.mark.asyncio
    async def test_no_retry_past_the_budget(self, ctx):
        registry = ToolRegistry()
        tool = RecordingTool("flaky", fail_times=10)
        registry.register(tool)
        sleep = FakeSleep()
        step = PlannedStep(step_id="s1", tool_id="flaky", retry=RetryConfig(max_attempts=5, delay_ms=1_000))
        result = await StepExecutor(registry, sleep=sleep).execute_step(step, ctx, budget_ms=500)
        assert result.metadata["attempts"] == 1
        assert sleep.delays == []

    def test_backoff_is_capped(self):
        retry = RetryConfig(max_attempts=10, delay_ms=10_000, backoff_factor=10.0)
        assert backoff_delay_ms(retry, 1) == 10_000
        assert backoff_delay_ms(retry, 5) == 60_000
