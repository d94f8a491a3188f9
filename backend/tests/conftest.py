"""Shared test fixtures for the walemcp test suite."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from walemcp.integrations.solana import SolanaConnector
from walemcp.intent import IntentParser
from walemcp.models import Intent, TaskContext, ToolType
from walemcp.monitor import ExecutionMonitor
from walemcp.orchestrator import TaskOrchestrator
from walemcp.planner import IntentPlanner, PlannerConfig
from walemcp.policy import ExecutionPolicy
from walemcp.storage import DataStorage
from walemcp.tools.base import BaseTool, ToolInput, ToolOutput
from walemcp.tools.builtin.analysis_tools import AIAnalysisTool
from walemcp.tools.builtin.chain_tools import SolanaTransactionTool
from walemcp.tools.builtin.data_tools import ConditionalTool, DataTransformationTool
from walemcp.tools.builtin.sensing_tools import ApiCallTool, EnvironmentSensingTool
from walemcp.tools.executor import StepExecutor
from walemcp.tools.registry import ToolRegistry


SOL_ENVIRONMENT: Dict[str, Any] = {
    "network": {"block_height": 100, "slot": 120, "epoch": 7, "timestamp": 1},
    "prices": {"SOL": {"usd": 150.0}, "timestamp": 1},
    "timestamp": 1,
}


class FakeSensor:
    """Stands in for EnvironmentSensor without touching the network."""

    def __init__(self, environment: Optional[Dict[str, Any]] = None) -> None:
        self.environment = dict(SOL_ENVIRONMENT if environment is None else environment)
        self.calls: List[Intent] = []

    async def gather_environment_data(self, intent: Intent) -> Dict[str, Any]:
        self.calls.append(intent)
        return dict(self.environment)


class RecordingTool(BaseTool[ToolInput]):
    """Configurable tool that records every call it receives."""

    def __init__(
        self,
        tool_id: str,
        tool_type: ToolType = ToolType.API_CALL,
        *,
        outputs: Optional[Dict[str, Any]] = None,
        fail_times: int = 0,
        error: Optional[Exception] = None,
        delay_s: float = 0.0,
    ) -> None:
        self.id = tool_id
        self.type = tool_type
        self.name = tool_id
        self.outputs = outputs if outputs is not None else {"value": tool_id}
        self.fail_times = fail_times
        self.error = error
        self.delay_s = delay_s
        self.calls: List[Dict[str, Any]] = []

    async def run(self, ctx: TaskContext, args: ToolInput) -> ToolOutput:
        self.calls.append(args.model_dump())
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        if len(self.calls) <= self.fail_times:
            return ToolOutput(ok=False, error=f"{self.id} failed (call {len(self.calls)})")
        return ToolOutput(ok=True, data=dict(self.outputs))


def build_registry(connector: SolanaConnector) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(EnvironmentSensingTool())
    registry.register(ApiCallTool())
    registry.register(DataTransformationTool())
    registry.register(AIAnalysisTool())
    registry.register(ConditionalTool())
    registry.register(SolanaTransactionTool(connector=connector))
    return registry


@pytest.fixture
def connector():
    """Dry-run connector; nothing it does in dry-run mode reaches the network."""
    return SolanaConnector("http://rpc.invalid", dry_run=True)


@pytest.fixture
def registry(connector):
    return build_registry(connector)


@pytest.fixture
def storage(tmp_path):
    """Provide a DataStorage backed by a temporary database."""
    return DataStorage(str(tmp_path / "test_walemcp.db"))


@pytest.fixture
def sensor():
    return FakeSensor()


@pytest.fixture
def policy():
    return ExecutionPolicy(step_timeout_ms=2_000, task_timeout_ms=10_000)


@pytest.fixture
def planner():
    """Planner without the default planning templates, so intents fall through to dynamic planning."""
    return IntentPlanner(PlannerConfig(max_steps=20, risk_threshold="high"))


@pytest.fixture
def orchestrator(registry, planner, sensor, connector, storage, policy):
    return TaskOrchestrator(
        parser=IntentParser(),
        planner=planner,
        executor=StepExecutor(registry, policy),
        monitor=ExecutionMonitor(),
        sensor=sensor,
        connector=connector,
        storage=storage,
        policy=policy,
    )


@pytest.fixture
def context():
    return TaskContext(task_id="task_test", user_id="tester", inputs={"token": "SOL"}, environment=dict(SOL_ENVIRONMENT))
