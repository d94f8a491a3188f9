from __future__ import annotations

from typing import Optional

from walemcp.environment import EnvironmentSensor
from walemcp.integrations.solana import SolanaConnector
from walemcp.intent import IntentParser
from walemcp.llm_client import LLMClient
from walemcp.monitor import ExecutionMonitor, FailureReroutePolicy, RiskMitigationPolicy
from walemcp.orchestrator import TaskOrchestrator
from walemcp.planner import IntentPlanner, PlannerConfig, default_planning_templates
from walemcp.policy import ExecutionPolicy
from walemcp.settings import Settings, get_settings
from walemcp.storage import DataStorage
from walemcp.tools.builtin.analysis_tools import AIAnalysisTool
from walemcp.tools.builtin.chain_tools import SolanaTransactionTool
from walemcp.tools.builtin.data_tools import ConditionalTool, DataTransformationTool
from walemcp.tools.builtin.sensing_tools import ApiCallTool, EnvironmentSensingTool
from walemcp.tools.executor import StepExecutor
from walemcp.tools.registry import ToolRegistry


def build_tool_registry(
    *,
    connector: SolanaConnector,
    sensor: Optional[EnvironmentSensor] = None,
    llm: Optional[LLMClient] = None,
) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(EnvironmentSensingTool(sensor=sensor))
    registry.register(ApiCallTool())
    registry.register(DataTransformationTool())
    registry.register(AIAnalysisTool(llm=llm))
    registry.register(ConditionalTool())
    registry.register(SolanaTransactionTool(connector=connector))
    return registry


def build_planner(settings: Settings) -> IntentPlanner:
    config = PlannerConfig(
        max_steps=settings.max_steps,
        enable_dynamic_planning=settings.enable_dynamic_planning,
        risk_threshold=settings.risk_threshold,
    )
    templates = default_planning_templates(settings.risk_threshold) if settings.enable_default_templates else []
    return IntentPlanner(config, templates)


def build_orchestrator(
    settings: Optional[Settings] = None,
    *,
    storage: Optional[DataStorage] = None,
) -> TaskOrchestrator:
    settings = settings or get_settings()

    connector = SolanaConnector(
        settings.solana_endpoint,
        program_id=settings.solana_program_id,
        dry_run=settings.solana_dry_run,
    )
    sensor = EnvironmentSensor(
        connector,
        price_api_url=settings.price_api_url,
        market_api_url=settings.market_api_url,
    )
    llm = LLMClient(
        api_key=settings.llm_api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        timeout_s=settings.llm_timeout_s,
    )
    policy = ExecutionPolicy(
        step_timeout_ms=settings.step_timeout_ms,
        task_timeout_ms=settings.task_timeout_ms,
    )

    registry = build_tool_registry(connector=connector, sensor=sensor, llm=llm)
    return TaskOrchestrator(
        parser=IntentParser(),
        planner=build_planner(settings),
        executor=StepExecutor(registry, policy),
        monitor=ExecutionMonitor([FailureReroutePolicy(), RiskMitigationPolicy(settings.risk_tolerance)]),
        sensor=sensor,
        connector=connector,
        storage=storage or DataStorage(settings.storage_db_path),
        policy=policy,
    )
