from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .environment import EnvironmentSensor
from .errors import ChainError, MCPError, PlanningError, StorageError, TemplateValidationError
from .integrations.solana import SolanaConnector
from .intent import IntentParser, apply_input_defaults
from .models import (
    DEFAULT_USER_ID,
    BranchStep,
    Intent,
    IntentContext,
    PlanItem,
    PlannedStep,
    StepCondition,
    TaskContext,
    TaskResult,
    TaskResultMetadata,
    TaskTemplate,
    UserProfile,
    WalletInfo,
    iter_leaf_steps,
    new_task_id,
)
from .monitor import ExecutionMonitor
from .planner import IntentPlanner
from .policy import ExecutionPolicy
from .refs import MISSING, get_path
from .storage import DataStorage
from .tools.executor import StepExecutor

logger = logging.getLogger(__name__)


@dataclass
class _RunState:
    executed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    adaptations: int = 0
    error: Optional[str] = None


def condition_holds(condition: StepCondition, context: TaskContext) -> Optional[bool]:
    """``None`` when the source step never ran; otherwise whether its output matches."""
    source = context.result_for(condition.source)
    if source is None:
        return None
    value = get_path(source.outputs, condition.key)
    if value is MISSING:
        return False
    return strictly_equal(value, condition.expected)


def strictly_equal(left: Any, right: Any) -> bool:
    """Equality without coercion: booleans only match booleans, numbers compare across int and float."""
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    numbers = (int, float)
    if isinstance(left, numbers) and isinstance(right, numbers):
        return left == right
    return type(left) is type(right) and left == right


def template_matches(template: TaskTemplate, criteria: Mapping[str, Any]) -> bool:
    wanted = {k: v for k, v in criteria.items() if v not in (None, "")}
    if wanted.get("id") and wanted["id"] != template.id:
        return False
    if wanted.get("name") and str(wanted["name"]).lower() not in template.name.lower():
        return False
    if wanted.get("category") and wanted["category"] != template.category:
        return False
    if wanted.get("creator") and wanted["creator"] != template.author:
        return False
    return True


def _leaf_ids(items: Sequence[PlannedStep]) -> List[str]:
    return [s.step_id for s in items]


class TaskOrchestrator:
    """
    Drives one task through parsing, sensing, planning and sequential step execution.

    Components are injected; nothing here reads configuration or global state.
    """

    def __init__(
        self,
        *,
        parser: IntentParser,
        planner: IntentPlanner,
        executor: StepExecutor,
        monitor: Optional[ExecutionMonitor] = None,
        sensor: Optional[EnvironmentSensor] = None,
        connector: Optional[SolanaConnector] = None,
        storage: Optional[DataStorage] = None,
        policy: Optional[ExecutionPolicy] = None,
    ) -> None:
        self.parser = parser
        self.planner = planner
        self.executor = executor
        self.monitor = monitor or ExecutionMonitor()
        self.sensor = sensor
        self.connector = connector
        self.storage = storage
        self.policy = policy or executor.policy
        self._templates: Dict[str, TaskTemplate] = {}
        # results with no durable copy, oldest evicted first
        self._unpersisted: "OrderedDict[str, TaskResult]" = OrderedDict()

    # ---------- Task execution ----------

    async def execute_task(
        self,
        template: TaskTemplate,
        inputs: Mapping[str, Any],
        user_id: str = DEFAULT_USER_ID,
    ) -> TaskResult:
        task_id = new_task_id()
        logger.info("Starting task execution: %s (template=%s, user=%s)", task_id, template.name, user_id)

        context = TaskContext(task_id=task_id, user_id=user_id, inputs=apply_input_defaults(template, inputs))
        try:
            intent = self.parser.parse_intent(inputs, template, user_id=user_id)
            logger.debug("Parsed intent %s: type=%s confidence=%.2f", intent.id, intent.type, intent.confidence)
        except MCPError as exc:
            return await self._fail(context, exc)

        return await self._run(context, intent, template=template)

    async def process_intent(
        self,
        intent: Intent,
        intent_context: Optional[IntentContext] = None,
        *,
        inputs: Optional[Mapping[str, Any]] = None,
    ) -> TaskResult:
        """Run an already-structured intent; parsing is skipped."""
        task_id = new_task_id()
        logger.info("Starting task execution: %s (intent=%s, user=%s)", task_id, intent.id, intent.user_id)
        context = TaskContext(task_id=task_id, user_id=intent.user_id, inputs=dict(inputs or {}))
        return await self._run(context, intent, intent_context=intent_context)

    async def _run(
        self,
        context: TaskContext,
        intent: Intent,
        *,
        template: Optional[TaskTemplate] = None,
        intent_context: Optional[IntentContext] = None,
    ) -> TaskResult:
        context.intent = intent
        try:
            if self.sensor is not None:
                context.environment = await self.sensor.gather_environment_data(intent)
            if context.environment.get("error") is True:
                logger.warning("Task %s continues with degraded environment", context.task_id)

            planning_context = self._intent_context(context, intent_context)
            plan = self.planner.generate_plan(intent, planning_context, template=template)
            logger.debug("Task %s plan: %s", context.task_id, [item.step_id for item in plan])
        except Exception as exc:  # noqa: BLE001
            return await self._fail(context, exc)

        state = _RunState()
        await self._execute_plan(plan, context, state)

        if state.error is not None:
            result = self._build_result(context, state, status="failure")
        else:
            result = self._build_result(context, state, status="success")
            logger.info("Task completed successfully: %s", context.task_id)
        return await self._finalize(result, context)

    def _intent_context(self, context: TaskContext, given: Optional[IntentContext]) -> IntentContext:
        if given is not None:
            return given.model_copy(update={"environment": {**given.environment, **context.environment}})

        wallets = context.inputs.get("wallets") or []
        profile = UserProfile(
            id=context.user_id,
            wallets=[WalletInfo(address=str(w)) for w in wallets if isinstance(w, str) and w],
        )
        preferences = context.inputs.get("preferences")
        return IntentContext(
            user_profile=profile,
            preferences=preferences if isinstance(preferences, dict) else {},
            environment=context.environment,
        )

    async def _execute_plan(self, plan: List[PlanItem], context: TaskContext, state: _RunState) -> None:
        plan = list(plan)
        i = 0
        while i < len(plan):
            if context.elapsed_ms() >= self.policy.task_timeout_ms:
                self._time_out(plan[i:], context, state)
                return

            item = plan[i]
            if isinstance(item, BranchStep):
                holds = condition_holds(item.condition, context)
                if holds is None:
                    logger.debug("Branch %s skipped: %s never ran", item.step_id, item.condition.source)
                    state.skipped.extend(_leaf_ids(item.leaves()))
                    i += 1
                    continue
                taken, other = (item.then_steps, item.else_steps) if holds else (item.else_steps, item.then_steps)
                logger.debug("Branch %s took the %s arm", item.step_id, "then" if holds else "else")
                state.skipped.extend(_leaf_ids(other))
                plan[i : i + 1] = list(taken)
                continue

            step = item
            if step.condition is not None and not condition_holds(step.condition, context):
                logger.debug("Step %s skipped: condition on %s not met", step.step_id, step.condition.source)
                state.skipped.append(step.step_id)
                i += 1
                continue

            budget_ms = self.policy.task_timeout_ms - context.elapsed_ms()
            result = await self.executor.execute_step(step, context, budget_ms=budget_ms)
            context.history.append(result)
            state.executed.append(step.step_id)
            if not result.ok:
                state.failed.append(step.step_id)
            if context.elapsed_ms() >= self.policy.task_timeout_ms:
                self._time_out(plan[i + 1 :], context, state)
                return

            if state.adaptations < self.policy.max_adaptations:
                revised = self.monitor.evaluate_execution(plan[i + 1 :], context, step, result)
                if revised is not None:
                    state.adaptations += 1
                    plan = plan[: i + 1] + list(revised)
                    logger.info("Execution plan adapted after step %s", step.step_id)
            i += 1

    def _time_out(self, remaining: Sequence[PlanItem], context: TaskContext, state: _RunState) -> None:
        state.error = f"Task timed out after {context.elapsed_ms()}ms"
        state.skipped.extend(s.step_id for s in iter_leaf_steps(remaining))
        logger.error("Task %s: %s", context.task_id, state.error)

    # ---------- Results ----------

    def _build_result(self, context: TaskContext, state: _RunState, *, status: str) -> TaskResult:
        outputs: Dict[str, Any] = dict(context.history[-1].outputs) if context.history else {}
        if state.error is not None:
            outputs = {"error": state.error}
        metadata = TaskResultMetadata(
            execution_time=context.elapsed_ms(),
            resource_usage=self._resource_usage(context),
            executed_steps=state.executed,
            skipped_steps=state.skipped,
            failed_steps=state.failed,
            adaptations=state.adaptations,
        )
        return TaskResult(task_id=context.task_id, status=status, outputs=outputs, error=state.error, metadata=metadata)

    def _resource_usage(self, context: TaskContext) -> Dict[str, int]:
        return {
            "processing_time": context.elapsed_ms(),
            "api_calls": len(context.history),
            "token_usage": sum(r.token_usage for r in context.history),
        }

    async def _fail(self, context: TaskContext, exc: BaseException) -> TaskResult:
        logger.error("Task execution failed: %s: %s", context.task_id, exc)
        result = TaskResult(
            task_id=context.task_id,
            status="failure",
            outputs={"error": str(exc)},
            error=str(exc),
            metadata=TaskResultMetadata(
                execution_time=context.elapsed_ms(),
                resource_usage=self._resource_usage(context),
            ),
        )
        return await self._finalize(result, context, with_proof=False)

    async def _finalize(self, result: TaskResult, context: TaskContext, *, with_proof: bool = True) -> TaskResult:
        updates: Dict[str, Any] = {}

        if with_proof and self.connector is not None:
            try:
                updates["on_chain_verification"] = await self.connector.store_execution_proof(context)
            except ChainError as exc:
                logger.warning("Task %s: execution proof not stored: %s", context.task_id, exc)
                updates["chain_error"] = str(exc)

        if updates:
            result = result.model_copy(update={"metadata": result.metadata.model_copy(update=updates)})

        if self.storage is None:
            self._keep_unpersisted(result)
            return result

        try:
            storage_ref = self.storage.store_result(result)
        except StorageError as exc:
            logger.warning("Task %s: result not persisted: %s", context.task_id, exc)
            result = result.model_copy(update={"metadata": result.metadata.model_copy(update={"storage_error": str(exc)})})
            self._keep_unpersisted(result)
            return result
        return result.model_copy(update={"metadata": result.metadata.model_copy(update={"storage_ref": storage_ref})})

    def _keep_unpersisted(self, result: TaskResult) -> None:
        self._unpersisted[result.task_id] = result
        while len(self._unpersisted) > self.policy.max_unpersisted_results:
            self._unpersisted.popitem(last=False)

    def get_task_result(self, task_id: str) -> Optional[TaskResult]:
        cached = self._unpersisted.get(task_id)
        if cached is not None:
            return cached
        if self.storage is None:
            return None
        return self.storage.get_task_result(task_id)

    # ---------- Templates ----------

    def validate_template(self, template: TaskTemplate) -> None:
        problems: List[str] = []
        if not template.name.strip():
            problems.append("name is required")
        if not template.version.strip():
            problems.append("version is required")

        input_names = [i.name for i in template.inputs]
        if len(set(input_names)) != len(input_names):
            problems.append("input names must be unique")

        step_ids = [s.id for s in template.steps]
        if len(set(step_ids)) != len(step_ids):
            problems.append("step ids must be unique")

        for definition in template.steps:
            lookup = PlannedStep(tool_id=definition.tool_id or definition.type.value)
            if self.executor.registry.find_for_step(lookup) is None:
                problems.append(f"step '{definition.id}': no tool for {lookup.tool_id}")

        if problems:
            raise TemplateValidationError("Invalid template structure: " + "; ".join(problems))

        if template.steps:
            try:
                self.planner.plan_from_template(template, Intent())
            except PlanningError as exc:
                raise TemplateValidationError(f"Invalid template structure: {exc}") from exc

    async def register_template(self, template: TaskTemplate, creator_id: str) -> str:
        self.validate_template(template)
        if self.connector is None:
            raise MCPError("Template registration needs a blockchain connector")

        template_id = await self.connector.register_template(template, creator_id)
        stored = template.model_copy(update={"id": template_id, "author": template.author or creator_id})
        if self.storage is not None:
            self.storage.store_template(stored, template_id)
        self._templates[template_id] = stored
        logger.info("New template registered: %s", template_id)
        return template_id

    def get_template(self, template_id: str) -> Optional[TaskTemplate]:
        template = self._templates.get(template_id)
        if template is None and self.storage is not None:
            template = self.storage.get_template(template_id)
        return template

    async def search_templates(self, criteria: Optional[Mapping[str, Any]] = None) -> List[TaskTemplate]:
        """Chain index hits first, then persisted templates the index no longer knows about."""
        criteria = criteria or {}
        found: Dict[str, TaskTemplate] = {}
        if self.connector is not None:
            for template_id in await self.connector.search_templates(criteria):
                template = self.get_template(template_id)
                if template is not None:
                    found[template_id] = template

        known = self.storage.list_templates() if self.storage is not None else list(self._templates.values())
        for template in known:
            if template.id and template.id not in found and template_matches(template, criteria):
                found[template.id] = template
        return list(found.values())
