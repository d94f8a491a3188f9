from __future__ import annotations

import logging
from typing import List, Optional, Protocol, Sequence, Set

from .models import BranchStep, PlanItem, PlannedStep, StepExecutionResult, TaskContext, ToolType, iter_leaf_steps
from .refs import PreviousStepRef, step_dependencies
from .risk import is_risk_value, normalize_risk, risk_exceeds

logger = logging.getLogger(__name__)


FAILURE_REPORT_SUFFIX = "_failure_report"
RISK_MITIGATION_SUFFIX = "_risk_mitigation"


class AdaptationPolicy(Protocol):
    def adapt(
        self,
        remaining: List[PlanItem],
        context: TaskContext,
        step: PlannedStep,
        result: StepExecutionResult,
    ) -> Optional[List[PlanItem]]:
        ...


def _step_deps(step: PlannedStep) -> Set[str]:
    deps = step_dependencies(step.inputs)
    if step.condition is not None:
        deps.add(step.condition.source)
    return deps


def _plan_ids(plan: Sequence[PlanItem]) -> Set[str]:
    ids = {item.step_id for item in plan}
    ids.update(s.step_id for s in iter_leaf_steps(plan))
    return ids


class FailureReroutePolicy:
    """
    Routes around a failed step: remaining steps that depend on it (directly or
    through another dropped step) are removed and one failure report is appended.
    """

    def adapt(
        self,
        remaining: List[PlanItem],
        context: TaskContext,
        step: PlannedStep,
        result: StepExecutionResult,
    ) -> Optional[List[PlanItem]]:
        if result.ok or step.step_id.endswith(FAILURE_REPORT_SUFFIX):
            return None

        report_id = f"{step.step_id}{FAILURE_REPORT_SUFFIX}"
        if report_id in _plan_ids(remaining):
            return None

        failed: Set[str] = {step.step_id}
        dropped: List[str] = []
        kept: List[PlanItem] = []
        for item in remaining:
            if isinstance(item, BranchStep):
                leaves = item.leaves()
                deps = {item.condition.source}
                for leaf in leaves:
                    deps |= _step_deps(leaf)
                if deps & failed:
                    failed.add(item.step_id)
                    failed.update(leaf.step_id for leaf in leaves)
                    dropped.extend(leaf.step_id for leaf in leaves)
                    continue
            elif _step_deps(item) & failed:
                failed.add(item.step_id)
                dropped.append(item.step_id)
                continue
            kept.append(item)

        report = PlannedStep(
            step_id=report_id,
            tool_id=ToolType.AI_ANALYSIS.value,
            description=f"Report failure of step {step.step_id}",
            inputs={
                "analysis_type": "failure_report",
                "failed_step": step.step_id,
                "error": result.error or "",
                "dropped_steps": dropped,
            },
            expected_outputs=["report", "summary"],
        )
        if dropped:
            logger.info("Dropping steps %s after failure of %s", ", ".join(dropped), step.step_id)
        return [*kept, report]


class RiskMitigationPolicy:
    """Inserts a mitigation step when a step reports a risk above tolerance, once per source step."""

    def __init__(self, tolerance: str = "high", output_key: str = "risk") -> None:
        self.tolerance = normalize_risk(tolerance) or "high"
        self.output_key = output_key

    def adapt(
        self,
        remaining: List[PlanItem],
        context: TaskContext,
        step: PlannedStep,
        result: StepExecutionResult,
    ) -> Optional[List[PlanItem]]:
        if not result.ok:
            return None
        risk = result.outputs.get(self.output_key)
        if not is_risk_value(risk) or not risk_exceeds(risk, self.tolerance):
            return None

        mitigation_id = f"{step.step_id}{RISK_MITIGATION_SUFFIX}"
        if mitigation_id in _plan_ids(remaining) or context.result_for(mitigation_id) is not None:
            return None

        logger.info("Step %s reported %s risk (tolerance %s)", step.step_id, normalize_risk(risk), self.tolerance)
        mitigation = PlannedStep(
            step_id=mitigation_id,
            tool_id=ToolType.AI_ANALYSIS.value,
            description=f"Mitigate risk reported by {step.step_id}",
            inputs={
                "analysis_type": "risk_mitigation",
                "risk": PreviousStepRef(step_id=step.step_id, path=self.output_key),
                "source_step": step.step_id,
            },
            expected_outputs=["recommendations", "summary"],
        )
        return [mitigation, *remaining]


class ExecutionMonitor:
    """
    Inspects each executed step and may replace the remaining plan.

    ``evaluate_execution`` returns ``None`` when nothing changes; otherwise the new
    list of steps that should run after ``step``.
    """

    def __init__(self, policies: Optional[Sequence[AdaptationPolicy]] = None) -> None:
        if policies is None:
            policies = [FailureReroutePolicy(), RiskMitigationPolicy()]
        self.policies = list(policies)

    def evaluate_execution(
        self,
        remaining: Sequence[PlanItem],
        context: TaskContext,
        step: PlannedStep,
        result: StepExecutionResult,
    ) -> Optional[List[PlanItem]]:
        current = list(remaining)
        changed = False
        for policy in self.policies:
            revised = policy.adapt(current, context, step, result)
            if revised is not None:
                current = revised
                changed = True
        return current if changed else None
