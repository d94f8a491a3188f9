from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from .errors import InvalidPlanError, NoPlanFoundError, PlanTooLargeError, UnsupportedIntentTypeError
from .models import (
    BranchStep,
    Intent,
    IntentContext,
    PlanItem,
    PlannedStep,
    StepCondition,
    TaskTemplate,
    ToolType,
    iter_leaf_steps,
)
from .refs import EnvironmentRef, PreviousStepRef, ref_from_step_input, step_dependencies

logger = logging.getLogger(__name__)


DYNAMIC_INTENT_TYPES = ("query", "transaction", "analysis")
ENV_SENSING_STEP_ID = "step_1_env_sensing"

_CONDITION_RE = re.compile(r"^\s*([\w\-]+)\.([\w\.\-]+)\s*(?:==\s*(.+?))?\s*$")


@dataclass(frozen=True)
class PlannerConfig:
    max_steps: int = 20
    enable_dynamic_planning: bool = True
    risk_threshold: str = "high"


@dataclass(frozen=True)
class PlanningTemplate:
    id: str
    name: str
    description: str
    matches: Callable[[Intent], bool]
    generate_steps: Callable[[Intent, IntentContext], List[PlanItem]]


def _intent_payload(intent: Intent) -> Dict[str, Any]:
    return intent.model_dump(mode="json")


def parse_condition(text: str) -> StepCondition:
    """Parse ``<stepId>.<key> == <json literal>``; a bare ``<stepId>.<key>`` means ``== true``."""
    m = _CONDITION_RE.match(text or "")
    if not m:
        raise InvalidPlanError(f"Unparseable step condition: {text!r}")
    source, key, literal = m.group(1), m.group(2), m.group(3)
    if literal is None:
        return StepCondition(source=source, key=key, expected=True)
    try:
        expected = json.loads(literal)
    except ValueError:
        expected = literal.strip().strip("'\"")
    return StepCondition(source=source, key=key, expected=expected)


class IntentPlanner:
    """
    Produces an ordered plan for an intent.

    Planning templates are tried in registration order and the first match wins,
    so the order templates are passed in (or registered) is part of the contract.
    """

    def __init__(
        self,
        config: Optional[PlannerConfig] = None,
        templates: Sequence[PlanningTemplate] = (),
    ) -> None:
        self.config = config or PlannerConfig()
        self._templates: Dict[str, PlanningTemplate] = {}
        for template in templates:
            self.register_template(template)

    def register_template(self, template: PlanningTemplate) -> None:
        if template.id in self._templates:
            logger.warning("Planning template with ID %s already exists. Overwriting.", template.id)
        self._templates[template.id] = template
        logger.debug("Registered planning template: %s", template.id)

    def get_templates(self) -> List[PlanningTemplate]:
        return list(self._templates.values())

    def generate_plan(
        self,
        intent: Intent,
        context: Optional[IntentContext] = None,
        *,
        template: Optional[TaskTemplate] = None,
    ) -> List[PlanItem]:
        ctx = context or IntentContext()
        logger.debug("Generating plan for intent %s (type=%s)", intent.id, intent.type)

        if template is not None and template.steps:
            return self.plan_from_template(template, intent)

        for planning_template in self._templates.values():
            if planning_template.matches(intent):
                logger.debug("Intent %s matched planning template %s", intent.id, planning_template.id)
                return self.validate_steps(planning_template.generate_steps(intent, ctx))

        if self.config.enable_dynamic_planning:
            return self.generate_dynamic_plan(intent, ctx)

        raise NoPlanFoundError(f"No suitable planning template found for intent {intent.id}")

    def plan_from_template(self, template: TaskTemplate, intent: Intent) -> List[PlanItem]:
        payload = _intent_payload(intent)
        steps: List[PlanItem] = []
        for definition in template.steps:
            inputs: Dict[str, Any] = dict(definition.config)
            try:
                for step_input in definition.inputs:
                    inputs[step_input.name] = ref_from_step_input(step_input)
            except ValueError as exc:
                raise InvalidPlanError(f"Step '{definition.id}': {exc}") from exc
            inputs.setdefault("intent", payload)

            steps.append(
                PlannedStep(
                    step_id=definition.id,
                    tool_id=definition.tool_id or definition.type.value,
                    description=definition.description or definition.name,
                    inputs=inputs,
                    expected_outputs=[o.name for o in definition.outputs],
                    output_mappings={o.name: o.mapping for o in definition.outputs if o.mapping},
                    condition=parse_condition(definition.condition) if definition.condition else None,
                    retry=definition.retry,
                    timeout_ms=definition.timeout_ms,
                )
            )
        return self.validate_steps(steps)

    def validate_steps(self, steps: Sequence[PlanItem]) -> List[PlanItem]:
        size = sum(1 for _ in iter_leaf_steps(steps))
        if size > self.config.max_steps:
            raise PlanTooLargeError(size, self.config.max_steps)

        normalized: List[PlanItem] = []
        for index, item in enumerate(steps):
            if isinstance(item, BranchStep):
                item = item.model_copy(
                    update={
                        "step_id": item.step_id or f"step-{index}",
                        "then_steps": [
                            s if s.step_id else s.model_copy(update={"step_id": f"step-{index}-then-{j}"})
                            for j, s in enumerate(item.then_steps)
                        ],
                        "else_steps": [
                            s if s.step_id else s.model_copy(update={"step_id": f"step-{index}-else-{j}"})
                            for j, s in enumerate(item.else_steps)
                        ],
                    }
                )
            elif not item.step_id:
                item = item.model_copy(update={"step_id": f"step-{index}"})
            normalized.append(item)

        self._check_references(normalized)
        return normalized

    def _check_references(self, plan: Sequence[PlanItem]) -> None:
        seen: Set[str] = set()
        all_ids: Set[str] = set()

        def claim(step_id: str) -> None:
            if step_id in all_ids:
                raise InvalidPlanError(f"Duplicate stepId in plan: {step_id}")
            all_ids.add(step_id)

        def check(step: PlannedStep, visible: Set[str]) -> None:
            claim(step.step_id)
            deps = step_dependencies(step.inputs)
            if step.condition is not None:
                deps.add(step.condition.source)
            unknown = sorted(d for d in deps if d not in visible)
            if unknown:
                raise InvalidPlanError(
                    f"Step '{step.step_id}' references steps that do not precede it: {', '.join(unknown)}"
                )
            visible.add(step.step_id)

        for item in plan:
            if isinstance(item, BranchStep):
                claim(item.step_id)
                if item.condition.source not in seen:
                    raise InvalidPlanError(
                        f"Branch '{item.step_id}' conditions on a step that does not precede it: {item.condition.source}"
                    )
                # the arms are exclusive: neither sees the other's steps
                for arm in (item.then_steps, item.else_steps):
                    visible = set(seen)
                    for step in arm:
                        check(step, visible)
                seen.update(step.step_id for step in item.leaves())
            else:
                check(item, seen)

    # ---------- Dynamic planning ----------

    def generate_dynamic_plan(self, intent: Intent, context: IntentContext) -> List[PlanItem]:
        if intent.type not in DYNAMIC_INTENT_TYPES:
            raise UnsupportedIntentTypeError(f"Cannot dynamically generate plan for intent type: {intent.type}")

        logger.debug("Generating dynamic %s plan for intent %s", intent.type, intent.id)
        payload = _intent_payload(intent)
        steps: List[PlanItem] = [
            PlannedStep(
                step_id=ENV_SENSING_STEP_ID,
                tool_id=ToolType.ENVIRONMENT_SENSOR.value,
                description="Gather environmental data",
                inputs={
                    "intent": payload,
                    "include_market_data": True,
                    "include_price_data": True,
                },
                expected_outputs=["environmentData"],
            )
        ]

        if intent.type == "query":
            steps.extend(self._query_steps(payload))
        elif intent.type == "transaction":
            steps.extend(self._transaction_steps(payload))
        else:
            steps.extend(self._analysis_steps(payload))

        return self.validate_steps(steps)

    def _query_steps(self, payload: Dict[str, Any]) -> List[PlanItem]:
        return [
            PlannedStep(
                step_id="step_2_data_retrieval",
                tool_id=ToolType.API_CALL.value,
                description="Retrieve data relevant to query",
                inputs={
                    "intent": payload,
                    "environmentData": PreviousStepRef(step_id=ENV_SENSING_STEP_ID, path="environmentData"),
                },
                expected_outputs=["data"],
            ),
            PlannedStep(
                step_id="step_3_data_processing",
                tool_id=ToolType.DATA_TRANSFORMATION.value,
                description="Process and transform query data",
                inputs={"data": PreviousStepRef(step_id="step_2_data_retrieval", path="data")},
                expected_outputs=["processedData", "trends"],
            ),
            PlannedStep(
                step_id="step_4_analysis",
                tool_id=ToolType.AI_ANALYSIS.value,
                description="Analyze data and generate insights",
                inputs={
                    "data": PreviousStepRef(step_id="step_3_data_processing", path="processedData"),
                    "trends": PreviousStepRef(step_id="step_3_data_processing", path="trends"),
                    "intent": payload,
                    "analysis_type": "query_response",
                },
                expected_outputs=["analysis", "summary"],
            ),
        ]

    def _transaction_steps(self, payload: Dict[str, Any]) -> List[PlanItem]:
        risk_ref = PreviousStepRef(step_id="step_2_tx_analysis", path="risk")
        return [
            PlannedStep(
                step_id="step_2_tx_analysis",
                tool_id=ToolType.AI_ANALYSIS.value,
                description="Analyze transaction parameters",
                inputs={
                    "intent": payload,
                    "environmentData": PreviousStepRef(step_id=ENV_SENSING_STEP_ID, path="environmentData"),
                    "analysis_type": "transaction_preparation",
                },
                expected_outputs=["transactionParams", "risk"],
            ),
            PlannedStep(
                step_id="step_3_risk_check",
                tool_id=ToolType.CONDITIONAL.value,
                description="Check transaction risk level",
                inputs={
                    "value": risk_ref,
                    "condition": {"operator": "less_than", "value": self.config.risk_threshold},
                },
                expected_outputs=["conditionMet"],
            ),
            BranchStep(
                step_id="step_4_risk_gate",
                description="Execute the transaction or report the risk",
                condition=StepCondition(source="step_3_risk_check", key="conditionMet", expected=True),
                then_steps=[
                    PlannedStep(
                        step_id="step_4_transaction",
                        tool_id=ToolType.SOLANA_TRANSACTION.value,
                        description="Execute Solana transaction",
                        inputs={
                            "transactionParams": PreviousStepRef(step_id="step_2_tx_analysis", path="transactionParams"),
                            "riskCheckPassed": PreviousStepRef(step_id="step_3_risk_check", path="conditionMet"),
                        },
                        expected_outputs=["transactionResult"],
                    ),
                    PlannedStep(
                        step_id="step_5_report",
                        tool_id=ToolType.AI_ANALYSIS.value,
                        description="Generate transaction report",
                        inputs={
                            "transactionResult": PreviousStepRef(step_id="step_4_transaction", path="transactionResult"),
                            "intent": payload,
                            "analysis_type": "transaction_report",
                        },
                        expected_outputs=["report", "summary"],
                    ),
                ],
                else_steps=[
                    PlannedStep(
                        step_id="step_5_risk_report",
                        tool_id=ToolType.AI_ANALYSIS.value,
                        description="Generate risk assessment report",
                        inputs={"risk": risk_ref, "intent": payload, "analysis_type": "risk_report"},
                        expected_outputs=["report", "summary"],
                    ),
                ],
            ),
        ]

    def _analysis_steps(self, payload: Dict[str, Any]) -> List[PlanItem]:
        data_ref = PreviousStepRef(step_id="step_3_data_processing", path="processedData")
        return [
            PlannedStep(
                step_id="step_2_data_retrieval",
                tool_id=ToolType.API_CALL.value,
                description="Retrieve data for analysis",
                inputs={
                    "intent": payload,
                    "environmentData": PreviousStepRef(step_id=ENV_SENSING_STEP_ID, path="environmentData"),
                },
                expected_outputs=["data"],
            ),
            PlannedStep(
                step_id="step_3_data_processing",
                tool_id=ToolType.DATA_TRANSFORMATION.value,
                description="Process and prepare data for analysis",
                inputs={"data": PreviousStepRef(step_id="step_2_data_retrieval", path="data")},
                expected_outputs=["processedData"],
            ),
            PlannedStep(
                step_id="step_4_initial_analysis",
                tool_id=ToolType.AI_ANALYSIS.value,
                description="Perform initial analysis",
                inputs={"data": data_ref, "intent": payload, "analysis_type": "initial"},
                expected_outputs=["initialInsights", "metrics"],
            ),
            PlannedStep(
                step_id="step_5_deep_analysis",
                tool_id=ToolType.AI_ANALYSIS.value,
                description="Perform deep analysis based on initial findings",
                inputs={
                    "data": data_ref,
                    "initialInsights": PreviousStepRef(step_id="step_4_initial_analysis", path="initialInsights"),
                    "metrics": PreviousStepRef(step_id="step_4_initial_analysis", path="metrics"),
                    "intent": payload,
                    "analysis_type": "deep",
                },
                expected_outputs=["analysis", "portfolio", "summary", "impact"],
            ),
        ]


# ---------- Default planning templates ----------

def _mentions(intent: Intent, *words: str) -> bool:
    content = (intent.content or "").lower()
    return any(w in content for w in words)


def default_planning_templates(risk_threshold: str = "high") -> List[PlanningTemplate]:
    def token_price_steps(intent: Intent, context: IntentContext) -> List[PlanItem]:
        tokens = [str(e.value) for e in intent.entities_of("token")]
        return [
            PlannedStep(
                step_id="fetchTokenPrices",
                tool_id=ToolType.DATA_TRANSFORMATION.value,
                description="Fetch token prices",
                inputs={"data": EnvironmentRef(path="prices"), "operation": "select", "keys": tokens},
                expected_outputs=["prices"],
                output_mappings={"prices": "processedData"},
            ),
            PlannedStep(
                step_id="formatPriceResponse",
                tool_id=ToolType.AI_ANALYSIS.value,
                description="Format price information response",
                inputs={
                    "prices": PreviousStepRef(step_id="fetchTokenPrices", path="prices"),
                    "tokens": tokens,
                    "currency": "USD",
                    "intent": _intent_payload(intent),
                    "analysis_type": "price_report",
                },
                expected_outputs=["response", "summary"],
            ),
        ]

    def fund_transfer_steps(intent: Intent, context: IntentContext) -> List[PlanItem]:
        return [
            PlannedStep(
                step_id="extractTransferParams",
                tool_id=ToolType.AI_ANALYSIS.value,
                description="Extract transfer parameters",
                inputs={
                    "intent": _intent_payload(intent),
                    "userWallets": context.wallet_addresses(),
                    "analysis_type": "transaction_preparation",
                },
                expected_outputs=["transactionParams", "risk"],
            ),
            PlannedStep(
                step_id="validateTransfer",
                tool_id=ToolType.CONDITIONAL.value,
                description="Validate transfer risk",
                inputs={
                    "value": PreviousStepRef(step_id="extractTransferParams", path="risk"),
                    "condition": {"operator": "less_than", "value": risk_threshold},
                },
                expected_outputs=["conditionMet"],
            ),
            PlannedStep(
                step_id="executeTransfer",
                tool_id=ToolType.SOLANA_TRANSACTION.value,
                description="Execute the transfer",
                inputs={
                    "transactionParams": PreviousStepRef(step_id="extractTransferParams", path="transactionParams"),
                    "riskCheckPassed": PreviousStepRef(step_id="validateTransfer", path="conditionMet"),
                },
                expected_outputs=["transactionResult"],
                condition=StepCondition(source="validateTransfer", key="conditionMet", expected=True),
            ),
        ]

    def portfolio_steps(intent: Intent, context: IntentContext) -> List[PlanItem]:
        return [
            PlannedStep(
                step_id="fetchPortfolioData",
                tool_id=ToolType.API_CALL.value,
                description="Fetch portfolio data for analysis",
                inputs={
                    "intent": _intent_payload(intent),
                    "wallets": context.wallet_addresses(),
                    "environmentData": EnvironmentRef(),
                    "time_range": "30d",
                },
                expected_outputs=["portfolioData"],
                output_mappings={"portfolioData": "data"},
            ),
            PlannedStep(
                step_id="analyzePortfolio",
                tool_id=ToolType.AI_ANALYSIS.value,
                description="Analyze portfolio performance and composition",
                inputs={
                    "portfolioData": PreviousStepRef(step_id="fetchPortfolioData", path="portfolioData"),
                    "metrics": ["performance", "risk", "diversification"],
                    "analysis_type": "portfolio",
                },
                expected_outputs=["analysis"],
            ),
            PlannedStep(
                step_id="generatePortfolioReport",
                tool_id=ToolType.AI_ANALYSIS.value,
                description="Generate portfolio analysis report",
                inputs={
                    "analysis": PreviousStepRef(step_id="analyzePortfolio", path="analysis"),
                    "format": intent.metadata.get("format", "summary"),
                    "analysis_type": "portfolio_report",
                },
                expected_outputs=["report", "summary"],
            ),
        ]

    return [
        PlanningTemplate(
            id="token-price-query",
            name="Token Price Query",
            description="Handles queries about token prices",
            matches=lambda intent: intent.type == "query"
            and _mentions(intent, "price")
            and bool(intent.entities_of("token")),
            generate_steps=token_price_steps,
        ),
        PlanningTemplate(
            id="fund-transfer",
            name="Fund Transfer",
            description="Handles requests to transfer funds",
            matches=lambda intent: intent.type == "transaction" and _mentions(intent, "send", "transfer"),
            generate_steps=fund_transfer_steps,
        ),
        PlanningTemplate(
            id="portfolio-analysis",
            name="Portfolio Analysis",
            description="Handles requests to analyze user portfolio",
            matches=lambda intent: intent.type == "analysis" and _mentions(intent, "portfolio"),
            generate_steps=portfolio_steps,
        ),
    ]
