from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field

from walemcp.errors import ToolInputError
from walemcp.models import TaskContext, ToolType
from walemcp.risk import RISK_LEVELS, is_risk_value, risk_rank
from walemcp.tools.base import BaseTool, ToolInput, ToolOutput


# ---------- Data transformation ----------

def flatten(value: Any, prefix: str = "", out: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    out = {} if out is None else out
    if isinstance(value, dict) and value:
        for k, v in value.items():
            flatten(v, f"{prefix}.{k}" if prefix else str(k), out)
    elif isinstance(value, list) and value and all(isinstance(v, dict) for v in value):
        for i, v in enumerate(value):
            flatten(v, f"{prefix}.{i}" if prefix else str(i), out)
    else:
        out[prefix or "value"] = value
    return out


def drop_empty(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: drop_empty(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [drop_empty(v) for v in value if v is not None]
    return value


def select_keys(data: Any, keys: List[str]) -> Dict[str, Any]:
    if not isinstance(data, dict):
        return {}
    by_upper = {str(k).upper(): k for k in data}
    selected: Dict[str, Any] = {}
    for key in keys:
        actual = key if key in data else by_upper.get(str(key).upper())
        if actual is not None:
            selected[str(key)] = data[actual]
    return selected


def detect_trends(data: Any) -> Dict[str, Dict[str, Any]]:
    """Direction and relative change for every numeric series (list of >= 2 numbers) in ``data``."""
    trends: Dict[str, Dict[str, Any]] = {}
    if not isinstance(data, dict):
        return trends
    for key, value in flatten(data).items():
        if not isinstance(value, list):
            continue
        numbers = [float(v) for v in value if isinstance(v, (int, float)) and not isinstance(v, bool)]
        if len(numbers) < 2:
            continue
        first, last = numbers[0], numbers[-1]
        if last > first:
            direction = "up"
        elif last < first:
            direction = "down"
        else:
            direction = "stable"
        change = (last - first) / abs(first) if first else None
        trends[key] = {"direction": direction, "change": change, "points": len(numbers)}
    return trends


class DataTransformationInput(ToolInput):
    data: Any
    operation: Optional[Literal["normalize", "flatten", "select"]] = None
    keys: List[str] = Field(default_factory=list)


class DataTransformationTool(BaseTool[DataTransformationInput]):
    id = ToolType.DATA_TRANSFORMATION.value
    type = ToolType.DATA_TRANSFORMATION
    name = "Data Transformation"
    description = "Normalizes, flattens or selects data and reports numeric trends."

    input_model = DataTransformationInput

    async def run(self, ctx: TaskContext, args: DataTransformationInput) -> ToolOutput:
        if args.operation == "select":
            processed: Any = select_keys(args.data, args.keys)
        elif args.operation == "flatten":
            processed = flatten(args.data)
        else:
            processed = drop_empty(args.data)

        return ToolOutput(ok=True, data={"processedData": processed, "trends": detect_trends(args.data)})


# ---------- Conditional ----------

Operator = Literal[
    "equals",
    "not_equals",
    "less_than",
    "less_than_or_equal",
    "greater_than",
    "greater_than_or_equal",
    "in",
    "truthy",
]


class Condition(BaseModel):
    operator: Operator = "truthy"
    value: Any = None


class ConditionalInput(ToolInput):
    value: Any
    condition: Union[Condition, bool] = Field(default_factory=Condition)


def _ordered_pair(left: Any, right: Any) -> Tuple[float, float]:
    if isinstance(right, str) and right.strip().lower() in RISK_LEVELS:
        if not is_risk_value(left):
            raise ToolInputError(f"Cannot compare {left!r} with risk level {right!r}")
        return float(risk_rank(left)), float(risk_rank(right))
    try:
        return float(left), float(right)
    except (TypeError, ValueError) as exc:
        raise ToolInputError(f"Cannot compare {left!r} with {right!r}") from exc


def evaluate_condition(value: Any, condition: Condition) -> bool:
    op = condition.operator
    if op == "truthy":
        return bool(value)
    if op == "equals":
        return value == condition.value
    if op == "not_equals":
        return value != condition.value
    if op == "in":
        options = condition.value if isinstance(condition.value, (list, tuple, set)) else [condition.value]
        return value in options

    if value is None:
        raise ToolInputError(f"Condition '{op}' needs a value to compare")
    left, right = _ordered_pair(value, condition.value)
    if op == "less_than":
        return left < right
    if op == "less_than_or_equal":
        return left <= right
    if op == "greater_than":
        return left > right
    return left >= right


class ConditionalTool(BaseTool[ConditionalInput]):
    id = ToolType.CONDITIONAL.value
    type = ToolType.CONDITIONAL
    name = "Conditional"
    description = "Evaluates a condition against a value and reports conditionMet."

    input_model = ConditionalInput

    async def run(self, ctx: TaskContext, args: ConditionalInput) -> ToolOutput:
        if isinstance(args.condition, bool):
            met = args.condition and bool(args.value)
        else:
            met = evaluate_condition(args.value, args.condition)
        return ToolOutput(ok=True, data={"conditionMet": met, "value": args.value})
