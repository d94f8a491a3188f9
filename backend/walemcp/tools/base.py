from __future__ import annotations

from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError

from walemcp.errors import ToolInputError
from walemcp.models import PlannedStep, StepExecutionResult, TaskContext, ToolType
from walemcp.refs import Unresolved, is_unresolved


class ToolInput(BaseModel):
    model_config = ConfigDict(extra="allow")


class ToolOutput(BaseModel):
    ok: bool = True
    data: Dict[str, Any] = {}
    error: Optional[str] = None
    token_usage: int = 0


TIn = TypeVar("TIn", bound=ToolInput)


class BaseTool(Generic[TIn]):
    """
    One capability behind a step category. ``run`` is the only place a tool may
    touch the outside world; ``execute`` adapts it to the step/result contract.
    """

    id: str = ""
    type: ToolType = ToolType.API_CALL
    name: str = ""
    description: str = ""
    input_model: Type[TIn] = ToolInput

    def validate_input(self, payload: Dict[str, Any]) -> TIn:
        unresolved: List[Unresolved] = [v for v in payload.values() if is_unresolved(v)]
        present = {k: v for k, v in payload.items() if not is_unresolved(v)}
        try:
            return self.input_model.model_validate(present)
        except ValidationError as exc:
            missing = [".".join(str(p) for p in e["loc"]) for e in exc.errors() if e["type"] == "missing"]
            if missing:
                detail = f"Missing required input(s) for tool '{self.id}': {', '.join(missing)}"
                if unresolved:
                    detail += f" (unresolved: {'; '.join(str(u) for u in unresolved)})"
                raise ToolInputError(detail) from exc
            raise ToolInputError(f"Invalid input for tool '{self.id}': {exc}") from exc

    async def run(self, ctx: TaskContext, args: TIn) -> ToolOutput:
        raise NotImplementedError("Tool must implement run()")

    async def execute(self, step: PlannedStep, ctx: TaskContext) -> StepExecutionResult:
        args = self.validate_input(step.inputs)
        out = await self.run(ctx, args)
        return StepExecutionResult(
            step_id=step.step_id,
            status="success" if out.ok else "failure",
            outputs=out.data,
            error=out.error,
            token_usage=max(0, out.token_usage),
        )
