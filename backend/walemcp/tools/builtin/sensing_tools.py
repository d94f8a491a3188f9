from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import Field, ValidationError

from walemcp.environment import EnvironmentSensor
from walemcp.errors import ToolExecutionError
from walemcp.models import Intent, TaskContext, ToolType
from walemcp.tools.base import BaseTool, ToolInput, ToolOutput

logger = logging.getLogger(__name__)


def _intent_from(ctx: TaskContext, payload: Optional[Dict[str, Any]]) -> Optional[Intent]:
    if ctx.intent is not None:
        return ctx.intent
    if not payload:
        return None
    try:
        return Intent.model_validate(payload)
    except ValidationError:
        return None


class EnvironmentSensingInput(ToolInput):
    intent: Optional[Dict[str, Any]] = None
    include_market_data: bool = True
    include_price_data: bool = True


class EnvironmentSensingTool(BaseTool[EnvironmentSensingInput]):
    id = ToolType.ENVIRONMENT_SENSOR.value
    type = ToolType.ENVIRONMENT_SENSOR
    name = "Environment Sensor"
    description = "Returns the sensed environment; senses again only when the task has none."

    input_model = EnvironmentSensingInput

    def __init__(self, sensor: Optional[EnvironmentSensor] = None) -> None:
        self.sensor = sensor

    async def run(self, ctx: TaskContext, args: EnvironmentSensingInput) -> ToolOutput:
        environment = dict(ctx.environment)
        if not environment and self.sensor is not None:
            intent = _intent_from(ctx, args.intent) or Intent()
            environment = await self.sensor.gather_environment_data(intent)
            ctx.environment.update(environment)

        if not args.include_price_data:
            environment.pop("prices", None)
        if not args.include_market_data:
            environment.pop("market", None)
        return ToolOutput(ok=True, data={"environmentData": environment})


class ApiCallInput(ToolInput):
    url: Optional[str] = None
    method: str = Field(default="GET", pattern=r"^(GET|POST|PUT|PATCH|DELETE)$")
    params: Dict[str, Any] = Field(default_factory=dict)
    body: Optional[Any] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    intent: Optional[Dict[str, Any]] = None
    environmentData: Optional[Dict[str, Any]] = None


class ApiCallTool(BaseTool[ApiCallInput]):
    id = ToolType.API_CALL.value
    type = ToolType.API_CALL
    name = "API Call"
    description = "Makes HTTP requests to external APIs or assembles query data from the intent."

    input_model = ApiCallInput

    def __init__(
        self,
        *,
        timeout_s: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout_s = timeout_s
        self._transport = transport

    async def run(self, ctx: TaskContext, args: ApiCallInput) -> ToolOutput:
        if args.url:
            return ToolOutput(ok=True, data={"data": await self._request(args)})
        return ToolOutput(ok=True, data={"data": self._assemble(ctx, args)})

    async def _request(self, args: ApiCallInput) -> Any:
        logger.debug("API call %s %s", args.method, args.url)
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
                res = await client.request(
                    args.method,
                    args.url or "",
                    params=args.params or None,
                    json=args.body,
                    headers=args.headers or None,
                )
        except httpx.HTTPError as exc:
            raise ToolExecutionError(f"API request failed: {exc}") from exc

        if res.status_code >= 400:
            raise ToolExecutionError(f"API upstream error: {res.status_code} {res.text[:300]}")

        try:
            return res.json()
        except ValueError:
            return {"text": res.text}

    def _assemble(self, ctx: TaskContext, args: ApiCallInput) -> Dict[str, Any]:
        environment = args.environmentData if args.environmentData is not None else ctx.environment
        intent = _intent_from(ctx, args.intent)

        data: Dict[str, Any] = {
            "query": intent.content if intent else "",
            "entities": [e.model_dump() for e in intent.entities] if intent else [],
        }
        for key in ("network", "accounts", "prices", "market"):
            if environment.get(key) is not None:
                data[key] = environment[key]

        extra: Dict[str, Any] = dict(args.model_extra or {})
        if extra:
            data["request"] = extra
        return data
