from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from walemcp.errors import StepTimeoutError, ToolExecutionError, ToolInputError, ToolNotFoundError
from walemcp.models import PlannedStep, StepExecutionResult, TaskContext
from walemcp.policy import ExecutionPolicy, backoff_delay_ms, clamp_timeout_ms, should_retry
from walemcp.refs import MISSING, get_path, is_unresolved, resolve_inputs
from walemcp.tools.base import BaseTool
from walemcp.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[Any]]


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class StepExecutor:
    """
    Runs one planned step through the registry. ``execute_step`` never raises:
    every failure comes back as a ``failure`` result.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        policy: Optional[ExecutionPolicy] = None,
        *,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.policy = policy or ExecutionPolicy()
        self._sleep = sleep

    async def execute_step(
        self,
        step: PlannedStep,
        context: TaskContext,
        *,
        budget_ms: Optional[int] = None,
    ) -> StepExecutionResult:
        """``budget_ms`` caps the wall time of all attempts together, retries and backoff included."""
        started = time.perf_counter()
        logger.debug("Executing step %s using tool %s", step.step_id, step.tool_id)

        try:
            tool = self.registry.find_for_step(step)
            if tool is None:
                raise ToolNotFoundError(f"No tool found for step: {step.step_id} (tool ID: {step.tool_id})")

            resolved = resolve_inputs(step.inputs, context)
            unresolved = sorted(name for name, value in resolved.items() if is_unresolved(value))
            bound = step.model_copy(update={"inputs": resolved})

            result, attempts = await self._run_with_retry(tool, bound, context, budget_ms)
            return self._finalize(result, step, tool, attempts, unresolved, started)
        except ToolNotFoundError as exc:
            logger.warning("Step %s failed: %s", step.step_id, exc)
            return self._failure(step.step_id, str(exc), started, metadata={"attempts": 0})
        except Exception as exc:  # noqa: BLE001
            logger.error("Unexpected error executing step %s: %s", step.step_id, exc)
            return self._failure(step.step_id, f"Unhandled executor error: {exc}", started)

    async def _run_with_retry(
        self,
        tool: BaseTool,
        step: PlannedStep,
        context: TaskContext,
        budget_ms: Optional[int] = None,
    ) -> Tuple[StepExecutionResult, int]:
        retry = step.retry or self.policy.default_retry
        timeout_ms = clamp_timeout_ms(step.timeout_ms, self.policy)
        started = time.perf_counter()

        attempt = 0
        while True:
            attempt += 1
            limit_ms = timeout_ms
            if budget_ms is not None:
                limit_ms = max(1, min(timeout_ms, budget_ms - _elapsed_ms(started)))
            result, failure_kind = await self._attempt(tool, step, context, limit_ms)
            if result.ok or attempt >= retry.max_attempts or not should_retry(retry, failure_kind):
                return result, attempt

            delay = backoff_delay_ms(retry, attempt)
            if budget_ms is not None and _elapsed_ms(started) + delay >= budget_ms:
                return result, attempt
            logger.info(
                "Step %s attempt %d/%d failed (%s); retrying in %dms",
                step.step_id,
                attempt,
                retry.max_attempts,
                result.error,
                delay,
            )
            if delay:
                await self._sleep(delay / 1000.0)

    async def _attempt(
        self,
        tool: BaseTool,
        step: PlannedStep,
        context: TaskContext,
        timeout_ms: int,
    ) -> Tuple[StepExecutionResult, Optional[str]]:
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(tool.execute(step, context), timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            error = StepTimeoutError(step.step_id, timeout_ms)
            return self._failure(step.step_id, str(error), started), "timeout"
        except ToolInputError as exc:
            return self._failure(step.step_id, str(exc), started), None
        except ToolExecutionError as exc:
            return self._failure(step.step_id, str(exc), started), "failure"
        except Exception as exc:  # noqa: BLE001
            return self._failure(step.step_id, f"Unhandled tool error: {exc}", started), "failure"

        if result.duration <= 0:
            result = result.model_copy(update={"duration": _elapsed_ms(started)})
        return result, None if result.ok else "failure"

    def _finalize(
        self,
        result: StepExecutionResult,
        step: PlannedStep,
        tool: BaseTool,
        attempts: int,
        unresolved: List[str],
        started: float,
    ) -> StepExecutionResult:
        outputs = dict(result.outputs)
        if result.ok:
            for name, mapping in step.output_mappings.items():
                value = get_path(outputs, mapping)
                if value is not MISSING:
                    outputs[name] = value

        metadata: Dict[str, Any] = {**result.metadata, "attempts": attempts, "tool_id": tool.id}
        if unresolved:
            metadata["unresolved_inputs"] = unresolved

        error = result.error
        if not result.ok and not error:
            error = f"Tool '{tool.id}' reported failure"

        if result.ok:
            logger.debug("Step %s executed successfully", step.step_id)
        else:
            logger.warning("Step %s failed after %d attempt(s): %s", step.step_id, attempts, error)

        return result.model_copy(
            update={
                "step_id": step.step_id,
                "outputs": outputs,
                "error": error,
                "duration": max(result.duration, 0) or _elapsed_ms(started),
                "metadata": metadata,
            }
        )

    def _failure(
        self,
        step_id: str,
        error: str,
        started: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StepExecutionResult:
        return StepExecutionResult(
            step_id=step_id,
            status="failure",
            outputs={},
            error=error or "Step failed",
            duration=_elapsed_ms(started),
            token_usage=0,
            metadata=metadata or {},
        )
