from __future__ import annotations


class MCPError(Exception):
    pass


class ParseError(MCPError):
    pass


class TemplateValidationError(MCPError):
    pass


# ---------- Planning ----------

class PlanningError(MCPError):
    pass


class NoPlanFoundError(PlanningError):
    pass


class UnsupportedIntentTypeError(PlanningError):
    pass


class PlanTooLargeError(PlanningError):
    def __init__(self, size: int, max_steps: int) -> None:
        super().__init__(f"Plan exceeds maximum number of steps ({size} > {max_steps})")
        self.size = size
        self.max_steps = max_steps


class InvalidPlanError(PlanningError):
    pass


# ---------- Step execution ----------

class ToolNotFoundError(MCPError):
    pass


class ToolExecutionError(RuntimeError, MCPError):
    pass


class ToolInputError(ToolExecutionError):
    pass


class StepTimeoutError(MCPError):
    def __init__(self, step_id: str, timeout_ms: int) -> None:
        super().__init__(f"Step '{step_id}' timed out after {timeout_ms}ms")
        self.step_id = step_id
        self.timeout_ms = timeout_ms


# ---------- Collaborators ----------

class CollaboratorError(MCPError):
    pass


class StorageError(CollaboratorError):
    pass


class ChainError(CollaboratorError):
    pass
