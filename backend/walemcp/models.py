from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Literal, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field


DEFAULT_USER_ID = "local-dev"

StepStatus = Literal["success", "failure", "in_progress"]
TemplateCategory = Literal["defi", "dao", "analytics", "content", "development", "other"]
RefSource = Literal["user_input", "previous_step", "environment", "constant"]


def now_ms() -> int:
    return int(time.time() * 1000)


def new_task_id() -> str:
    return f"task_{uuid.uuid4().hex}"


def new_intent_id() -> str:
    return f"intent_{uuid.uuid4().hex[:16]}"


class ToolType(str, Enum):
    API_CALL = "api_call"
    SOLANA_TRANSACTION = "solana_transaction"
    AI_ANALYSIS = "ai_analysis"
    DATA_TRANSFORMATION = "data_transformation"
    CONDITIONAL = "conditional"
    ENVIRONMENT_SENSOR = "environment_sensor"


# ---------- Intent ----------

class Entity(BaseModel):
    type: str = Field(min_length=1)
    value: Any = None
    metadata: Optional[Dict[str, Any]] = None


class Intent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_intent_id)
    type: str = "query"
    content: str = ""
    action: Optional[str] = None
    entities: List[Entity] = Field(default_factory=list)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    timestamp: int = Field(default_factory=now_ms)
    user_id: str = DEFAULT_USER_ID
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def entities_of(self, entity_type: str) -> List[Entity]:
        return [e for e in self.entities if e.type == entity_type]


class WalletInfo(BaseModel):
    address: str
    chain: str = "solana"
    type: str = "wallet"
    label: Optional[str] = None


class UserProfile(BaseModel):
    id: str
    preferences: Dict[str, Any] = Field(default_factory=dict)
    wallets: List[WalletInfo] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)


class IntentContext(BaseModel):
    user_profile: Optional[UserProfile] = None
    preferences: Dict[str, Any] = Field(default_factory=dict)
    environment: Dict[str, Any] = Field(default_factory=dict)
    session_data: Dict[str, Any] = Field(default_factory=dict)
    history: List[Intent] = Field(default_factory=list)

    def wallet_addresses(self) -> List[str]:
        if self.user_profile is None:
            return []
        return [w.address for w in self.user_profile.wallets]


# ---------- Template ----------

class ValidationRule(BaseModel):
    pattern: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    allowed_values: Optional[List[Any]] = None


class InputDefinition(BaseModel):
    name: str = Field(min_length=1)
    type: str = "string"
    description: str = ""
    required: bool = False
    default: Any = None
    validation: Optional[ValidationRule] = None


class OutputDefinition(BaseModel):
    name: str = Field(min_length=1)
    type: str = "object"
    description: str = ""


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=1, ge=1, le=10)
    delay_ms: int = Field(default=0, ge=0)
    backoff_factor: float = Field(default=1.0, ge=1.0)
    retry_condition: Literal["failure", "timeout", "any"] = "any"


class StepInput(BaseModel):
    name: str = Field(min_length=1)
    source: RefSource
    source_reference: Optional[str] = None
    value: Any = None


class StepOutput(BaseModel):
    name: str = Field(min_length=1)
    mapping: Optional[str] = None


class StepDefinition(BaseModel):
    id: str = Field(min_length=1)
    name: str = ""
    type: ToolType
    tool_id: Optional[str] = None
    description: str = ""
    inputs: List[StepInput] = Field(default_factory=list)
    outputs: List[StepOutput] = Field(default_factory=list)
    config: Dict[str, Any] = Field(default_factory=dict)
    retry: Optional[RetryConfig] = None
    condition: Optional[str] = None
    timeout_ms: Optional[int] = Field(default=None, ge=1)


class PermissionRequest(BaseModel):
    type: Literal["data_access", "transaction_execution", "api_access", "storage_access"]
    description: str = ""
    scope: str = ""


class TaskTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    name: str = Field(min_length=1)
    description: str = ""
    version: str = "1.0.0"
    author: str = ""
    category: TemplateCategory = "other"
    inputs: List[InputDefinition] = Field(default_factory=list)
    outputs: List[OutputDefinition] = Field(default_factory=list)
    steps: List[StepDefinition] = Field(default_factory=list)
    permissions: List[PermissionRequest] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def required_inputs(self) -> List[InputDefinition]:
        return [i for i in self.inputs if i.required]


# ---------- Plan ----------

class StepCondition(BaseModel):
    source: str = Field(min_length=1)
    key: str = Field(min_length=1)
    expected: Any = True


class PlannedStep(BaseModel):
    kind: Literal["step"] = "step"
    step_id: str = ""
    tool_id: str = Field(min_length=1)
    description: str = ""
    inputs: Dict[str, Any] = Field(default_factory=dict)
    expected_outputs: List[str] = Field(default_factory=list)
    output_mappings: Dict[str, str] = Field(default_factory=dict)
    condition: Optional[StepCondition] = None
    retry: Optional[RetryConfig] = None
    timeout_ms: Optional[int] = Field(default=None, ge=1)


class BranchStep(BaseModel):
    """If/else node: exactly one arm runs once the condition source has a result."""

    kind: Literal["branch"] = "branch"
    step_id: str = ""
    description: str = ""
    condition: StepCondition
    then_steps: List[PlannedStep] = Field(default_factory=list)
    else_steps: List[PlannedStep] = Field(default_factory=list)

    def leaves(self) -> List[PlannedStep]:
        return [*self.then_steps, *self.else_steps]


PlanItem = Union[PlannedStep, BranchStep]


def iter_leaf_steps(plan: Sequence[PlanItem]) -> Iterator[PlannedStep]:
    for item in plan:
        if isinstance(item, BranchStep):
            yield from item.leaves()
        else:
            yield item


# ---------- Execution ----------

class StepExecutionResult(BaseModel):
    step_id: str
    status: StepStatus
    outputs: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    duration: int = Field(default=0, ge=0)
    token_usage: int = Field(default=0, ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "success"


@dataclass
class TaskContext:
    task_id: str
    user_id: str
    inputs: Dict[str, Any] = field(default_factory=dict)
    environment: Dict[str, Any] = field(default_factory=dict)
    history: List[StepExecutionResult] = field(default_factory=list)
    start_time: int = field(default_factory=now_ms)
    intent: Optional[Intent] = None

    def result_for(self, step_id: str) -> Optional[StepExecutionResult]:
        for result in reversed(self.history):
            if result.step_id == step_id:
                return result
        return None

    def elapsed_ms(self) -> int:
        return max(0, now_ms() - self.start_time)


class TaskResultMetadata(BaseModel):
    execution_time: int = 0
    resource_usage: Dict[str, int] = Field(default_factory=dict)
    on_chain_verification: Optional[str] = None
    storage_ref: Optional[str] = None
    storage_error: Optional[str] = None
    chain_error: Optional[str] = None
    executed_steps: List[str] = Field(default_factory=list)
    skipped_steps: List[str] = Field(default_factory=list)
    failed_steps: List[str] = Field(default_factory=list)
    adaptations: int = 0


class TaskResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    task_id: str
    status: StepStatus
    outputs: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    metadata: TaskResultMetadata = Field(default_factory=TaskResultMetadata)
