"""
Typed source references for step inputs and their resolution against a task context.

A reference is resolved only at execution time. Anything that cannot be resolved
(a skipped or not-yet-run step, a missing key) comes back as an ``Unresolved`` marker
instead of ``None`` so tools can tell "absent" apart from a real falsy value.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Literal, Set, Union

from pydantic import BaseModel, ConfigDict

from .models import StepInput, TaskContext


class _Missing:
    def __repr__(self) -> str:
        return "<missing>"


MISSING = _Missing()


@dataclass(frozen=True)
class Unresolved:
    reference: str
    reason: str

    def __bool__(self) -> bool:
        return False

    def __str__(self) -> str:
        return f"<unresolved {self.reference}: {self.reason}>"


def is_unresolved(value: Any) -> bool:
    return isinstance(value, Unresolved)


class UserInputRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: Literal["user_input"] = "user_input"
    name: str

    def describe(self) -> str:
        return f"user_input:{self.name}"


class PreviousStepRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: Literal["previous_step"] = "previous_step"
    step_id: str
    path: str = ""

    def describe(self) -> str:
        return f"previous_step:{self.step_id}.{self.path}" if self.path else f"previous_step:{self.step_id}"


class EnvironmentRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: Literal["environment"] = "environment"
    path: str = ""

    def describe(self) -> str:
        return f"environment:{self.path}" if self.path else "environment"


class ConstantRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: Literal["constant"] = "constant"
    value: Any = None

    def describe(self) -> str:
        return "constant"


SourceRef = Union[UserInputRef, PreviousStepRef, EnvironmentRef, ConstantRef]
SOURCE_REF_TYPES = (UserInputRef, PreviousStepRef, EnvironmentRef, ConstantRef)


def get_path(data: Any, path: str) -> Any:
    """Walk a dotted path through dicts and lists; returns MISSING when any hop is absent."""
    if not path:
        return data
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return MISSING
        elif isinstance(current, BaseModel):
            if not hasattr(current, part):
                return MISSING
            current = getattr(current, part)
        else:
            return MISSING
    return current


def resolve_ref(ref: SourceRef, context: TaskContext) -> Any:
    if isinstance(ref, ConstantRef):
        return ref.value

    if isinstance(ref, UserInputRef):
        value = get_path(context.inputs, ref.name)
        if value is MISSING:
            return Unresolved(ref.describe(), "input not provided")
        return value

    if isinstance(ref, EnvironmentRef):
        value = get_path(context.environment, ref.path)
        if value is MISSING:
            return Unresolved(ref.describe(), "not present in environment")
        return value

    if isinstance(ref, PreviousStepRef):
        result = context.result_for(ref.step_id)
        if result is None:
            return Unresolved(ref.describe(), "step has not run")
        value = get_path(result.outputs, ref.path)
        if value is MISSING:
            return Unresolved(ref.describe(), f"output missing (step status: {result.status})")
        return value

    raise TypeError(f"Unsupported source reference: {type(ref).__name__}")


def resolve_value(value: Any, context: TaskContext) -> Any:
    if isinstance(value, SOURCE_REF_TYPES):
        return resolve_ref(value, context)
    if isinstance(value, dict):
        return {k: resolve_value(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_value(v, context) for v in value]
    return value


def resolve_inputs(inputs: Dict[str, Any], context: TaskContext) -> Dict[str, Any]:
    return {name: resolve_value(value, context) for name, value in inputs.items()}


def step_dependencies(value: Any) -> Set[str]:
    """Step ids referenced anywhere inside an input value."""
    if isinstance(value, PreviousStepRef):
        return {value.step_id}
    if isinstance(value, dict):
        deps: Set[str] = set()
        for v in value.values():
            deps |= step_dependencies(v)
        return deps
    if isinstance(value, list):
        deps = set()
        for v in value:
            deps |= step_dependencies(v)
        return deps
    return set()


def ref_from_step_input(step_input: StepInput) -> SourceRef:
    reference = (step_input.source_reference or "").strip()

    if step_input.source == "user_input":
        return UserInputRef(name=reference or step_input.name)

    if step_input.source == "previous_step":
        if not reference:
            raise ValueError(f"Input '{step_input.name}' needs a source_reference of the form <stepId>[.<path>]")
        step_id, _, path = reference.partition(".")
        return PreviousStepRef(step_id=step_id, path=path)

    if step_input.source == "environment":
        return EnvironmentRef(path=reference)

    value = step_input.value if step_input.value is not None else step_input.source_reference
    return ConstantRef(value=value)
