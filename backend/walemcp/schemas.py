from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .models import TaskResult, TaskTemplate


# ---------- Templates ----------

class TemplateRegisterRequest(BaseModel):
    template: TaskTemplate
    creator_id: Optional[str] = None


class TemplateRegisterResponse(BaseModel):
    success: bool = True
    template_id: str


class TemplateListResponse(BaseModel):
    success: bool = True
    count: int
    templates: List[TaskTemplate]


# ---------- Execution ----------

class ExecuteRequest(BaseModel):
    template_id: str = Field(..., min_length=1)
    inputs: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None


class ExecuteResponse(BaseModel):
    success: bool
    result: TaskResult


class TaskResultResponse(BaseModel):
    success: bool = True
    result: TaskResult


# ---------- Service ----------

class HealthResponse(BaseModel):
    success: bool = True
    status: str = "ok"
    version: str
    tools: int
    llm_enabled: bool
    dry_run: bool


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
