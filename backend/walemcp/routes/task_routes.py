from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from walemcp.orchestrator import TaskOrchestrator
from walemcp.schemas import (
    ExecuteRequest,
    ExecuteResponse,
    HealthResponse,
    TaskResultResponse,
    TemplateListResponse,
    TemplateRegisterRequest,
    TemplateRegisterResponse,
)
from walemcp.settings import Settings
from walemcp.tenant import effective_user_id, resolve_user_id

logger = logging.getLogger(__name__)

router = APIRouter(tags=["tasks"])


def get_orchestrator(request: Request) -> TaskOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    return orchestrator


def get_app_settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        raise HTTPException(status_code=503, detail="Settings not initialized")
    return settings


@router.get("/templates", response_model=TemplateListResponse)
async def list_templates(
    name: Optional[str] = Query(default=None),
    category: Optional[str] = Query(default=None),
    creator: Optional[str] = Query(default=None),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> TemplateListResponse:
    templates = await orchestrator.search_templates({"name": name, "category": category, "creator": creator})
    return TemplateListResponse(count=len(templates), templates=templates)


@router.post("/templates", response_model=TemplateRegisterResponse)
async def register_template(
    req: TemplateRegisterRequest,
    user_id: str = Depends(resolve_user_id),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> TemplateRegisterResponse:
    template_id = await orchestrator.register_template(req.template, effective_user_id(req.creator_id, user_id))
    return TemplateRegisterResponse(template_id=template_id)


@router.post("/execute", response_model=ExecuteResponse)
async def execute(
    req: ExecuteRequest,
    user_id: str = Depends(resolve_user_id),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> ExecuteResponse:
    template = orchestrator.get_template(req.template_id)
    if template is None:
        raise HTTPException(status_code=404, detail=f"Template not found: {req.template_id}")

    result = await orchestrator.execute_task(template, req.inputs, effective_user_id(req.user_id, user_id))
    return ExecuteResponse(success=result.status == "success", result=result)


@router.get("/tasks/{task_id}", response_model=TaskResultResponse)
def get_task(task_id: str, orchestrator: TaskOrchestrator = Depends(get_orchestrator)) -> TaskResultResponse:
    result = orchestrator.get_task_result(task_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
    return TaskResultResponse(result=result)


@router.get("/health", response_model=HealthResponse)
def health(
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_app_settings),
) -> HealthResponse:
    return HealthResponse(
        version=settings.api_version,
        tools=len(orchestrator.executor.registry),
        llm_enabled=bool(settings.llm_api_key),
        dry_run=settings.solana_dry_run,
    )
