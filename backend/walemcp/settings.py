from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List

from .config import _as_bool, _as_float, _as_int, is_production


@dataclass(frozen=True)
class Settings:
    solana_endpoint: str = "https://api.devnet.solana.com"
    solana_program_id: str = "MCPv1111111111111111111111111111111111111"
    solana_dry_run: bool = True
    price_api_url: str | None = None
    market_api_url: str | None = None
    llm_api_key: str | None = None
    llm_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-4o-mini"
    llm_timeout_s: float = 30.0
    storage_db_path: str | None = None
    log_level: str = "INFO"
    api_version: str = "v1"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    production: bool = False
    max_steps: int = 20
    enable_dynamic_planning: bool = True
    enable_default_templates: bool = True
    step_timeout_ms: int = 30_000
    task_timeout_ms: int = 300_000
    risk_threshold: str = "high"
    risk_tolerance: str = "high"


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    v = value.strip()
    return v if v else None


def _split(value: str | None) -> List[str]:
    if not value:
        return ["*"]
    parts = [p.strip() for p in value.split(",") if p.strip()]
    return parts or ["*"]


def get_settings() -> Settings:
    return Settings(
        solana_endpoint=_clean(os.getenv("SOLANA_ENDPOINT")) or "https://api.devnet.solana.com",
        solana_program_id=_clean(os.getenv("SOLANA_PROGRAM_ID")) or "MCPv1111111111111111111111111111111111111",
        solana_dry_run=_as_bool("SOLANA_DRY_RUN", default=True),
        price_api_url=_clean(os.getenv("PRICE_API_URL")),
        market_api_url=_clean(os.getenv("MARKET_API_URL")),
        llm_api_key=_clean(os.getenv("AI_API_KEY")) or _clean(os.getenv("OPENAI_API_KEY")),
        llm_base_url=(_clean(os.getenv("AI_BASE_URL")) or "https://api.openai.com/v1").rstrip("/"),
        llm_model=_clean(os.getenv("AI_MODEL")) or "gpt-4o-mini",
        llm_timeout_s=_as_float("AI_TIMEOUT_S", 30.0),
        storage_db_path=_clean(os.getenv("WALEMCP_DB_PATH")),
        log_level=(_clean(os.getenv("LOG_LEVEL")) or "INFO").upper(),
        api_version=_clean(os.getenv("API_VERSION")) or "v1",
        cors_origins=_split(_clean(os.getenv("CORS_ORIGINS"))),
        production=is_production(),
        max_steps=_as_int("MAX_PLAN_STEPS", 20),
        enable_dynamic_planning=_as_bool("ENABLE_DYNAMIC_PLANNING", default=True),
        enable_default_templates=_as_bool("ENABLE_DEFAULT_TEMPLATES", default=True),
        step_timeout_ms=_as_int("STEP_TIMEOUT_MS", 30_000),
        task_timeout_ms=_as_int("TASK_TIMEOUT_MS", 300_000),
        risk_threshold=(_clean(os.getenv("RISK_THRESHOLD")) or "high").lower(),
        risk_tolerance=(_clean(os.getenv("RISK_TOLERANCE")) or "high").lower(),
    )
