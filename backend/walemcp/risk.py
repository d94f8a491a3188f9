from __future__ import annotations

from typing import Any, Optional

RISK_LEVELS = ("low", "medium", "high", "critical")

_DESTRUCTIVE_ACTIONS = {"delete", "close_account", "revoke", "withdraw_all", "set_authority"}
_TRANSFER_ACTIONS = {"send", "transfer", "payment", "swap", "stake", "execute_transaction"}


def normalize_risk(value: Any) -> Optional[str]:
    """Map a level name or a 0..1 score onto the ordered risk scale."""
    if isinstance(value, dict):
        return normalize_risk(value.get("level", value.get("score")))
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        score = float(value)
        if score < 0.33:
            return "low"
        if score < 0.66:
            return "medium"
        if score < 0.9:
            return "high"
        return "critical"
    if isinstance(value, str):
        level = value.strip().lower()
        return level if level in RISK_LEVELS else None
    return None


def risk_rank(value: Any) -> int:
    level = normalize_risk(value)
    return RISK_LEVELS.index(level) if level is not None else -1


def is_risk_value(value: Any) -> bool:
    return normalize_risk(value) is not None


def risk_exceeds(value: Any, tolerance: str) -> bool:
    rank = risk_rank(value)
    return rank >= 0 and rank > risk_rank(tolerance)


def assess_risk(action: Optional[str], amount: Optional[float] = None) -> str:
    act = (action or "").strip().lower()
    if act in _DESTRUCTIVE_ACTIONS:
        return "high"
    if act in _TRANSFER_ACTIONS:
        if amount is None:
            return "medium"
        if amount >= 1000:
            return "high"
        if amount >= 100:
            return "medium"
    return "low"
