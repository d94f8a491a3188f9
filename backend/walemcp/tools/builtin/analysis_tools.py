from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, List, Optional

from walemcp.errors import ToolExecutionError
from walemcp.llm_client import LLMClient
from walemcp.models import PlannedStep, StepExecutionResult, TaskContext, ToolType
from walemcp.refs import is_unresolved
from walemcp.risk import assess_risk, normalize_risk
from walemcp.tools.base import BaseTool, ToolInput

logger = logging.getLogger(__name__)


_AMOUNT_RE = re.compile(r"(\d+(?:\.\d+)?)")
_ACTION_WORDS = ("send", "transfer", "swap", "stake", "pay", "withdraw", "deposit", "mint")


class AIAnalysisInput(ToolInput):
    analysis_type: str = "general"
    intent: Optional[Dict[str, Any]] = None


def _intent_dict(ctx: TaskContext, args: AIAnalysisInput) -> Dict[str, Any]:
    if args.intent:
        return args.intent
    if ctx.intent is not None:
        return ctx.intent.model_dump(mode="json")
    return {}


def _entity_value(intent: Dict[str, Any], *types: str) -> Any:
    for entity in intent.get("entities") or []:
        if entity.get("type") in types and entity.get("value") not in (None, ""):
            return entity["value"]
    return None


def _as_amount(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        m = _AMOUNT_RE.search(value)
        return float(m.group(1)) if m else None
    return None


def _short(value: Any, limit: int = 160) -> str:
    text = str(value)
    return text if len(text) <= limit else text[: limit - 3] + "..."


# ---------- Deterministic analyses ----------

def _transaction_preparation(intent: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    content = str(intent.get("content") or "")
    params = intent.get("parameters") or {}

    action = intent.get("action")
    if not action or action == "process_task":
        lower = content.lower()
        action = next((w for w in _ACTION_WORDS if re.search(rf"\b{w}\b", lower)), "transfer")
        if action == "send":
            action = "transfer"

    amount = _as_amount(params.get("amount"))
    if amount is None:
        amount = _as_amount(_entity_value(intent, "amount"))
    if amount is None:
        amount = _as_amount(content)

    token = _entity_value(intent, "token") or params.get("token") or "SOL"
    recipient = _entity_value(intent, "recipient", "address") or params.get("recipient")
    wallets = [w for w in extra.get("userWallets") or [] if w]

    risk = assess_risk(action, amount)
    instruction = {"type": action, "amount": amount, "token": str(token).upper(), "recipient": recipient}
    if wallets:
        instruction["source"] = wallets[0]

    return {
        "transactionParams": {**instruction, "instructions": [instruction]},
        "risk": risk,
        "summary": f"{action} {amount if amount is not None else '?'} {str(token).upper()} assessed as {risk} risk",
    }


def _risk_report(intent: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    level = normalize_risk(extra.get("risk")) or "unknown"
    report = {
        "risk": level,
        "request": intent.get("content", ""),
        "executed": False,
        "reason": f"Transaction blocked: risk level {level} is at or above the allowed threshold",
    }
    return {"report": report, "summary": report["reason"]}


def _transaction_report(intent: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    tx = extra.get("transactionResult") or {}
    signature = tx.get("signature") if isinstance(tx, dict) else None
    report = {"request": intent.get("content", ""), "executed": bool(signature), "transaction": tx}
    summary = f"Transaction submitted with signature {signature}" if signature else "Transaction result unavailable"
    return {"report": report, "summary": summary}


def _query_response(intent: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    data = extra.get("data") or {}
    trends = extra.get("trends") or {}
    prices = data.get("prices") if isinstance(data, dict) else None
    parts: List[str] = []
    if isinstance(prices, dict):
        for symbol, quote in prices.items():
            if symbol == "timestamp" or not isinstance(quote, dict):
                continue
            if "usd" in quote:
                parts.append(f"{symbol}: ${quote['usd']}")
    if trends:
        parts.append(", ".join(f"{k} trending {v.get('direction')}" for k, v in trends.items()))
    summary = "; ".join(parts) if parts else f"No market data available for: {_short(intent.get('content', ''))}"
    return {"analysis": {"query": intent.get("content", ""), "findings": parts, "trends": trends}, "summary": summary}


def _price_report(intent: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    prices = extra.get("prices") or {}
    currency = str(extra.get("currency") or "USD")
    lines = []
    for token in extra.get("tokens") or list(prices):
        quote = prices.get(token) if isinstance(prices, dict) else None
        value = quote.get(currency.lower()) if isinstance(quote, dict) else quote
        lines.append(f"{token}: {value if value is not None else 'unavailable'} {currency}")
    summary = "; ".join(lines) if lines else "No price data available"
    return {"response": {"prices": prices, "currency": currency}, "summary": summary}


def _initial(intent: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    data = extra.get("data")
    keys = sorted(data) if isinstance(data, dict) else []
    metrics = {"fields": len(keys), "has_prices": "prices" in keys, "has_accounts": "accounts" in keys}
    return {"initialInsights": {"fields": keys, "request": intent.get("content", "")}, "metrics": metrics}


def _deep(intent: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    data = extra.get("data") if isinstance(extra.get("data"), dict) else {}
    accounts = data.get("accounts") if isinstance(data.get("accounts"), dict) else {}
    assets = [
        {"address": address, "lamports": info.get("lamports", 0)}
        for address, info in accounts.items()
        if isinstance(info, dict)
    ]
    metrics = extra.get("metrics") or {}
    return {
        "analysis": {"insights": extra.get("initialInsights") or {}, "metrics": metrics},
        "portfolio": {"assets": assets, "metrics": metrics},
        "summary": f"Analyzed {len(assets)} account(s) for: {_short(intent.get('content', ''))}",
        "impact": {"accounts": len(assets)},
    }


def _portfolio(intent: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    data = extra.get("portfolioData") or {}
    requested = extra.get("metrics") or []
    accounts = data.get("accounts") if isinstance(data, dict) else None
    total = sum(
        int(info.get("lamports") or 0) for info in (accounts or {}).values() if isinstance(info, dict)
    )
    return {"analysis": {"metrics": requested, "accounts": len(accounts or {}), "total_lamports": total}}


def _portfolio_report(intent: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    analysis = extra.get("analysis") or {}
    fmt = extra.get("format") or "summary"
    summary = f"Portfolio of {analysis.get('accounts', 0)} account(s), {analysis.get('total_lamports', 0)} lamports"
    return {"report": {"format": fmt, "analysis": analysis}, "summary": summary}


def _failure_report(intent: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    failed = extra.get("failed_step", "unknown")
    report = {"failed_step": failed, "error": extra.get("error"), "dropped_steps": extra.get("dropped_steps") or []}
    return {"report": report, "summary": f"Step {failed} failed: {extra.get('error') or 'unknown error'}"}


def _risk_mitigation(intent: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    level = normalize_risk(extra.get("risk")) or "unknown"
    recommendations = [
        "Reduce the amount or split the operation",
        "Confirm the counterparty address out of band",
    ]
    return {
        "recommendations": recommendations,
        "summary": f"Risk {level} reported by {extra.get('source_step', 'a previous step')}; mitigation advised",
    }


def _general(intent: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    keys = sorted(k for k in extra if k not in ("analysis_type",))
    return {"analysis": {"inputs": keys}, "summary": f"Analysis of {', '.join(keys) or 'no inputs'}"}


FALLBACK_ANALYSES: Dict[str, Callable[[Dict[str, Any], Dict[str, Any]], Dict[str, Any]]] = {
    "transaction_preparation": _transaction_preparation,
    "transaction_report": _transaction_report,
    "risk_report": _risk_report,
    "query_response": _query_response,
    "price_report": _price_report,
    "initial": _initial,
    "deep": _deep,
    "portfolio": _portfolio,
    "portfolio_report": _portfolio_report,
    "failure_report": _failure_report,
    "risk_mitigation": _risk_mitigation,
}


class AIAnalysisTool(BaseTool[AIAnalysisInput]):
    """
    Model-backed analysis. Without an API key every ``analysis_type`` has a
    deterministic local rendition, so plans still produce their declared outputs.
    """

    id = ToolType.AI_ANALYSIS.value
    type = ToolType.AI_ANALYSIS
    name = "AI Analysis"
    description = "Performs AI analysis on data"

    input_model = AIAnalysisInput

    def __init__(self, llm: Optional[LLMClient] = None) -> None:
        self.llm = llm

    def fallback(self, analysis_type: str, intent: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
        return FALLBACK_ANALYSES.get(analysis_type, _general)(intent, extra)

    async def execute(self, step: PlannedStep, ctx: TaskContext) -> StepExecutionResult:
        args = self.validate_input(step.inputs)
        intent = _intent_dict(ctx, args)
        extra = {k: v for k, v in (args.model_extra or {}).items() if not is_unresolved(v)}

        local = self.fallback(args.analysis_type, intent, extra)
        outputs = local
        token_usage = 0

        if self.llm is not None and self.llm.enabled:
            prompt = LLMClient.build_prompt(args.analysis_type, step.expected_outputs, {"intent": intent, **extra})
            reply = await self.llm.chat(prompt)
            parsed = reply.as_json()
            if parsed is None:
                raise ToolExecutionError("LLM reply was not a JSON object")
            outputs = {**local, **parsed}
            token_usage = reply.total_tokens

        missing = [name for name in step.expected_outputs if name not in outputs]
        for name in missing:
            outputs[name] = outputs.get("summary") or outputs.get("analysis")
        if missing:
            logger.debug("Analysis %s filled outputs %s from summary", args.analysis_type, missing)

        return StepExecutionResult(
            step_id=step.step_id,
            status="success",
            outputs=outputs,
            token_usage=token_usage,
            metadata={"analysis_type": args.analysis_type, "model": self.llm.model if token_usage else None},
        )
