from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .errors import ToolExecutionError

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = "You are a precise on-chain analysis assistant. Reply with one JSON object only."


@dataclass
class LLMReply:
    content: str
    total_tokens: int = 0

    def as_json(self) -> Optional[Dict[str, Any]]:
        text = self.content.strip()
        if text.startswith("```"):
            text = text.strip("`")
            if text.lower().startswith("json"):
                text = text[4:]
        try:
            data = json.loads(text)
        except ValueError:
            return None
        return data if isinstance(data, dict) else None


class LLMClient:
    def __init__(
        self,
        *,
        api_key: Optional[str],
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = (api_key or "").strip()
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._transport = transport
        self.enabled = bool(self.api_key)

    async def chat(self, prompt: str, *, system: str = SYSTEM_PROMPT, temperature: float = 0.2) -> LLMReply:
        if not self.enabled:
            raise ToolExecutionError("LLM disabled: AI_API_KEY is missing.")

        url = f"{self.base_url}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "temperature": temperature,
            "response_format": {"type": "json_object"},
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
                res = await client.post(url, headers=headers, json=payload)
        except httpx.HTTPError as exc:
            raise ToolExecutionError(f"LLM request failed: {exc}") from exc

        if res.status_code >= 400:
            raise ToolExecutionError(f"LLM upstream error: {res.status_code} {res.text[:300]}")

        try:
            data = res.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ToolExecutionError("LLM upstream returned unexpected response format.") from exc

        usage = data.get("usage") or {}
        return LLMReply(content=str(content or ""), total_tokens=int(usage.get("total_tokens") or 0))

    @staticmethod
    def build_prompt(analysis_type: str, expected_outputs: List[str], inputs: Dict[str, Any]) -> str:
        blob = json.dumps(inputs, ensure_ascii=False, default=str)[:12_000]
        keys = ", ".join(expected_outputs) if expected_outputs else "analysis, summary"
        return (
            f"Analysis type: {analysis_type}\n"
            f"Inputs (JSON): {blob}\n"
            f"Return a JSON object with exactly these keys: {keys}."
        )
