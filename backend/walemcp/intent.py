from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from .errors import ParseError
from .models import DEFAULT_USER_ID, Entity, Intent, TaskTemplate, now_ms

logger = logging.getLogger(__name__)


INTENT_TYPES = {"query", "transaction", "analysis"}

CATEGORY_ACTIONS = {
    "defi": "optimize_portfolio",
    "dao": "process_governance",
    "analytics": "analyze_data",
    "content": "generate_content",
    "development": "support_development",
}
DEFAULT_ACTION = "process_task"


@dataclass(frozen=True)
class IntentParsingOptions:
    confidence_threshold: float = 0.7
    max_entities: int = 15
    extract_parameters: bool = True


def classify_intent_type(text: str) -> str:
    lower = (text or "").strip().lower()

    if _is_transaction(lower):
        return "transaction"

    if _is_analysis(lower):
        return "analysis"

    return "query"


def _is_transaction(text: str) -> bool:
    patterns = [
        r"\bsend\b",
        r"\btransfer\b",
        r"\bswap\b",
        r"\bstake\b",
        r"\bpay\b",
        r"\bwithdraw\b",
        r"\bdeposit\b",
        r"\bmint\b",
    ]
    return any(re.search(p, text) for p in patterns)


def _is_analysis(text: str) -> bool:
    patterns = [
        r"\banaly[sz]e\b",
        r"\banalysis\b",
        r"\bportfolio\b",
        r"\breport\b",
        r"\bassess\b",
        r"\bevaluate\b",
        r"\baudit\b",
        r"\bcompare\b",
    ]
    return any(re.search(p, text) for p in patterns)


def apply_input_defaults(template: TaskTemplate, inputs: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(inputs)
    for definition in template.inputs:
        if merged.get(definition.name) is None and definition.default is not None:
            merged[definition.name] = definition.default
    return merged


def validate_inputs(template: TaskTemplate, inputs: Mapping[str, Any]) -> List[str]:
    issues: List[str] = []
    for definition in template.inputs:
        value = inputs.get(definition.name)
        if value is None:
            if definition.required and definition.default is None:
                issues.append(f"{definition.name}: required input missing")
            continue

        rule = definition.validation
        if rule is None:
            continue

        if rule.pattern is not None and not re.fullmatch(rule.pattern, str(value)):
            issues.append(f"{definition.name}: does not match pattern {rule.pattern!r}")

        if rule.min is not None or rule.max is not None:
            measured = len(value) if isinstance(value, (str, list, dict)) else value
            if isinstance(measured, (int, float)) and not isinstance(measured, bool):
                if rule.min is not None and measured < rule.min:
                    issues.append(f"{definition.name}: below minimum {rule.min}")
                if rule.max is not None and measured > rule.max:
                    issues.append(f"{definition.name}: above maximum {rule.max}")
            else:
                issues.append(f"{definition.name}: not comparable against min/max")

        if rule.allowed_values is not None and value not in rule.allowed_values:
            issues.append(f"{definition.name}: value not in allowed values")
    return issues


class IntentParser:
    """
    Turns raw task inputs plus a template into an Intent.

    Confidence is observational: a low score is logged and flagged in metadata,
    it never rejects the intent.
    """

    def __init__(self, options: Optional[IntentParsingOptions] = None) -> None:
        self.options = options or IntentParsingOptions()

    def parse_intent(
        self,
        inputs: Mapping[str, Any],
        template: TaskTemplate,
        options: Optional[IntentParsingOptions] = None,
        *,
        user_id: str = DEFAULT_USER_ID,
    ) -> Intent:
        opts = options or self.options
        try:
            action = self._extract_action(inputs, template)
            entities = self._extract_entities(inputs, template, opts.max_entities)
            parameters = self._extract_parameters(inputs, template) if opts.extract_parameters else {}
            confidence = self._calculate_confidence(action, entities, template)
            content = self._extract_content(inputs, template)
            intent_type = self._extract_type(inputs, content)
            issues = validate_inputs(template, inputs)
        except Exception as exc:  # noqa: BLE001
            logger.error("Error parsing intent for template %s: %s", template.name, exc)
            raise ParseError(f"Failed to parse intent: {exc}") from exc

        metadata: Dict[str, Any] = {"template_category": template.category}
        if issues:
            metadata["validation_issues"] = issues
        if confidence < opts.confidence_threshold:
            metadata["below_confidence_threshold"] = True
            logger.warning(
                "Intent confidence %.2f below threshold %.2f (template=%s)",
                confidence,
                opts.confidence_threshold,
                template.name,
            )

        return Intent(
            type=intent_type,
            content=content,
            action=action,
            entities=entities,
            parameters=parameters,
            confidence=confidence,
            user_id=user_id,
            metadata=metadata,
        )

    def _extract_action(self, inputs: Mapping[str, Any], template: TaskTemplate) -> str:
        action = inputs.get("action")
        if action:
            return str(action)
        return CATEGORY_ACTIONS.get(template.category, DEFAULT_ACTION)

    def _extract_content(self, inputs: Mapping[str, Any], template: TaskTemplate) -> str:
        for key in ("content", "query", "prompt", "text"):
            value = inputs.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return template.description or template.name

    def _extract_type(self, inputs: Mapping[str, Any], content: str) -> str:
        raw = inputs.get("type")
        if isinstance(raw, str) and raw.strip():
            return raw.strip().lower()
        return classify_intent_type(content)

    def _extract_entities(
        self,
        inputs: Mapping[str, Any],
        template: TaskTemplate,
        max_entities: int,
    ) -> List[Entity]:
        entities: List[Entity] = []
        if max_entities <= 0:
            return entities

        for definition in template.inputs:
            if inputs.get(definition.name) is None:
                continue
            metadata = {"description": definition.description} if definition.description else None
            entities.append(Entity(type=definition.type, value=inputs[definition.name], metadata=metadata))
            if len(entities) >= max_entities:
                return entities

        raw_entities = inputs.get("entities")
        if isinstance(raw_entities, list):
            for item in raw_entities:
                if isinstance(item, Entity):
                    entities.append(item)
                elif isinstance(item, dict) and isinstance(item.get("type"), str) and item["type"] and "value" in item:
                    entities.append(Entity(type=item["type"], value=item["value"], metadata=item.get("metadata")))
                else:
                    continue
                if len(entities) >= max_entities:
                    break

        return entities

    def _extract_parameters(self, inputs: Mapping[str, Any], template: TaskTemplate) -> Dict[str, Any]:
        parameters: Dict[str, Any] = {}

        raw = inputs.get("parameters")
        if isinstance(raw, dict):
            parameters.update(raw)

        parameters["template_id"] = template.id
        parameters["template_name"] = template.name
        parameters["template_version"] = template.version

        if inputs.get("context"):
            parameters["context"] = inputs["context"]

        parameters["timestamp"] = now_ms()
        return parameters

    def _calculate_confidence(self, action: str, entities: List[Entity], template: TaskTemplate) -> float:
        confidence = 1.0

        if not entities:
            confidence *= 0.7

        if action == DEFAULT_ACTION:
            confidence *= 0.8

        required = template.required_inputs()
        if required:
            required_names = {d.name for d in required}
            provided = sum(1 for e in entities if e.type in required_names)
            confidence *= min(1.0, provided / len(required))

        return max(0.0, min(1.0, confidence))
