from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import Field

from walemcp.errors import ChainError, ToolExecutionError, ToolInputError
from walemcp.integrations.solana import SolanaConnector
from walemcp.models import TaskContext, ToolType, now_ms
from walemcp.tools.base import BaseTool, ToolInput, ToolOutput

logger = logging.getLogger(__name__)


class SolanaTransactionInput(ToolInput):
    transactionParams: Dict[str, Any]
    riskCheckPassed: Optional[bool] = None
    signers: List[str] = Field(default_factory=list)


def build_instructions(params: Dict[str, Any]) -> List[Dict[str, Any]]:
    instructions = params.get("instructions")
    if isinstance(instructions, list) and instructions:
        return [dict(i) for i in instructions if isinstance(i, dict)]
    single = {k: v for k, v in params.items() if k != "instructions"}
    return [single] if single else []


class SolanaTransactionTool(BaseTool[SolanaTransactionInput]):
    id = ToolType.SOLANA_TRANSACTION.value
    type = ToolType.SOLANA_TRANSACTION
    name = "Solana Transaction"
    description = "Executes transactions on the Solana blockchain"

    input_model = SolanaTransactionInput

    def __init__(self, connector: SolanaConnector) -> None:
        self.connector = connector

    async def run(self, ctx: TaskContext, args: SolanaTransactionInput) -> ToolOutput:
        if args.riskCheckPassed is False:
            raise ToolInputError("Refusing to submit: risk check did not pass")

        instructions = build_instructions(args.transactionParams)
        if not instructions:
            raise ToolInputError("transactionParams produced no instructions")

        try:
            signature = await self.connector.submit_transaction(instructions, args.signers)
        except ChainError as exc:
            raise ToolExecutionError(f"Transaction submission failed: {exc}") from exc

        logger.info("Task %s submitted transaction %s", ctx.task_id, signature)
        return ToolOutput(
            ok=True,
            data={
                "transactionResult": {
                    "signature": signature,
                    "status": "simulated" if self.connector.dry_run else "submitted",
                    "instructions": len(instructions),
                    "timestamp": now_ms(),
                }
            },
        )
