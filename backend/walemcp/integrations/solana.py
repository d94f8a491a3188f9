from __future__ import annotations

import base64
import hashlib
import itertools
import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from walemcp.errors import ChainError
from walemcp.models import TaskContext, TaskTemplate, now_ms

logger = logging.getLogger(__name__)


def _digest(payload: Dict[str, Any]) -> str:
    blob = json.dumps(payload, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


class SolanaConnector:
    """
    JSON-RPC client for the ledger plus the template registry index.

    In dry-run mode nothing is broadcast: submissions and proofs return
    deterministic simulated identifiers.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        program_id: str = "MCPv1111111111111111111111111111111111111",
        commitment: str = "confirmed",
        dry_run: bool = True,
        timeout_s: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.endpoint = endpoint
        self.program_id = program_id
        self.commitment = commitment
        self.dry_run = dry_run
        self.timeout_s = timeout_s
        self._transport = transport
        self._ids = itertools.count(1)
        self._templates: Dict[str, Dict[str, Any]] = {}

    async def _rpc(self, method: str, params: Optional[List[Any]] = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
                res = await client.post(self.endpoint, json=payload)
        except httpx.HTTPError as exc:
            raise ChainError(f"RPC {method} failed: {exc}") from exc

        if res.status_code >= 400:
            raise ChainError(f"RPC {method} returned HTTP {res.status_code}")

        try:
            body = res.json()
        except ValueError as exc:
            raise ChainError(f"RPC {method} returned invalid JSON") from exc

        if body.get("error"):
            err = body["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            raise ChainError(f"RPC {method} error: {message}")
        return body.get("result")

    async def fetch_accounts_data(self, addresses: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        if not addresses:
            return {}
        result = await self._rpc(
            "getMultipleAccounts",
            [list(addresses), {"encoding": "base64", "commitment": self.commitment}],
        )
        values = (result or {}).get("value") or []

        accounts: Dict[str, Dict[str, Any]] = {}
        for address, info in zip(addresses, values):
            if not info:
                continue
            data = info.get("data") or []
            raw = data[0] if isinstance(data, list) and data else ""
            try:
                size = len(base64.b64decode(raw)) if raw else 0
            except ValueError:
                size = 0
            accounts[address] = {
                "lamports": info.get("lamports", 0),
                "owner": info.get("owner"),
                "executable": bool(info.get("executable", False)),
                "rent_epoch": info.get("rentEpoch"),
                "data_size": size,
            }
        return accounts

    async def get_network_status(self) -> Dict[str, Any]:
        block_height = await self._rpc("getBlockHeight", [{"commitment": self.commitment}])
        slot = await self._rpc("getSlot", [{"commitment": self.commitment}])
        epoch_info = await self._rpc("getEpochInfo", [{"commitment": self.commitment}]) or {}
        return {"block_height": block_height, "slot": slot, "epoch": epoch_info.get("epoch")}

    async def submit_transaction(
        self,
        instructions: Sequence[Mapping[str, Any]],
        signers: Sequence[str] = (),
    ) -> str:
        if not instructions:
            raise ChainError("Transaction has no instructions")

        if self.dry_run:
            signature = "sim_" + _digest({"instructions": list(instructions), "signers": list(signers), "ts": now_ms()})[:60]
            logger.info("Dry-run transaction with %d instruction(s): %s", len(instructions), signature)
            return signature

        serialized = [i.get("serialized_tx") for i in instructions if i.get("serialized_tx")]
        if not serialized:
            raise ChainError("Live submission needs a pre-signed serialized_tx instruction")

        signature = await self._rpc(
            "sendTransaction",
            [serialized[0], {"encoding": "base64", "preflightCommitment": self.commitment}],
        )
        return str(signature)

    def generate_template_id(self, template: TaskTemplate, creator_id: str) -> str:
        digest = _digest({"creator": creator_id, "name": template.name, "version": template.version})
        return f"tpl_{digest[:24]}"

    async def register_template(self, template: TaskTemplate, creator_id: str) -> str:
        template_id = self.generate_template_id(template, creator_id)
        self._templates[template_id] = {
            "id": template_id,
            "name": template.name,
            "version": template.version,
            "category": template.category,
            "creator": creator_id,
            "program_id": self.program_id,
            "timestamp": now_ms(),
        }
        logger.debug("Indexed template %s (%s %s)", template_id, template.name, template.version)
        return template_id

    async def search_templates(self, criteria: Mapping[str, Any]) -> List[str]:
        wanted = {k: v for k, v in criteria.items() if v not in (None, "")}
        matches: List[str] = []
        for template_id, record in self._templates.items():
            if wanted.get("id") and wanted["id"] != template_id:
                continue
            if wanted.get("name") and str(wanted["name"]).lower() not in str(record["name"]).lower():
                continue
            if wanted.get("category") and wanted["category"] != record["category"]:
                continue
            if wanted.get("creator") and wanted["creator"] != record["creator"]:
                continue
            matches.append(template_id)
        return matches

    async def store_execution_proof(self, context: TaskContext) -> str:
        record = {
            "task_id": context.task_id,
            "user_id": context.user_id,
            "steps": [[r.step_id, r.status] for r in context.history],
            "start_time": context.start_time,
        }
        proof_id = "proof_" + _digest(record)[:32]
        if not self.dry_run:
            # live mode confirms the RPC is reachable before handing out a proof
            slot = await self._rpc("getSlot", [{"commitment": self.commitment}])
            logger.debug("Execution proof %s pinned at slot %s", proof_id, slot)
        return proof_id
