from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .errors import ChainError
from .integrations.solana import SolanaConnector
from .models import Intent, now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SensorConfig:
    include_price_data: bool = True
    include_market_data: bool = True
    default_tokens: tuple = ("SOL",)
    timeout_s: float = 10.0


def _is_address(value: str) -> bool:
    return 32 <= len(value) <= 44


class EnvironmentSensor:
    """Collects network, account and price context for an intent. Never raises."""

    def __init__(
        self,
        connector: SolanaConnector,
        config: Optional[SensorConfig] = None,
        *,
        price_api_url: Optional[str] = None,
        market_api_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.connector = connector
        self.config = config or SensorConfig()
        self.price_api_url = price_api_url
        self.market_api_url = market_api_url
        self._transport = transport

    async def gather_environment_data(self, intent: Intent) -> Dict[str, Any]:
        logger.debug("Gathering environment data for intent %s", intent.id)
        try:
            environment: Dict[str, Any] = {"network": await self._network_status()}

            addresses = [str(e.value) for e in intent.entities_of("address") if e.value is not None]
            addresses = [a for a in addresses if _is_address(a)]
            if addresses:
                environment["accounts"] = await self._accounts(addresses)

            if self.config.include_price_data and self.price_api_url:
                environment["prices"] = await self._prices(intent)

            if self.config.include_market_data and self.market_api_url:
                environment["market"] = await self._market()

            environment["timestamp"] = now_ms()
            return environment
        except Exception as exc:  # noqa: BLE001
            logger.error("Error gathering environment data: %s", exc)
            return {"timestamp": now_ms(), "error": True, "error_message": str(exc)}

    async def _network_status(self) -> Dict[str, Any]:
        try:
            status = await self.connector.get_network_status()
        except ChainError as exc:
            logger.warning("Error fetching network status: %s", exc)
            return {"error": "Failed to fetch network status"}
        return {**status, "timestamp": now_ms()}

    async def _accounts(self, addresses: List[str]) -> Dict[str, Any]:
        try:
            return await self.connector.fetch_accounts_data(addresses)
        except ChainError as exc:
            logger.warning("Error fetching accounts data: %s", exc)
            return {"error": "Failed to fetch accounts data"}

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        async with httpx.AsyncClient(timeout=self.config.timeout_s, transport=self._transport) as client:
            res = await client.get(url, params=params)
            res.raise_for_status()
            return res.json()

    async def _prices(self, intent: Intent) -> Dict[str, Any]:
        tokens = [str(e.value).upper() for e in intent.entities_of("token") if e.value]
        if not tokens:
            tokens = list(self.config.default_tokens)
        try:
            data = await self._get_json(
                self.price_api_url or "",
                params={"ids": ",".join(tokens), "vs_currencies": "usd"},
            )
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Error fetching price data: %s", exc)
            return {"error": "Failed to fetch price data"}

        prices = {str(k).upper(): v for k, v in (data or {}).items()} if isinstance(data, dict) else {}
        prices["timestamp"] = now_ms()
        return prices

    async def _market(self) -> Dict[str, Any]:
        try:
            data = await self._get_json(self.market_api_url or "")
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Error fetching market data: %s", exc)
            return {"error": "Failed to fetch market data"}
        market = dict(data) if isinstance(data, dict) else {"data": data}
        market["timestamp"] = now_ms()
        return market
