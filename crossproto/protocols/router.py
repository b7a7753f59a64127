"""REST gateway for the swap routing aggregator."""

from typing import List

from loguru import logger

from ..config import RouterConfig
from ..core.errors import RouteNotFound
from ..core.types import GasEstimate, QuoteRequest, Route, SwapRequest, TxResult, YieldSource
from .base import QuoteResponse, RouterProtocolClient, route_from_dict, tx_from_dict
from .http import request_json


def _quote_payload(request: QuoteRequest) -> dict:
    return {
        "tokenIn": request.token_in,
        "tokenOut": request.token_out,
        "amountIn": str(request.amount_in),
        "slippagePercent": request.slippage_percent,
    }


def _swap_payload(request: SwapRequest) -> dict:
    return {
        "tokenIn": request.token_in,
        "tokenOut": request.token_out,
        "amountIn": str(request.amount_in),
        "amountOutMinimum": str(request.amount_out_minimum),
        "recipient": request.recipient,
        "slippagePercent": request.slippage_percent,
        "routeId": request.route_id,
        "deadline": request.deadline,
        "gasLimit": request.gas_limit,
    }


class HttpRouterClient(RouterProtocolClient):
    """Router protocol client over its REST API."""

    def __init__(self, config: RouterConfig, name: str = "router"):
        super().__init__(name)
        self.config = config
        self.base_url = config.api_url.rstrip("/")

    async def _post(self, path: str, payload: dict):
        return await request_json("POST", f"{self.base_url}{path}", self.name,
                                  self.config.timeout_ms, payload=payload)

    async def quote(self, request: QuoteRequest) -> QuoteResponse:
        data = await self._post("/quote", _quote_payload(request))
        if not data or not data.get("route"):
            raise RouteNotFound(request.token_in, request.token_out, request.amount_in)
        return QuoteResponse(
            quote_id=data.get("id", data["route"].get("id", "")),
            route=route_from_dict(data["route"]),
            valid_until=int(data["validUntil"]),
        )

    async def routes(self, request: QuoteRequest) -> List[Route]:
        data = await self._post("/routes", _quote_payload(request))
        routes = [route_from_dict(r) for r in (data or {}).get("routes", [])]
        logger.debug(f"{self.name}: {len(routes)} routes for {request.token_in}->{request.token_out}")
        return routes

    async def estimate_gas(self, request: SwapRequest) -> GasEstimate:
        data = await self._post("/gas-estimate", _swap_payload(request))
        return GasEstimate(
            gas_limit=int(data["gasLimit"]),
            gas_price=float(data["gasPrice"]),
            estimated_cost=float(data["estimatedCost"]),
            confidence=float(data.get("confidence", 1.0)),
        )

    async def execute(self, request: SwapRequest) -> TxResult:
        data = await self._post("/execute", _swap_payload(request))
        return tx_from_dict(data)

    async def liquidity_yields(self) -> List[YieldSource]:
        data = await request_json("GET", f"{self.base_url}/pools", self.name, self.config.timeout_ms)
        return [
            YieldSource(protocol=self.name, asset=p["asset"], apy=float(p["apy"]),
                        risk_score=float(p.get("riskScore", 0.3)))
            for p in (data or {}).get("pools", [])
        ]
