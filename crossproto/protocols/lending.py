"""REST gateway for the lending market."""

from typing import List

from ..config import LendingConfig
from ..core.types import TxResult
from .base import LendingAsset, LendingPosition, LendingProtocolClient, LendingRequest, tx_from_dict
from .http import request_json


class HttpLendingClient(LendingProtocolClient):
    """Lending protocol client over its REST API."""

    def __init__(self, config: LendingConfig, name: str = "lending"):
        super().__init__(name)
        self.config = config
        self.base_url = config.api_url.rstrip("/")

    async def _call(self, method: str, path: str, payload: dict = None):
        return await request_json(method, f"{self.base_url}{path}", self.name,
                                  self.config.timeout_ms, payload=payload)

    async def _write(self, action: str, request: LendingRequest) -> TxResult:
        data = await self._call("POST", f"/{action}", {
            "asset": request.asset,
            "amount": str(request.amount),
            "userAddress": request.user_address,
        })
        return tx_from_dict(data)

    async def supported_assets(self) -> List[LendingAsset]:
        data = await self._call("GET", "/assets")
        return [
            LendingAsset(
                symbol=a["symbol"],
                address=a.get("address", ""),
                supply_apy=float(a.get("supplyApy", 0.0)),
                borrow_apy=float(a.get("borrowApy", 0.0)),
                ltv=float(a.get("ltv", 0.75)),
                liquidation_threshold=float(a.get("liquidationThreshold", 0.8)),
                risk_score=float(a.get("riskScore", 0.2)),
            )
            for a in (data or {}).get("assets", [])
        ]

    async def supply(self, request: LendingRequest) -> TxResult:
        return await self._write("supply", request)

    async def withdraw(self, request: LendingRequest) -> TxResult:
        return await self._write("withdraw", request)

    async def borrow(self, request: LendingRequest) -> TxResult:
        return await self._write("borrow", request)

    async def repay(self, request: LendingRequest) -> TxResult:
        return await self._write("repay", request)

    async def user_position(self, address: str) -> LendingPosition:
        data = await self._call("GET", f"/positions/{address}")
        return LendingPosition(
            user_address=address,
            supplies={k: float(v) for k, v in data.get("supplies", {}).items()},
            borrows={k: float(v) for k, v in data.get("borrows", {}).items()},
            collateral_value=float(data.get("collateralValue", 0.0)),
            debt_value=float(data.get("debtValue", 0.0)),
            health_factor=float(data.get("healthFactor", float("inf"))),
        )

    async def health_factor(self, address: str) -> float:
        data = await self._call("GET", f"/positions/{address}/health-factor")
        return float(data["healthFactor"])
