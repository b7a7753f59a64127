"""Validated, classified gateway to the lending protocol."""

from typing import Dict, List, Optional

from loguru import logger

from ..config import LendingConfig
from ..protocols.base import LendingAsset, LendingPosition, LendingProtocolClient, LendingRequest
from .errors import ClassifiedError, InvalidToken, ValidationFailed
from .recovery import RecoveryEngine, call_with_timeout
from .types import TxResult


class LendingGateway:
    """
    Front door to the lending protocol.

    Reads are retried per recovery policy. Writes are validated first and are
    only retried when the recovery config allows replaying writes.
    """

    WRITE_ACTIONS = ("supply", "withdraw", "borrow", "repay")

    def __init__(self, client: LendingProtocolClient, engine: RecoveryEngine,
                 config: Optional[LendingConfig] = None):
        self.client = client
        self.engine = engine
        self.config = config or LendingConfig()
        self._assets: Optional[Dict[str, LendingAsset]] = None

    @property
    def name(self) -> str:
        return self.client.name

    async def _read(self, operation: str, factory, user_address: Optional[str] = None):
        context = self.engine.context(operation, user_address)
        return await self.engine.run(
            lambda: call_with_timeout(factory(), self.config.timeout_ms, operation), context,
        )

    async def supported_assets(self, refresh: bool = False) -> List[LendingAsset]:
        if self._assets is None or refresh:
            assets = await self._read("supported_assets", self.client.supported_assets)
            self._assets = {a.symbol: a for a in assets}
            logger.debug(f"{self.name}: {len(assets)} supported assets")
        return list(self._assets.values())

    async def asset(self, symbol: str) -> Optional[LendingAsset]:
        await self.supported_assets()
        return self._assets.get(symbol)

    async def user_position(self, address: str) -> LendingPosition:
        return await self._read("user_position", lambda: self.client.user_position(address), address)

    async def health_factor(self, address: str) -> float:
        return await self._read("health_factor", lambda: self.client.health_factor(address), address)

    async def _validate(self, action: str, request: LendingRequest) -> None:
        context = self.engine.context(action, request.user_address, asset=request.asset)
        errors = []
        if not request.user_address:
            errors.append("user_address is required")
        if not request.asset:
            errors.append("asset is required")
        if request.amount <= 0:
            errors.append("amount must be positive")
        if errors:
            raise ClassifiedError(self.engine.enhance(ValidationFailed(errors), context))
        if await self.asset(request.asset) is None:
            raise ClassifiedError(self.engine.enhance(
                InvalidToken(request.asset, f"not supported by {self.name}"), context,
            ))

    async def _write(self, action: str, request: LendingRequest) -> TxResult:
        await self._validate(action, request)
        call = getattr(self.client, action)
        context = self.engine.context(action, request.user_address, asset=request.asset, amount=request.amount)
        tx = await self.engine.run(
            lambda: call_with_timeout(call(request), self.config.timeout_ms, action),
            context, retry=self.engine.config.retry_writes,
        )
        logger.info(f"{self.name} {action} {request.amount} {request.asset} for {request.user_address} "
                    f"(tx {tx.tx_hash})")
        return tx

    async def supply(self, request: LendingRequest) -> TxResult:
        return await self._write("supply", request)

    async def withdraw(self, request: LendingRequest) -> TxResult:
        return await self._write("withdraw", request)

    async def borrow(self, request: LendingRequest) -> TxResult:
        return await self._write("borrow", request)

    async def repay(self, request: LendingRequest) -> TxResult:
        return await self._write("repay", request)
