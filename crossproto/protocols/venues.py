"""Venues an arbitrage can buy and sell an asset on."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ..core.quotes import QuotePipeline
from ..core.types import QuoteRequest, SwapRequest


@dataclass(frozen=True)
class VenuePrice:
    """Price of one unit of an asset in the quote token."""
    venue: str
    asset: str
    price: float
    price_impact: float = 0.0


@dataclass(frozen=True)
class TradeFill:
    """Executed trade on a venue."""
    venue: str
    tx_hash: str
    asset_amount: float
    quote_amount: float
    gas_used: float = 0.0


class ArbitrageVenue(ABC):
    """Price / buy / sell contract used by the arbitrage detector and executor."""

    def __init__(self, name: str, quote_token: str):
        self.name = name
        self.quote_token = quote_token

    @abstractmethod
    async def price(self, asset: str, amount: float) -> VenuePrice:
        """Price for selling ``amount`` of ``asset``."""
        pass

    @abstractmethod
    async def buy(self, asset: str, amount: float, user_address: str) -> TradeFill:
        """Spend quote token to acquire ``amount`` of ``asset``."""
        pass

    @abstractmethod
    async def sell(self, asset: str, amount: float, user_address: str) -> TradeFill:
        """Sell ``amount`` of ``asset`` for quote token."""
        pass


class RouterVenue(ArbitrageVenue):
    """Arbitrage venue backed by a router protocol quote pipeline."""

    def __init__(self, name: str, pipeline: QuotePipeline, quote_token: str,
                 slippage_percent: Optional[float] = None):
        super().__init__(name, quote_token)
        self.pipeline = pipeline
        self.slippage_percent = (slippage_percent if slippage_percent is not None
                                 else pipeline.config.default_slippage_percent)

    async def price(self, asset: str, amount: float) -> VenuePrice:
        quote = await self.pipeline.get_quote(
            QuoteRequest(asset, self.quote_token, amount, self.slippage_percent)
        )
        route = quote.route
        price = route.output_amount / route.input_amount if route.input_amount else 0.0
        return VenuePrice(venue=self.name, asset=asset, price=price, price_impact=route.price_impact)

    async def buy(self, asset: str, amount: float, user_address: str) -> TradeFill:
        price = await self.price(asset, amount)
        result = await self.pipeline.execute_swap(SwapRequest(
            token_in=self.quote_token,
            token_out=asset,
            amount_in=amount * price.price,
            amount_out_minimum=0.0,
            recipient=user_address,
            slippage_percent=self.slippage_percent,
        ))
        return TradeFill(venue=self.name, tx_hash=result.tx_hash, asset_amount=result.actual_amount_out,
                         quote_amount=result.actual_amount_in, gas_used=result.gas_used)

    async def sell(self, asset: str, amount: float, user_address: str) -> TradeFill:
        result = await self.pipeline.execute_swap(SwapRequest(
            token_in=asset,
            token_out=self.quote_token,
            amount_in=amount,
            amount_out_minimum=0.0,
            recipient=user_address,
            slippage_percent=self.slippage_percent,
        ))
        return TradeFill(venue=self.name, tx_hash=result.tx_hash, asset_amount=result.actual_amount_in,
                         quote_amount=result.actual_amount_out, gas_used=result.gas_used)
