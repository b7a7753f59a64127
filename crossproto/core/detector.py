"""Arbitrage opportunity detection across two protocols."""

import asyncio
from typing import Dict, List, Optional

from loguru import logger

from ..config import ArbitrageConfig
from ..protocols.venues import ArbitrageVenue, VenuePrice
from .errors import ClassifiedError, ValidationFailed
from .recovery import RecoveryEngine
from .types import ArbitrageDirection, ArbitrageOpportunity
from .utils import clamp, format_bps

CROSS_PROTOCOL_RISK = 0.1


def price_discrepancy(price_a: float, price_b: float) -> float:
    """|priceA - priceB| relative to the cheaper price."""
    return abs(price_a - price_b) / min(price_a, price_b)


def risk_score(discrepancy: float, notional: float, max_price_impact: float) -> float:
    """
    Risk of an opportunity in [0, 1].

    Large discrepancies are more likely stale or manipulated prices, large
    trades move the pools, and executing across two protocols adds leg risk.
    """
    discrepancy_risk = min(discrepancy * 2, 0.3)
    size_risk = min(notional / 1e8, 0.2)
    slippage_risk = min(max_price_impact * 5, 0.4)
    return clamp(discrepancy_risk + size_risk + CROSS_PROTOCOL_RISK + slippage_risk, 0.0, 1.0)


class ArbitrageDetector:
    """Detects price discrepancies for one asset between two venues."""

    def __init__(self, config: ArbitrageConfig, venues: Dict[str, ArbitrageVenue], engine: RecoveryEngine):
        self.config = config
        self.venues = venues
        self.engine = engine

    def _venue(self, name: str) -> ArbitrageVenue:
        venue = self.venues.get(name)
        if venue is None:
            context = self.engine.context("detect_arbitrage", protocol=name)
            raise ClassifiedError(self.engine.enhance(
                ValidationFailed([f"unknown protocol '{name}', known: {sorted(self.venues)}"]), context,
            ))
        return venue

    def evaluate(self, asset: str, amount: float, price_a: VenuePrice, price_b: VenuePrice) -> ArbitrageOpportunity:
        """Build an opportunity from two venue prices."""
        if price_a.price <= 0 or price_b.price <= 0:
            context = self.engine.context("detect_arbitrage", asset=asset)
            raise ClassifiedError(self.engine.enhance(
                ValidationFailed([f"non-positive price ({price_a.price}, {price_b.price})"]), context,
            ))

        discrepancy = price_discrepancy(price_a.price, price_b.price)
        threshold = self.config.min_profit_threshold + self.config.gas_cost_fraction
        profitable = discrepancy > threshold

        if price_a.price <= price_b.price:
            direction = ArbitrageDirection.A_TO_B
        else:
            direction = ArbitrageDirection.B_TO_A
        buy_price = min(price_a.price, price_b.price)
        sell_price = max(price_a.price, price_b.price)
        notional = amount * buy_price
        gas_cost = notional * self.config.gas_cost_fraction
        estimated_profit = amount * (sell_price - buy_price) - gas_cost

        opportunity = ArbitrageOpportunity(
            asset=asset,
            amount=amount,
            protocol_a=price_a.venue,
            protocol_b=price_b.venue,
            price_a=price_a.price,
            price_b=price_b.price,
            price_discrepancy=discrepancy,
            estimated_profit=estimated_profit,
            risk_score=risk_score(discrepancy, notional, max(price_a.price_impact, price_b.price_impact)),
            profitable=profitable,
            direction=direction,
            gas_cost_fraction=self.config.gas_cost_fraction,
            timestamp=self.engine.clock(),
            metadata={"threshold": threshold, "notional": notional},
        )

        if profitable:
            logger.info(f"🔍 {asset}: buy on {opportunity.buy_protocol} @ {buy_price:.6f}, "
                        f"sell on {opportunity.sell_protocol} @ {sell_price:.6f}, "
                        f"discrepancy {format_bps(discrepancy * 10_000)} > {format_bps(threshold * 10_000)}")
        else:
            logger.debug(f"{asset}: discrepancy {discrepancy:.4%} <= {threshold:.4%}, not profitable")
        return opportunity

    async def detect(self, asset: str, amount: float, protocol_a: Optional[str] = None,
                     protocol_b: Optional[str] = None) -> ArbitrageOpportunity:
        """Query both venues concurrently and evaluate the discrepancy."""
        venue_a = self._venue(protocol_a or self.config.protocol_a)
        venue_b = self._venue(protocol_b or self.config.protocol_b)
        price_a, price_b = await asyncio.gather(venue_a.price(asset, amount), venue_b.price(asset, amount))
        return self.evaluate(asset, amount, price_a, price_b)

    async def scan(self, assets: Dict[str, float]) -> List[ArbitrageOpportunity]:
        """Detect opportunities for several (asset, amount) pairs."""
        opportunities = []
        for asset, amount in assets.items():
            opportunities.append(await self.detect(asset, amount))
        return opportunities

    def find_best_opportunity(self, opportunities: List[ArbitrageOpportunity]) -> Optional[ArbitrageOpportunity]:
        """Best profitable opportunity within the risk limit, ranked by risk-adjusted profit."""
        eligible = [
            o for o in opportunities
            if o.profitable and o.risk_score <= self.config.max_risk_score
        ]
        if not eligible:
            return None
        return max(eligible, key=lambda o: o.estimated_profit * (1 - o.risk_score))
