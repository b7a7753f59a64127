"""Arbitrage execution across two protocols."""

import time
from collections import deque
from typing import Any, Deque, Dict, Optional

from loguru import logger

from ..config import ArbitrageConfig
from ..protocols.venues import ArbitrageVenue, TradeFill
from .errors import ClassifiedError, ExecutionFailed, ValidationFailed
from .recovery import Deadline, RecoveryEngine
from .steps import StepLedger
from .types import ArbitrageOpportunity, ArbitrageResult

MAX_HISTORY = 1000


class ArbitrageExecutor:
    """
    Executes an arbitrage as two fixed-order legs: buy on the cheaper venue,
    then sell on the other. A failed buy leaves nothing open; a failed sell
    leaves the bought asset held, and the two are reported differently.
    """

    def __init__(self, config: ArbitrageConfig, venues: Dict[str, ArbitrageVenue], engine: RecoveryEngine,
                 max_history: int = MAX_HISTORY):
        self.config = config
        self.venues = venues
        self.engine = engine
        self.history: Deque[ArbitrageResult] = deque(maxlen=max_history)

    def _reject(self, reason: str, opportunity: ArbitrageOpportunity, user_address: str) -> ClassifiedError:
        context = self.engine.context("execute_arbitrage", user_address, asset=opportunity.asset)
        return ClassifiedError(self.engine.enhance(ValidationFailed([reason]), context))

    def reconcile(self, buy: TradeFill, sell: TradeFill, actual_profit: float) -> float:
        """
        Difference between the value change across both legs and ``actual_profit``.

        ``actual_profit`` is computed from the same fills, so the result is the
        unsold remainder (bought minus sold amount) valued at the realized sell
        price. It is non-zero only when the sell leg did not dispose of
        everything the buy leg acquired.
        """
        sell_price = sell.quote_amount / sell.asset_amount if sell.asset_amount else 0.0
        remainder = buy.asset_amount - sell.asset_amount
        value_change = (sell.quote_amount - buy.quote_amount - buy.gas_used - sell.gas_used
                        + remainder * sell_price)
        return value_change - actual_profit

    async def execute(self, opportunity: ArbitrageOpportunity, user_address: str,
                      deadline: Optional[Deadline] = None) -> ArbitrageResult:
        """Execute a profitable opportunity for ``user_address``."""
        if not opportunity.profitable:
            raise self._reject("opportunity is not profitable", opportunity, user_address)
        if opportunity.risk_score > self.config.max_risk_score:
            raise self._reject(
                f"risk score {opportunity.risk_score:.2f} above limit {self.config.max_risk_score:.2f}",
                opportunity, user_address,
            )
        buy_venue = self.venues.get(opportunity.buy_protocol)
        sell_venue = self.venues.get(opportunity.sell_protocol)
        if buy_venue is None or sell_venue is None:
            raise self._reject(f"unknown protocol pair {opportunity.buy_protocol}/{opportunity.sell_protocol}",
                               opportunity, user_address)

        start_time = time.time()
        asset = opportunity.asset
        logger.info(f"Executing arbitrage: {opportunity.amount} {asset} "
                    f"{buy_venue.name} -> {sell_venue.name}")

        ledger = StepLedger(self.engine, "execute_arbitrage", user_address, deadline)
        buy = await ledger.run("buy", lambda: buy_venue.buy(asset, opportunity.amount, user_address))
        sell = await ledger.run(
            "sell",
            lambda: sell_venue.sell(asset, buy.asset_amount, user_address),
            exposure=(
                f"holding {buy.asset_amount} {asset} bought on {buy_venue.name}",
                f"spent {buy.quote_amount} {buy_venue.quote_token}",
            ),
        )

        cost = buy.quote_amount
        proceeds = sell.quote_amount
        gas_used = buy.gas_used + sell.gas_used
        actual_profit = proceeds - cost - gas_used

        mismatch = self.reconcile(buy, sell, actual_profit)
        if abs(mismatch) > cost * self.config.value_tolerance:
            raise ledger.fail(
                ExecutionFailed(f"value change differs from reported profit by {mismatch:.6f}", sell.tx_hash),
                "reconcile",
                exposure=(f"{buy.asset_amount - sell.asset_amount} {asset} left unsold",),
            )

        result = ArbitrageResult(
            opportunity=opportunity,
            tx_hashes=ledger.tx_hashes(),
            cost=cost,
            proceeds=proceeds,
            gas_used=gas_used,
            actual_profit=actual_profit,
            execution_time_ms=int((time.time() - start_time) * 1000),
            metadata={"transactions": ledger.transactions(), "estimated_profit": opportunity.estimated_profit},
        )
        self.history.append(result)
        logger.info(f"💰 Arbitrage complete: profit {actual_profit:.6f} "
                    f"(estimated {opportunity.estimated_profit:.6f})")
        return result

    def get_execution_summary(self) -> Dict[str, Any]:
        """Summary of executed arbitrages."""
        total = sum(r.actual_profit for r in self.history)
        return {
            "executions": len(self.history),
            "total_profit": total,
            "average_profit": total / len(self.history) if self.history else 0.0,
        }

    def last_result(self) -> Optional[ArbitrageResult]:
        return self.history[-1] if self.history else None
