"""
Leveraged position management over the lending and router protocols.

Every operation is a fixed-order sequence of state-changing calls recorded in
a ``StepLedger``. Health factor is always re-read from the lending protocol
after the state-changing steps, never carried over from a previous step.
"""

from typing import Optional

from loguru import logger

from ..config import LeverageConfig
from ..protocols.base import LendingRequest
from .errors import ClassifiedError, HealthFactorTooLow, ValidationFailed
from .lending import LendingGateway
from .quotes import QuotePipeline
from .recovery import Deadline, RecoveryEngine
from .steps import StepLedger
from .types import (
    LeveragePosition, LeverageResult, QuoteRequest, RebalanceResult, SwapRequest, UnwindResult,
)
from .utils import safe_divide


class LeverageManager:
    """Opens, rebalances and unwinds leveraged positions."""

    def __init__(self, config: LeverageConfig, lending: LendingGateway, pipeline: QuotePipeline,
                 engine: RecoveryEngine):
        self.config = config
        self.lending = lending
        self.pipeline = pipeline
        self.engine = engine

    @property
    def min_health_factor(self) -> float:
        return self.lending.config.min_health_factor

    def _invalid(self, operation: str, user_address: str, errors) -> ClassifiedError:
        context = self.engine.context(operation, user_address)
        return ClassifiedError(self.engine.enhance(ValidationFailed(list(errors)), context))

    def _swap(self, token_in: str, token_out: str, amount: float, user_address: str,
              slippage_percent: Optional[float] = None):
        return self.pipeline.execute_swap(SwapRequest(
            token_in=token_in,
            token_out=token_out,
            amount_in=amount,
            amount_out_minimum=0.0,
            recipient=user_address,
            slippage_percent=(slippage_percent if slippage_percent is not None
                              else self.pipeline.config.default_slippage_percent),
        ))

    async def _amount_in_for(self, ledger: StepLedger, token_in: str, token_out: str,
                             amount_out: float, user_address: str) -> float:
        """Amount of ``token_in`` expected to buy ``amount_out`` of ``token_out``, with buffer."""
        quote = await ledger.run(
            "quote",
            lambda: self.pipeline.get_quote(QuoteRequest(token_out, token_in, amount_out, user_address=user_address)),
            commits=False,
        )
        rate = safe_divide(quote.route.output_amount, quote.route.input_amount)
        return amount_out * rate * (1 + self.config.slippage_buffer)

    async def open_position(self, user_address: str, collateral_asset: str, collateral_amount: float,
                            target_asset: str, leverage_ratio: float, borrow_asset: Optional[str] = None,
                            slippage_percent: Optional[float] = None,
                            deadline: Optional[Deadline] = None) -> LeverageResult:
        """
        Supply collateral, borrow against it and swap the borrowed amount into
        the target asset, in that order.

        Raises:
            ClassifiedError: validation_failed before anything is sent, the
            classified step failure with partial results, or
            health_factor_too_low when all steps committed but the resulting
            position is not safe
        """
        errors = []
        if not user_address:
            errors.append("user_address is required")
        if collateral_amount <= 0:
            errors.append("collateral_amount must be positive")
        if leverage_ratio < 1.0:
            errors.append("leverage_ratio must be at least 1.0")
        if leverage_ratio > self.config.max_leverage_ratio:
            errors.append(f"leverage_ratio must not exceed {self.config.max_leverage_ratio}")
        if errors:
            raise self._invalid("open_leverage", user_address, errors)

        borrow_asset = borrow_asset or collateral_asset
        borrow_amount = collateral_amount * (leverage_ratio - 1)
        ledger = StepLedger(self.engine, "open_leverage", user_address, deadline)
        logger.info(f"Opening {leverage_ratio}x position: {collateral_amount} {collateral_asset} -> {target_asset}")

        await ledger.run("supply", lambda: self.lending.supply(
            LendingRequest(collateral_asset, collateral_amount, user_address)))

        target_amount = 0.0
        if borrow_amount > 0:
            await ledger.run(
                "borrow",
                lambda: self.lending.borrow(LendingRequest(borrow_asset, borrow_amount, user_address)),
                exposure=(f"{collateral_amount} {collateral_asset} supplied as collateral",),
            )
            if borrow_asset != target_asset:
                swap = await ledger.run(
                    "swap",
                    lambda: self._swap(borrow_asset, target_asset, borrow_amount, user_address, slippage_percent),
                    exposure=(
                        f"{collateral_amount} {collateral_asset} supplied as collateral",
                        f"{borrow_amount} {borrow_asset} borrowed and held unswapped",
                    ),
                )
                target_amount = swap.actual_amount_out
            else:
                target_amount = borrow_amount

        health_factor = await ledger.run(
            "health_check", lambda: self.lending.health_factor(user_address), commits=False,
        )
        if health_factor <= self.min_health_factor:
            raise ledger.fail(
                HealthFactorTooLow(health_factor, self.min_health_factor),
                "health_check",
                exposure=(f"position open with health factor {health_factor:.4f}",),
            )

        position = LeveragePosition(
            id=f"lev_{user_address[:10]}_{self.engine.clock()}",
            user_address=user_address,
            collateral_asset=collateral_asset,
            collateral_amount=collateral_amount,
            target_asset=target_asset,
            leverage_ratio=leverage_ratio,
            borrow_asset=borrow_asset,
            borrowed_amount=borrow_amount,
            target_amount=target_amount,
            health_factor=health_factor,
        )
        logger.info(f"✅ Opened {position.id}: borrowed {borrow_amount} {borrow_asset}, "
                    f"health factor {health_factor:.3f}")
        return LeverageResult(position=position, transactions=ledger.transactions())

    async def rebalance(self, user_address: str, collateral_asset: str, target_asset: str,
                        borrow_asset: Optional[str] = None,
                        target_health_factor: Optional[float] = None,
                        deadline: Optional[Deadline] = None) -> RebalanceResult:
        """Move the position's health factor back to the target by repaying or borrowing."""
        borrow_asset = borrow_asset or collateral_asset
        target = target_health_factor or self.config.target_health_factor
        if target <= self.min_health_factor:
            raise self._invalid("rebalance_leverage", user_address,
                                [f"target health factor must be above {self.min_health_factor}"])

        ledger = StepLedger(self.engine, "rebalance_leverage", user_address, deadline)
        position = await ledger.run("read_position", lambda: self.lending.user_position(user_address),
                                    commits=False)
        health_factor = await ledger.run("read_health_factor", lambda: self.lending.health_factor(user_address),
                                         commits=False)

        borrowed = position.borrowed(borrow_asset)
        if borrowed <= 0 or position.debt_value <= 0:
            logger.info(f"No debt in {borrow_asset} for {user_address}, nothing to rebalance")
            return RebalanceResult(health_factor, health_factor, "none", 0.0, {})

        borrow_price = position.debt_value / borrowed
        tolerance = self.config.health_factor_tolerance
        # debt value at which the current collateral gives the target health factor
        target_debt_value = health_factor * position.debt_value / target

        if health_factor < target - tolerance:
            repay_amount = min(borrowed, (position.debt_value - target_debt_value) / borrow_price)
            action = "deleverage"
            if target_asset != borrow_asset:
                sell_amount = await self._amount_in_for(ledger, target_asset, borrow_asset, repay_amount, user_address)
                swap = await ledger.run(
                    "swap", lambda: self._swap(target_asset, borrow_asset, sell_amount, user_address))
                repay_amount = min(repay_amount, swap.actual_amount_out)
            await ledger.run(
                "repay",
                lambda: self.lending.repay(LendingRequest(borrow_asset, repay_amount, user_address)),
                exposure=(f"{borrow_asset} acquired for repayment held in wallet",),
            )
            delta = -repay_amount
        elif health_factor > target + tolerance:
            borrow_amount = (target_debt_value - position.debt_value) / borrow_price
            action = "leverage_up"
            await ledger.run("borrow", lambda: self.lending.borrow(
                LendingRequest(borrow_asset, borrow_amount, user_address)))
            if target_asset != borrow_asset:
                await ledger.run(
                    "swap",
                    lambda: self._swap(borrow_asset, target_asset, borrow_amount, user_address),
                    exposure=(f"{borrow_amount} {borrow_asset} borrowed and held unswapped",),
                )
            delta = borrow_amount
        else:
            logger.info(f"Health factor {health_factor:.3f} within {tolerance} of target {target}")
            return RebalanceResult(health_factor, health_factor, "none", 0.0, {})

        new_health_factor = await ledger.run(
            "health_check", lambda: self.lending.health_factor(user_address), commits=False,
        )
        if new_health_factor <= self.min_health_factor:
            raise ledger.fail(HealthFactorTooLow(new_health_factor, self.min_health_factor), "health_check")

        logger.info(f"Rebalanced {user_address} ({action}): health factor "
                    f"{health_factor:.3f} -> {new_health_factor:.3f}")
        return RebalanceResult(
            previous_health_factor=health_factor,
            new_health_factor=new_health_factor,
            action=action,
            delta_amount=delta,
            transactions=ledger.transactions(),
        )

    async def unwind(self, user_address: str, collateral_asset: str, target_asset: str,
                     borrow_asset: Optional[str] = None, unwind_ratio: float = 1.0,
                     deadline: Optional[Deadline] = None) -> UnwindResult:
        """Close ``unwind_ratio`` of the position: swap -> repay -> withdraw."""
        if not 0 < unwind_ratio <= 1:
            raise self._invalid("unwind_leverage", user_address, ["unwind_ratio must be in (0, 1]"])
        borrow_asset = borrow_asset or collateral_asset

        ledger = StepLedger(self.engine, "unwind_leverage", user_address, deadline)
        position = await ledger.run("read_position", lambda: self.lending.user_position(user_address),
                                    commits=False)
        borrowed = position.borrowed(borrow_asset)
        supplied = position.supplied(collateral_asset)
        if borrowed <= 0 and supplied <= 0:
            raise self._invalid("unwind_leverage", user_address,
                                [f"no open position in {collateral_asset}/{borrow_asset}"])

        repay_amount = borrowed * unwind_ratio
        repaid = 0.0
        if repay_amount > 0:
            if target_asset != borrow_asset:
                sell_amount = await self._amount_in_for(ledger, target_asset, borrow_asset, repay_amount, user_address)
                swap = await ledger.run("swap", lambda: self._swap(target_asset, borrow_asset, sell_amount, user_address))
                repaid = min(repay_amount, swap.actual_amount_out)
            else:
                repaid = repay_amount
            await ledger.run(
                "repay",
                lambda: self.lending.repay(LendingRequest(borrow_asset, repaid, user_address)),
                exposure=(f"{borrow_asset} acquired for repayment held in wallet",),
            )

        # withdraw in proportion to the debt actually repaid
        repaid_fraction = safe_divide(repaid, borrowed, default=1.0) if borrowed > 0 else 1.0
        withdraw_amount = supplied * unwind_ratio * min(1.0, safe_divide(repaid_fraction, unwind_ratio, 1.0))
        if withdraw_amount > 0:
            await ledger.run(
                "withdraw",
                lambda: self.lending.withdraw(LendingRequest(collateral_asset, withdraw_amount, user_address)),
                exposure=(f"{repaid} {borrow_asset} repaid, collateral still supplied",),
            )

        final_position = await ledger.run("read_position", lambda: self.lending.user_position(user_address),
                                          commits=False)
        final_health_factor = await ledger.run(
            "health_check", lambda: self.lending.health_factor(user_address), commits=False,
        )
        if final_position.borrowed(borrow_asset) > 0 and final_health_factor <= self.min_health_factor:
            raise ledger.fail(HealthFactorTooLow(final_health_factor, self.min_health_factor), "health_check")

        logger.info(f"Unwound {unwind_ratio:.0%} for {user_address}: repaid {repaid} {borrow_asset}, "
                    f"withdrew {withdraw_amount} {collateral_asset}")
        return UnwindResult(
            unwind_ratio=unwind_ratio,
            repaid_amount=repaid,
            withdrawn_amount=withdraw_amount,
            remaining_collateral=final_position.supplied(collateral_asset),
            remaining_debt=final_position.borrowed(borrow_asset),
            final_health_factor=final_health_factor,
            transactions=ledger.transactions(),
        )
