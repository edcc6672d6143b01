"""
Copy Sizer

Pure functions translating an observed trade into a bounded replica order:

- size:  clamp(observed_size * copy_ratio, min_position_size, max_position_size)
- price: observed_price adjusted by the slippage tolerance, in the direction
         that makes the replica more likely to fill

Outcome shares are probability priced, so any observed price outside (0, 1]
is rejected as invalid data rather than turned into an order.
"""

import math
from typing import Optional
from copybot.core.models import Trade, RiskConfig, Side, Order
from copybot.core.errors import InvalidTradeDataError

MAX_PRICE = 1.0
MIN_PRICE = 0.001


def validate_trade(trade: Trade) -> None:
    if not trade.market_id:
        raise InvalidTradeDataError(f"Trade {trade.transaction_id} has no market id")
    _check_size(trade.size)
    _check_price(trade.price)


def _check_size(observed_size: float) -> None:
    if not math.isfinite(observed_size) or observed_size <= 0:
        raise InvalidTradeDataError(f"Observed size must be positive, got {observed_size}")


def _check_price(observed_price: float) -> None:
    if not math.isfinite(observed_price) or not 0 < observed_price <= MAX_PRICE:
        raise InvalidTradeDataError(f"Observed price must be in (0, 1], got {observed_price}")


def replica_side(side: Optional[Side]) -> Side:
    """Missing sides are copied as BUY."""
    return side if side is not None else Side.BUY


def size(observed_size: float, risk: RiskConfig) -> float:
    _check_size(observed_size)
    scaled = observed_size * risk.copy_ratio
    return min(max(scaled, risk.min_position_size), risk.max_position_size)


def price(observed_price: float, side: Optional[Side], slippage_tolerance: float) -> float:
    _check_price(observed_price)
    if replica_side(side) == Side.BUY:
        # Pay slightly more to make sure the order fills
        return min(observed_price * (1 + slippage_tolerance), MAX_PRICE)
    return max(observed_price * (1 - slippage_tolerance), MIN_PRICE)


def build_order(trade: Trade, risk: RiskConfig) -> Order:
    """Validates the trade and returns the bounded replica order."""
    validate_trade(trade)
    side = replica_side(trade.side)
    return Order(
        market_id=trade.market_id,
        token_id=trade.asset_id,
        outcome=trade.outcome,
        market_name=trade.title,
        side=side,
        size=size(trade.size, risk),
        price_limit=price(trade.price, side, risk.slippage_tolerance),
    )
