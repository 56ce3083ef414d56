#!/usr/bin/env python3
"""
Rebalance Analyzer
Decides whether an LP position needs rebalancing and which corrective
actions to take. Everything here is pure: the historical price deviation is
looked up by the caller and passed in.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .positions import Position, PriceHistory
from .preferences import UserPreferences

logger = logging.getLogger("defairy.rebalance")

# 10% of position value is the cost-of-rebalancing heuristic for a reopen
CLOSE_AND_REOPEN_COST_RATIO = 0.10
# Static placeholder until volatility is derived from price history
VOLATILITY_FACTOR = 1.5
BASE_RANGE_WIDTH = 0.10
# Swap half of the imbalance
SWAP_FRACTION = 0.5


class ActionType(Enum):
    CLOSE_AND_REOPEN_POSITION = 'close_and_reopen_position'
    SWAP_REBALANCE = 'swap_rebalance'


class Urgency(Enum):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'

    @property
    def rank(self) -> int:
        return _URGENCY_RANK[self]

    def escalate(self, other: 'Urgency') -> 'Urgency':
        """Return the higher of the two tiers; never downgrades."""
        return other if other.rank > self.rank else self


_URGENCY_RANK = {Urgency.LOW: 0, Urgency.MEDIUM: 1, Urgency.HIGH: 2}


@dataclass
class PriceRange:
    lower_price: float
    upper_price: float

    def to_dict(self) -> Dict[str, float]:
        return {'lowerPrice': self.lower_price, 'upperPrice': self.upper_price}


@dataclass
class SwapPlan:
    """Which token to sell, how much of it, and the amounts to end up with."""
    sell_symbol: str
    buy_symbol: str
    sell_amount: float
    target_token0_amount: float
    target_token1_amount: float
    usd_value_split: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sellSymbol': self.sell_symbol,
            'buySymbol': self.buy_symbol,
            'sellAmount': self.sell_amount,
            'targetToken0Amount': self.target_token0_amount,
            'targetToken1Amount': self.target_token1_amount,
            'usdValueSplit': self.usd_value_split,
        }


@dataclass
class RebalanceAction:
    type: ActionType
    reason: str
    estimated_value: float
    priority: Urgency
    new_range: Optional[PriceRange] = None
    swap_amount: Optional[float] = None
    swap_plan: Optional[SwapPlan] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'type': self.type.value,
            'reason': self.reason,
            'estimatedValue': self.estimated_value,
            'priority': self.priority.value,
        }
        if self.new_range is not None:
            data['newRange'] = self.new_range.to_dict()
        if self.swap_amount is not None:
            data['swapAmount'] = self.swap_amount
        if self.swap_plan is not None:
            data['swapPlan'] = self.swap_plan.to_dict()
        return data


@dataclass
class RebalanceAnalysis:
    should_rebalance: bool = False
    reasons: List[str] = field(default_factory=list)
    actions: List[RebalanceAction] = field(default_factory=list)
    estimated_value: float = 0.0
    urgency: Urgency = Urgency.LOW
    imbalance_ratio: float = 0.0
    price_deviation: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'shouldRebalance': self.should_rebalance,
            'reasons': list(self.reasons),
            'actions': [a.to_dict() for a in self.actions],
            'estimatedValue': self.estimated_value,
            'urgency': self.urgency.value,
            'imbalanceRatio': self.imbalance_ratio,
            'priceDeviation': self.price_deviation,
        }


# ==================== Calculations ====================

def calculate_token_imbalance(position: Position) -> float:
    """Distance of token0's USD share from a 50/50 split (0 when undefined)."""
    if not position.token0 or not position.token1:
        return 0.0
    value0 = position.token0.value_usd
    total = value0 + position.token1.value_usd
    if total <= 0:
        return 0.0
    return abs(value0 / total - 0.5)


def calculate_optimal_range(position: Position, volatility_factor: float = VOLATILITY_FACTOR) -> PriceRange:
    """Range centred on the current token0/token1 price."""
    current_price = position.current_price
    width = BASE_RANGE_WIDTH * volatility_factor
    return PriceRange(
        lower_price=current_price * (1 - width),
        upper_price=current_price * (1 + width),
    )


def calculate_swap_amount(position: Position, imbalance_ratio: float) -> float:
    """USD amount to swap: half of the imbalance."""
    return position.balance_usd * imbalance_ratio * SWAP_FRACTION


def calculate_swap_plan(position: Position) -> Optional[SwapPlan]:
    """
    Work out the swap that brings both sides to an equal USD value.

    When either token price is unknown the split falls back to averaging the
    raw token amounts.
    """
    token0, token1 = position.token0, position.token1
    if not token0 or not token1:
        return None

    if token0.price > 0 and token1.price > 0:
        half_value = (token0.value_usd + token1.value_usd) / 2
        target0 = half_value / token0.price
        target1 = half_value / token1.price
        usd_split = True
    else:
        target0 = target1 = (token0.amount + token1.amount) / 2
        usd_split = False

    if token0.amount >= target0:
        return SwapPlan(token0.symbol, token1.symbol, token0.amount - target0, target0, target1, usd_split)
    return SwapPlan(token1.symbol, token0.symbol, token1.amount - target1, target0, target1, usd_split)


def calculate_price_deviation(position: Position, price_history: Optional[PriceHistory], hours_back: int = 24) -> float:
    """
    Relative change of the token0/token1 price against ``hours_back`` ago.

    Returns 0 when either historical price is unavailable or the lookup fails.
    """
    if price_history is None or not position.token0 or not position.token1:
        return 0.0
    try:
        historical0 = price_history.get_historical_price(position.token0.symbol, hours_back)
        historical1 = price_history.get_historical_price(position.token1.symbol, hours_back)
    except Exception as e:
        logger.error(f"[Rebalance] Price history lookup failed for {position.pool_key}: {e}")
        return 0.0

    if not historical0 or not historical1 or position.token1.price == 0:
        return 0.0

    historical_ratio = historical0 / historical1
    return abs(position.current_price - historical_ratio) / historical_ratio


# ==================== Analysis ====================

def analyze(position: Position, preferences: UserPreferences, price_deviation: float = 0.0) -> RebalanceAnalysis:
    """Evaluate one position against the wallet's thresholds."""
    thresholds = preferences.rebalance_thresholds
    analysis = RebalanceAnalysis()

    if not position.in_range:
        analysis.should_rebalance = True
        analysis.reasons.append('Position out of range')
        analysis.urgency = Urgency.HIGH
        analysis.actions.append(RebalanceAction(
            type=ActionType.CLOSE_AND_REOPEN_POSITION,
            reason='Out of range position',
            estimated_value=position.balance_usd * CLOSE_AND_REOPEN_COST_RATIO,
            priority=Urgency.HIGH,
            new_range=calculate_optimal_range(position),
        ))

    imbalance_ratio = calculate_token_imbalance(position)
    analysis.imbalance_ratio = imbalance_ratio
    if imbalance_ratio > thresholds.imbalance_ratio:
        swap_amount = calculate_swap_amount(position, imbalance_ratio)
        analysis.should_rebalance = True
        analysis.reasons.append(f"Token imbalance: {imbalance_ratio * 100:.1f}%")
        analysis.actions.append(RebalanceAction(
            type=ActionType.SWAP_REBALANCE,
            reason='Token ratio imbalance',
            estimated_value=swap_amount,
            priority=Urgency.MEDIUM,
            swap_amount=swap_amount,
            swap_plan=calculate_swap_plan(position),
        ))

    analysis.price_deviation = price_deviation
    if price_deviation > thresholds.price_deviation:
        analysis.should_rebalance = True
        analysis.reasons.append(f"Price deviation: {price_deviation * 100:.1f}%")
        analysis.urgency = analysis.urgency.escalate(Urgency.MEDIUM)

    analysis.estimated_value = sum(a.estimated_value for a in analysis.actions)
    return analysis
