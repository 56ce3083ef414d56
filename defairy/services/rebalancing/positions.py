#!/usr/bin/env python3
"""
LP Position Snapshots
Venue-aggregated position records supplied each monitoring cycle, plus the
collaborator interfaces the engine consumes.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

import requests

from defairy.config import POSITIONS_FEED_URL

logger = logging.getLogger("defairy.positions")

# balance_usd may drift from token0+token1 value by rounding in the feed
BALANCE_TOLERANCE_USD = 0.01


class Venue(Enum):
    ORCA = 'Orca'
    RAYDIUM = 'Raydium'
    METEORA = 'Meteora'
    UNKNOWN = 'Unknown'

    @classmethod
    def parse(cls, value) -> 'Venue':
        """Case-insensitive lookup; anything unrecognised maps to UNKNOWN."""
        if isinstance(value, Venue):
            return value
        text = str(value or '').strip().lower()
        for venue in cls:
            if venue.value.lower() == text:
                return venue
        return cls.UNKNOWN


@dataclass
class TokenBalance:
    """One side of an LP position."""
    symbol: str
    amount: float
    price: float

    def __post_init__(self):
        if self.amount < 0:
            raise ValueError(f"Token {self.symbol} amount must be >= 0, got {self.amount}")
        if self.price < 0:
            raise ValueError(f"Token {self.symbol} price must be >= 0, got {self.price}")

    @property
    def value_usd(self) -> float:
        return self.amount * self.price

    def to_dict(self) -> Dict[str, Any]:
        return {'symbol': self.symbol, 'amount': self.amount, 'price': self.price}

    @classmethod
    def from_dict(cls, data: Dict) -> 'TokenBalance':
        return cls(
            symbol=str(data.get('symbol', '')),
            amount=float(data.get('amount', 0) or 0),
            price=float(data.get('price', 0) or 0),
        )


@dataclass
class Position:
    """Read-only LP position snapshot for one pool."""
    pool_id: str
    venue: Venue
    in_range: bool
    token0: Optional[TokenBalance]
    token1: Optional[TokenBalance]
    balance_usd: float
    apy_24h: float = 0.0
    fees_earned_usd: float = 0.0
    pool_address: Optional[str] = None
    position_address: Optional[str] = None
    current_tick: Optional[int] = None
    lower_tick: Optional[int] = None
    upper_tick: Optional[int] = None

    def __post_init__(self):
        if not self.pool_id:
            raise ValueError("Position requires a pool_id")
        if self.balance_usd < 0:
            raise ValueError(f"Position {self.pool_id} balance must be >= 0")

    @property
    def pool_key(self) -> str:
        """Stable queue/tracking key: pool id + venue."""
        return f"{self.pool_id}-{self.venue.value}"

    @property
    def current_price(self) -> float:
        """Price of token0 denominated in token1 (0 when unknown)."""
        if not self.token0 or not self.token1 or self.token1.price == 0:
            return 0.0
        return self.token0.price / self.token1.price

    @property
    def token_value_usd(self) -> float:
        if not self.token0 or not self.token1:
            return 0.0
        return self.token0.value_usd + self.token1.value_usd

    def balance_consistent(self, tolerance: float = BALANCE_TOLERANCE_USD) -> bool:
        """True when balance_usd matches the token values within tolerance."""
        if not self.token0 or not self.token1:
            return True
        return abs(self.balance_usd - self.token_value_usd) <= max(tolerance, self.balance_usd * 1e-6)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'pool': self.pool_id,
            'location': self.venue.value,
            'poolKey': self.pool_key,
            'inRange': self.in_range,
            'token0': self.token0.to_dict() if self.token0 else None,
            'token1': self.token1.to_dict() if self.token1 else None,
            'balance': self.balance_usd,
            'apy24h': self.apy_24h,
            'feesEarned': self.fees_earned_usd,
            'address': self.pool_address,
            'positionAddress': self.position_address,
            'currentTick': self.current_tick,
            'lowerTick': self.lower_tick,
            'upperTick': self.upper_tick,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Position':
        """Parse a dashboard position record.

        Raises:
            ValueError: if the record is malformed.
        """
        if not isinstance(data, dict):
            raise ValueError(f"Position record must be a mapping, got {type(data).__name__}")

        pool_id = data.get('pool') or data.get('poolId')
        if not pool_id:
            raise ValueError("Position record is missing 'pool'")

        try:
            token0 = TokenBalance.from_dict(data['token0']) if data.get('token0') else None
            token1 = TokenBalance.from_dict(data['token1']) if data.get('token1') else None

            balance = data.get('balance', data.get('balanceUsd'))
            if balance is None:
                balance = (token0.value_usd if token0 else 0.0) + (token1.value_usd if token1 else 0.0)

            in_range = data.get('inRange')
            if in_range is None:
                in_range = data.get('status') != 'Out of Range'

            return cls(
                pool_id=str(pool_id),
                venue=Venue.parse(data.get('location') or data.get('venue')),
                in_range=bool(in_range),
                token0=token0,
                token1=token1,
                balance_usd=float(balance),
                apy_24h=float(data.get('apy24h', 0) or 0),
                fees_earned_usd=float(data.get('feesEarned', 0) or 0),
                pool_address=data.get('address') or data.get('poolAddress'),
                position_address=data.get('positionAddress'),
                current_tick=_optional_int(data.get('currentTick')),
                lower_tick=_optional_int(data.get('lowerTick')),
                upper_tick=_optional_int(data.get('upperTick')),
            )
        except (TypeError, KeyError) as e:
            raise ValueError(f"Malformed position record for {pool_id}: {e}") from e


def _optional_int(value) -> Optional[int]:
    return int(value) if value is not None else None


# ==================== Collaborator interfaces ====================

class PositionFeed(Protocol):
    """Supplies venue-aggregated LP positions for a wallet."""
    def get_positions(self, wallet_address: str) -> List[Position]: ...


class PriceHistory(Protocol):
    """Historical USD price lookup; returns 0 when unavailable."""
    def get_historical_price(self, symbol: str, hours_back: int) -> float: ...


class HttpPositionFeed:
    """Fetches a wallet's positions from the dashboard's positions endpoint.

    The endpoint returns either a flat list or a mapping of venue -> list
    (``{"orca": [...], "raydium": [...]}``).
    """

    def __init__(self, url: str = POSITIONS_FEED_URL, session: Optional[requests.Session] = None, timeout: int = 15):
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    def get_positions(self, wallet_address: str) -> List[Position]:
        try:
            response = self._session.get(self.url, params={'wallet': wallet_address}, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"[Positions] Failed to fetch positions for {wallet_address[:8]}: {e}")
            return []

        records = data.get('positions', data) if isinstance(data, dict) else data
        if isinstance(records, dict):
            records = [r for venue_records in records.values() for r in (venue_records or [])]

        positions = []
        for record in records or []:
            try:
                positions.append(Position.from_dict(record))
            except ValueError as e:
                logger.debug(f"[Positions] Skipping malformed position: {e}")
        logger.info(f"[Positions] Fetched {len(positions)} positions for {wallet_address[:8]}")
        return positions
