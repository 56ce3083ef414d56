#!/usr/bin/env python3
"""
Rebalance Security Gate

Stateful policy check run before any rebalance is queued:
- Daily transaction count limit
- Maximum value per rebalance
- Per-pool cooldown between rebalances
- Circuit breaker on consecutive failures
- Weekly value cap

Checks run in that order and the first failure wins. Rejections are
returned as data, never raised.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from defairy.config import (
    MAX_CONSECUTIVE_FAILURES,
    MAX_DAILY_TRANSACTIONS,
    MAX_REBALANCE_AMOUNT_USD,
    MAX_WEEKLY_AMOUNT_USD,
    MIN_SECONDS_BETWEEN_REBALANCES,
    REQUIRE_CONFIRMATION_ABOVE_USD,
)

from .analyzer import RebalanceAnalysis
from .positions import Position
from .preferences import SecurityLimits, UserPreferences

logger = logging.getLogger("defairy.security")

DISABLED_TOO_MANY_FAILURES = 'too_many_failures'


class RejectionReason(Enum):
    DAILY_TRANSACTION_LIMIT_EXCEEDED = 'daily_transaction_limit_exceeded'
    TRANSACTION_AMOUNT_TOO_LARGE = 'transaction_amount_too_large'
    REBALANCE_FREQUENCY_TOO_HIGH = 'rebalance_frequency_too_high'
    TOO_MANY_CONSECUTIVE_FAILURES = 'too_many_consecutive_failures'
    WEEKLY_AMOUNT_LIMIT_EXCEEDED = 'weekly_amount_limit_exceeded'


@dataclass
class SecurityConfig:
    """System-wide security policy."""
    max_rebalance_amount: float = MAX_REBALANCE_AMOUNT_USD
    max_daily_transactions: int = MAX_DAILY_TRANSACTIONS
    max_weekly_amount: float = MAX_WEEKLY_AMOUNT_USD
    require_confirmation_above: float = REQUIRE_CONFIRMATION_ABOVE_USD
    min_seconds_between_rebalances: float = MIN_SECONDS_BETWEEN_REBALANCES
    max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES

    def limits(self) -> SecurityLimits:
        """Ceilings applied when validating user preferences."""
        return SecurityLimits(
            max_rebalance_amount=self.max_rebalance_amount,
            max_daily_transactions=self.max_daily_transactions,
            max_weekly_amount=self.max_weekly_amount,
            require_confirmation_above=self.require_confirmation_above,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'maxRebalanceAmount': self.max_rebalance_amount,
            'maxDailyTransactions': self.max_daily_transactions,
            'maxWeeklyAmount': self.max_weekly_amount,
            'requireConfirmationAbove': self.require_confirmation_above,
            'minSecondsBetweenRebalances': self.min_seconds_between_rebalances,
            'maxConsecutiveFailures': self.max_consecutive_failures,
        }


@dataclass
class SecurityCheck:
    """Outcome of a gate check."""
    approved: bool
    reason: Optional[RejectionReason] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'approved': self.approved,
            'reason': self.reason.value if self.reason else None,
            'details': self.details,
        }


class SecurityGate:
    """
    Per-pool tracking (last rebalance time, consecutive failures) plus the
    policy checks that consult it.

    ``store`` is the preference store; it is used to persist counter updates
    and to disable a pool when the circuit breaker trips.
    """

    def __init__(self, config: Optional[SecurityConfig] = None, store=None, clock=time.time):
        self.config = config or SecurityConfig()
        self.store = store
        self._clock = clock
        self._last_rebalance_time: Dict[str, float] = {}
        self._failure_count: Dict[str, int] = {}
        self._lock = threading.Lock()

    def check(self, position: Position, analysis: RebalanceAnalysis, preferences: UserPreferences) -> SecurityCheck:
        """Run the ordered policy checks for one position."""
        now = self._clock()
        pool_key = position.pool_key
        preferences.roll_windows(now)

        if preferences.daily_transaction_count >= preferences.max_daily_transactions:
            return self._reject(
                pool_key, RejectionReason.DAILY_TRANSACTION_LIMIT_EXCEEDED,
                dailyTransactionCount=preferences.daily_transaction_count,
                maxDailyTransactions=preferences.max_daily_transactions,
            )

        if analysis.estimated_value > preferences.max_rebalance_amount:
            return self._reject(
                pool_key, RejectionReason.TRANSACTION_AMOUNT_TOO_LARGE,
                estimatedValue=analysis.estimated_value,
                maxRebalanceAmount=preferences.max_rebalance_amount,
            )

        with self._lock:
            last_time = self._last_rebalance_time.get(pool_key)
            failures = self._failure_count.get(pool_key, 0)

        if last_time is not None and now - last_time < self.config.min_seconds_between_rebalances:
            return self._reject(
                pool_key, RejectionReason.REBALANCE_FREQUENCY_TOO_HIGH,
                secondsSinceLast=now - last_time,
                minSecondsBetween=self.config.min_seconds_between_rebalances,
            )

        if failures >= self.config.max_consecutive_failures:
            self._disable_pool(preferences, pool_key)
            return self._reject(
                pool_key, RejectionReason.TOO_MANY_CONSECUTIVE_FAILURES,
                consecutiveFailures=failures,
            )

        if preferences.weekly_transaction_amount + analysis.estimated_value > self.config.max_weekly_amount:
            return self._reject(
                pool_key, RejectionReason.WEEKLY_AMOUNT_LIMIT_EXCEEDED,
                weeklyTransactionAmount=preferences.weekly_transaction_amount,
                maxWeeklyAmount=self.config.max_weekly_amount,
            )

        return SecurityCheck(approved=True)

    def record_success(self, pool_key: str, preferences: UserPreferences, value_usd: float):
        """Stamp the cooldown, clear failures and count the transaction."""
        now = self._clock()
        with self._lock:
            self._last_rebalance_time[pool_key] = now
            self._failure_count[pool_key] = 0
        preferences.record_transaction(value_usd, now)
        if self.store is not None:
            self.store.save(preferences)
        logger.info(
            f"[Security] {pool_key} success recorded: daily={preferences.daily_transaction_count} "
            f"weekly=${preferences.weekly_transaction_amount:.2f}"
        )

    def record_failure(self, pool_key: str, preferences: UserPreferences) -> bool:
        """
        Count a failed attempt.

        Returns:
            True if this failure tripped the circuit breaker and the pool
            was disabled.
        """
        with self._lock:
            count = self._failure_count.get(pool_key, 0) + 1
            self._failure_count[pool_key] = count

        logger.warning(f"[Security] {pool_key} consecutive failures: {count}")
        if count >= self.config.max_consecutive_failures:
            self._disable_pool(preferences, pool_key)
            return True
        return False

    def reset_pool(self, pool_key: str):
        """Clear the failure counter (on manual re-enable)."""
        with self._lock:
            self._failure_count.pop(pool_key, None)

    def requires_confirmation(self, preferences: UserPreferences, value_usd: float) -> bool:
        threshold = min(preferences.require_confirmation_above, self.config.require_confirmation_above)
        return value_usd > threshold

    def get_pool_status(self, pool_key: str) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            last_time = self._last_rebalance_time.get(pool_key)
            failures = self._failure_count.get(pool_key, 0)
        cooldown = 0.0
        if last_time is not None:
            cooldown = max(0.0, self.config.min_seconds_between_rebalances - (now - last_time))
        return {
            'poolKey': pool_key,
            'lastRebalanceTime': last_time,
            'consecutiveFailures': failures,
            'cooldownRemaining': cooldown,
        }

    def _disable_pool(self, preferences: UserPreferences, pool_key: str):
        if not preferences.is_pool_enabled(pool_key):
            return
        preferences.set_pool_enabled(pool_key, False, DISABLED_TOO_MANY_FAILURES)
        if self.store is not None:
            self.store.save(preferences)
        logger.warning(f"[Security] Rebalancing disabled for {pool_key}: {DISABLED_TOO_MANY_FAILURES}")

    def _reject(self, pool_key: str, reason: RejectionReason, **details) -> SecurityCheck:
        logger.info(f"[Security] {pool_key} rejected: {reason.value}")
        return SecurityCheck(approved=False, reason=reason, details=details)
