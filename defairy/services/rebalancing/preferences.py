#!/usr/bin/env python3
"""
Rebalance Preferences
Per-wallet thresholds, notification channels and execution limits.

Raw preferences are never rejected: numeric fields are clamped to the
system security ceilings and omitted fields take their defaults.
"""

import copy
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from defairy.config import (
    MAX_DAILY_TRANSACTIONS,
    MAX_REBALANCE_AMOUNT_USD,
    MAX_WEEKLY_AMOUNT_USD,
    REQUIRE_CONFIRMATION_ABOVE_USD,
)

logger = logging.getLogger("defairy.preferences")

DAY_SECONDS = 24 * 60 * 60
WEEK_SECONDS = 7 * DAY_SECONDS

# Defaults applied when a field is omitted (or falsy)
DEFAULT_MAX_REBALANCE_AMOUNT = 1000.0
DEFAULT_MAX_DAILY_TRANSACTIONS = 5
DEFAULT_IMBALANCE_RATIO = 0.25   # 25/75 split
DEFAULT_PRICE_DEVIATION = 0.05   # 5% move vs 24h ago
DEFAULT_OUT_OF_RANGE_ACTION = 'alert'
DEFAULT_AUTO_EXECUTE_BELOW = 100.0
DEFAULT_REQUIRE_CONFIRMATION_ABOVE = 1000.0

OUT_OF_RANGE_ACTIONS = ('alert', 'auto')
TRUE_STRINGS = ('true', '1', 'yes', 'on')
FALSE_STRINGS = ('false', '0', 'no', 'off', '')


@dataclass(frozen=True)
class SecurityLimits:
    """System-wide ceilings that user preferences can never exceed."""
    max_rebalance_amount: float = MAX_REBALANCE_AMOUNT_USD
    max_daily_transactions: int = MAX_DAILY_TRANSACTIONS
    max_weekly_amount: float = MAX_WEEKLY_AMOUNT_USD
    require_confirmation_above: float = REQUIRE_CONFIRMATION_ABOVE_USD


@dataclass
class RebalanceThresholds:
    imbalance_ratio: float = DEFAULT_IMBALANCE_RATIO
    price_deviation: float = DEFAULT_PRICE_DEVIATION
    out_of_range_action: str = DEFAULT_OUT_OF_RANGE_ACTION

    def to_dict(self) -> Dict[str, Any]:
        return {
            'imbalanceRatio': self.imbalance_ratio,
            'priceDeviation': self.price_deviation,
            'outOfRangeAction': self.out_of_range_action,
        }


@dataclass
class NotificationChannels:
    in_app: bool = True
    email: bool = False
    telegram: bool = False
    email_address: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'inApp': self.in_app,
            'email': self.email,
            'telegram': self.telegram,
            'emailAddress': self.email_address,
            'telegramChatId': self.telegram_chat_id,
        }


@dataclass
class PoolSettings:
    enabled: bool = True
    disabled_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'enabled': self.enabled, 'disabledReason': self.disabled_reason}


@dataclass
class UserPreferences:
    """Validated rebalancing preferences and rolling counters for one wallet."""
    wallet_address: str
    enable_global_rebalancing: bool = False
    pool_specific_settings: Dict[str, PoolSettings] = field(default_factory=dict)
    max_rebalance_amount: float = DEFAULT_MAX_REBALANCE_AMOUNT
    max_daily_transactions: int = DEFAULT_MAX_DAILY_TRANSACTIONS
    rebalance_thresholds: RebalanceThresholds = field(default_factory=RebalanceThresholds)
    notification_channels: NotificationChannels = field(default_factory=NotificationChannels)
    auto_execute_below: float = DEFAULT_AUTO_EXECUTE_BELOW
    require_confirmation_above: float = DEFAULT_REQUIRE_CONFIRMATION_ABOVE

    # Mutable counters, reset on rolling 24h / 7d windows
    daily_transaction_count: int = 0
    weekly_transaction_amount: float = 0.0
    last_transaction_reset: float = field(default_factory=time.time)
    last_weekly_reset: float = field(default_factory=time.time)

    def is_pool_enabled(self, *pool_keys: Optional[str]) -> bool:
        """A pool is enabled unless one of its keys has an explicit disabled entry."""
        for key in pool_keys:
            settings = self.pool_specific_settings.get(key) if key else None
            if settings is not None and not settings.enabled:
                return False
        return True

    def set_pool_enabled(self, pool_key: str, enabled: bool, reason: Optional[str] = None):
        settings = self.pool_specific_settings.setdefault(pool_key, PoolSettings())
        settings.enabled = enabled
        settings.disabled_reason = None if enabled else (reason or 'user')

    def roll_windows(self, now: Optional[float] = None):
        """Reset the daily/weekly counters once their window has passed."""
        now = time.time() if now is None else now
        if now - self.last_transaction_reset > DAY_SECONDS:
            self.daily_transaction_count = 0
            self.last_transaction_reset = now
        if now - self.last_weekly_reset > WEEK_SECONDS:
            self.weekly_transaction_amount = 0.0
            self.last_weekly_reset = now

    def record_transaction(self, value_usd: float, now: Optional[float] = None):
        """Count one executed action against the daily/weekly limits."""
        self.roll_windows(now)
        self.daily_transaction_count += 1
        self.weekly_transaction_amount += value_usd

    def to_dict(self) -> Dict[str, Any]:
        return {
            'walletAddress': self.wallet_address,
            'enableGlobalRebalancing': self.enable_global_rebalancing,
            'poolSpecificSettings': {k: v.to_dict() for k, v in self.pool_specific_settings.items()},
            'maxRebalanceAmount': self.max_rebalance_amount,
            'maxDailyTransactions': self.max_daily_transactions,
            'rebalanceThresholds': self.rebalance_thresholds.to_dict(),
            'notificationChannels': self.notification_channels.to_dict(),
            'autoExecuteBelow': self.auto_execute_below,
            'requireConfirmationAbove': self.require_confirmation_above,
            'dailyTransactionCount': self.daily_transaction_count,
            'weeklyTransactionAmount': self.weekly_transaction_amount,
            'lastTransactionReset': self.last_transaction_reset,
            'lastWeeklyReset': self.last_weekly_reset,
        }

    @classmethod
    def from_dict(cls, data: Dict, limits: Optional[SecurityLimits] = None) -> 'UserPreferences':
        """Rebuild preferences (including counters) from a stored document."""
        prefs = validate_preferences(data.get('walletAddress', ''), data, limits)
        prefs.daily_transaction_count = int(data.get('dailyTransactionCount', 0) or 0)
        prefs.weekly_transaction_amount = float(data.get('weeklyTransactionAmount', 0) or 0)
        if data.get('lastTransactionReset') is not None:
            prefs.last_transaction_reset = float(data['lastTransactionReset'])
        if data.get('lastWeeklyReset') is not None:
            prefs.last_weekly_reset = float(data['lastWeeklyReset'])
        return prefs


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(value, high))


def _number(raw: Dict, key: str, default: float) -> float:
    value = raw.get(key)
    try:
        value = float(value)
    except (TypeError, ValueError, OverflowError):
        return default
    if not math.isfinite(value):
        return default
    return value or default


def parse_flag(value, default: bool = False) -> bool:
    """Booleans from JSON or form input. "false", "0", "off" and "no" are False."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in FALSE_STRINGS:
            return False
        if text in TRUE_STRINGS:
            return True
        return default
    if isinstance(value, (int, float)):
        return value != 0
    return default


def validate_preferences(
    wallet_address: str,
    raw: Optional[Dict[str, Any]],
    limits: Optional[SecurityLimits] = None,
) -> UserPreferences:
    """Clamp and default raw (camelCase) preferences. Never raises on bad values."""
    raw = raw or {}
    limits = limits or SecurityLimits()
    thresholds = raw.get('rebalanceThresholds') or {}
    channels = raw.get('notificationChannels') or {}

    pool_settings = {}
    for pool_key, settings in (raw.get('poolSpecificSettings') or {}).items():
        if isinstance(settings, dict):
            enabled = parse_flag(settings.get('enabled'), True)
            reason = settings.get('disabledReason') if not enabled else None
            pool_settings[pool_key] = PoolSettings(enabled=enabled, disabled_reason=reason)
        else:
            pool_settings[pool_key] = PoolSettings(enabled=parse_flag(settings, True))

    out_of_range_action = thresholds.get('outOfRangeAction') or DEFAULT_OUT_OF_RANGE_ACTION
    if out_of_range_action not in OUT_OF_RANGE_ACTIONS:
        out_of_range_action = DEFAULT_OUT_OF_RANGE_ACTION

    require_confirmation_above = _clamp(
        _number(raw, 'requireConfirmationAbove', DEFAULT_REQUIRE_CONFIRMATION_ABOVE),
        0.0, limits.require_confirmation_above,
    )

    return UserPreferences(
        wallet_address=wallet_address,
        enable_global_rebalancing=parse_flag(raw.get('enableGlobalRebalancing')),
        pool_specific_settings=pool_settings,
        max_rebalance_amount=_clamp(
            _number(raw, 'maxRebalanceAmount', DEFAULT_MAX_REBALANCE_AMOUNT),
            0.0, limits.max_rebalance_amount,
        ),
        max_daily_transactions=int(_clamp(
            int(_number(raw, 'maxDailyTransactions', DEFAULT_MAX_DAILY_TRANSACTIONS)),
            0, limits.max_daily_transactions,
        )),
        rebalance_thresholds=RebalanceThresholds(
            imbalance_ratio=_clamp(_number(thresholds, 'imbalanceRatio', DEFAULT_IMBALANCE_RATIO), 0.0, 1.0),
            price_deviation=_clamp(_number(thresholds, 'priceDeviation', DEFAULT_PRICE_DEVIATION), 0.0, 1.0),
            out_of_range_action=out_of_range_action,
        ),
        notification_channels=NotificationChannels(
            in_app=parse_flag(channels.get('inApp'), True),
            email=parse_flag(channels.get('email')),
            telegram=parse_flag(channels.get('telegram')),
            email_address=channels.get('emailAddress'),
            telegram_chat_id=channels.get('telegramChatId'),
        ),
        auto_execute_below=_clamp(
            _number(raw, 'autoExecuteBelow', DEFAULT_AUTO_EXECUTE_BELOW),
            0.0, require_confirmation_above,
        ),
        require_confirmation_above=require_confirmation_above,
    )


# ==================== Persistence ====================

class PreferenceBackend(Protocol):
    """Key-value persistence with one document per wallet."""
    def save(self, wallet_address: str, preferences: Dict[str, Any]) -> None: ...
    def load(self, wallet_address: str) -> Optional[Dict[str, Any]]: ...


class InMemoryPreferenceBackend:
    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}

    def save(self, wallet_address: str, preferences: Dict[str, Any]) -> None:
        self._data[wallet_address] = copy.deepcopy(preferences)

    def load(self, wallet_address: str) -> Optional[Dict[str, Any]]:
        data = self._data.get(wallet_address)
        return copy.deepcopy(data) if data is not None else None


class DatabasePreferenceBackend:
    """Stores preference documents in the ``rebalance_preferences`` table."""

    def __init__(self, db):
        self.db = db

    def save(self, wallet_address: str, preferences: Dict[str, Any]) -> None:
        self.db.save_preferences(wallet_address, preferences)

    def load(self, wallet_address: str) -> Optional[Dict[str, Any]]:
        return self.db.load_preferences(wallet_address)


class PreferenceStore:
    """
    Threshold configuration store.

    Keeps one live UserPreferences object per wallet so counters updated by
    the security gate are seen by every holder of that object.
    """

    def __init__(
        self,
        backend: Optional[PreferenceBackend] = None,
        limits: Optional[SecurityLimits] = None,
        clock=time.time,
    ):
        self.backend = backend or InMemoryPreferenceBackend()
        self.limits = limits or SecurityLimits()
        self._clock = clock
        self._cache: Dict[str, UserPreferences] = {}
        self._lock = threading.Lock()

    def configure(self, wallet_address: str, raw_preferences: Optional[Dict[str, Any]]) -> UserPreferences:
        """Validate, clamp and persist preferences for a wallet."""
        prefs = validate_preferences(wallet_address, raw_preferences, self.limits)

        with self._lock:
            existing = self._get_locked(wallet_address)
            if existing is not None:
                # Counters survive reconfiguration
                prefs.daily_transaction_count = existing.daily_transaction_count
                prefs.weekly_transaction_amount = existing.weekly_transaction_amount
                prefs.last_transaction_reset = existing.last_transaction_reset
                prefs.last_weekly_reset = existing.last_weekly_reset
                self._copy_into(existing, prefs)
                prefs = existing
            else:
                prefs.last_transaction_reset = prefs.last_weekly_reset = self._clock()
            self._cache[wallet_address] = prefs
            self.backend.save(wallet_address, prefs.to_dict())

        logger.info(
            f"[Preferences] Configured {wallet_address[:8]}: global={prefs.enable_global_rebalancing} "
            f"max=${prefs.max_rebalance_amount:.2f} daily={prefs.max_daily_transactions}"
        )
        return prefs

    def get(self, wallet_address: str) -> Optional[UserPreferences]:
        with self._lock:
            return self._get_locked(wallet_address)

    def save(self, preferences: UserPreferences):
        """Persist the current state (counters, pool toggles) of a wallet's preferences."""
        with self._lock:
            self._cache[preferences.wallet_address] = preferences
            self.backend.save(preferences.wallet_address, preferences.to_dict())

    def set_pool_enabled(self, wallet_address: str, pool_key: str, enabled: bool,
                         reason: Optional[str] = None) -> Optional[UserPreferences]:
        prefs = self.get(wallet_address)
        if prefs is None:
            return None
        prefs.set_pool_enabled(pool_key, enabled, reason)
        self.save(prefs)
        logger.info(f"[Preferences] Pool {pool_key} {'enabled' if enabled else 'disabled'} for {wallet_address[:8]}")
        return prefs

    def _get_locked(self, wallet_address: str) -> Optional[UserPreferences]:
        prefs = self._cache.get(wallet_address)
        if prefs is None:
            data = self.backend.load(wallet_address)
            if data is None:
                return None
            data.setdefault('walletAddress', wallet_address)
            prefs = UserPreferences.from_dict(data, self.limits)
            self._cache[wallet_address] = prefs
        return prefs

    @staticmethod
    def _copy_into(target: UserPreferences, source: UserPreferences):
        for name in source.__dataclass_fields__:
            setattr(target, name, getattr(source, name))
