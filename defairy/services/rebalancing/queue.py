#!/usr/bin/env python3
"""
Rebalance Queue
Pending approved rebalances keyed by pool + venue, and the alert payloads
rendered from them.

At most one executor may hold an entry: ``claim`` flips the entry to
EXECUTING under the queue lock, and a second claim for the same pool fails
until the first one completes or releases it.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from defairy.config import ALERT_DISPLAY_SECONDS, QUEUE_ENTRY_TTL_SECONDS, SNOOZE_SECONDS

from .analyzer import RebalanceAnalysis, Urgency
from .positions import Position
from .preferences import UserPreferences

logger = logging.getLogger("defairy.queue")


class QueueStatus(Enum):
    PENDING = 'pending'
    EXECUTING = 'executing'
    DONE = 'done'
    EXPIRED = 'expired'


class AlertType(Enum):
    ONE_CLICK_REBALANCE = 'one_click_rebalance'
    REBALANCE_NEEDED = 'rebalance_needed'


@dataclass
class QueueEntry:
    position: Position
    analysis: RebalanceAnalysis
    preferences: UserPreferences
    enqueued_at: float
    status: QueueStatus = QueueStatus.PENDING
    snoozed_until: Optional[float] = None

    @property
    def key(self) -> str:
        return self.position.pool_key

    @property
    def wallet_address(self) -> str:
        return self.preferences.wallet_address

    def is_snoozed(self, now: float) -> bool:
        return self.snoozed_until is not None and now < self.snoozed_until

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'walletAddress': self.wallet_address,
            'position': self.position.to_dict(),
            'analysis': self.analysis.to_dict(),
            'enqueuedAt': self.enqueued_at,
            'status': self.status.value,
            'snoozedUntil': self.snoozed_until,
        }


@dataclass
class RebalanceAlert:
    """Structured alert any front end can render."""
    type: AlertType
    pool: str
    location: str
    pool_key: str
    urgency: Urgency
    reasons: List[str]
    estimated_value: float
    actions: List[Dict[str, Any]]
    timestamp: float
    auto_executable: bool
    out_of_range_action: str = 'alert'
    display_until: Optional[float] = None
    snooze_seconds: int = SNOOZE_SECONDS
    wallet_address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'pool': self.pool,
            'location': self.location,
            'poolKey': self.pool_key,
            'urgency': self.urgency.value,
            'reasons': list(self.reasons),
            'estimatedValue': self.estimated_value,
            'actions': self.actions,
            'timestamp': self.timestamp,
            'autoExecutable': self.auto_executable,
            'requiresConfirmation': not self.auto_executable,
            'outOfRangeAction': self.out_of_range_action,
            'displayUntil': self.display_until,
            'snoozeSeconds': self.snooze_seconds,
            'walletAddress': self.wallet_address,
        }


def render_alert(entry: QueueEntry, display_seconds: int = ALERT_DISPLAY_SECONDS) -> RebalanceAlert:
    """One-click alert when the value is within the auto-execute limit, else confirm-required."""
    analysis = entry.analysis
    auto_executable = analysis.estimated_value <= entry.preferences.auto_execute_below
    display_until = None
    if analysis.urgency != Urgency.HIGH:
        display_until = entry.enqueued_at + display_seconds

    return RebalanceAlert(
        type=AlertType.ONE_CLICK_REBALANCE if auto_executable else AlertType.REBALANCE_NEEDED,
        pool=entry.position.pool_id,
        location=entry.position.venue.value,
        pool_key=entry.key,
        urgency=analysis.urgency,
        reasons=list(analysis.reasons),
        estimated_value=analysis.estimated_value,
        actions=[a.to_dict() for a in analysis.actions],
        timestamp=entry.enqueued_at,
        auto_executable=auto_executable,
        out_of_range_action=entry.preferences.rebalance_thresholds.out_of_range_action,
        display_until=display_until,
        wallet_address=entry.wallet_address,
    )


class RebalanceQueue:
    """Per-wallet pending rebalances with TTL, snooze and single-holder claims."""

    def __init__(
        self,
        ttl_seconds: int = QUEUE_ENTRY_TTL_SECONDS,
        display_seconds: int = ALERT_DISPLAY_SECONDS,
        snooze_seconds: int = SNOOZE_SECONDS,
        clock=time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.display_seconds = display_seconds
        self.snooze_seconds = snooze_seconds
        self._clock = clock
        self._entries: Dict[str, Dict[str, QueueEntry]] = {}
        self._lock = threading.Lock()

    def enqueue(self, position: Position, analysis: RebalanceAnalysis, preferences: UserPreferences) -> QueueEntry:
        """Insert or refresh the entry for this pool. An executing entry is left alone."""
        now = self._clock()
        with self._lock:
            wallet_entries = self._entries.setdefault(preferences.wallet_address, {})
            existing = wallet_entries.get(position.pool_key)
            if existing is not None and existing.status == QueueStatus.EXECUTING:
                logger.debug(f"[Queue] {position.pool_key} is executing, not replacing")
                return existing

            entry = QueueEntry(position=position, analysis=analysis, preferences=preferences, enqueued_at=now)
            if existing is not None:
                entry.snoozed_until = existing.snoozed_until
            wallet_entries[entry.key] = entry

        logger.info(
            f"[Queue] Queued {entry.key} for {preferences.wallet_address[:8]} "
            f"(${analysis.estimated_value:.2f}, {analysis.urgency.value})"
        )
        return entry

    def get(self, wallet_address: str, pool_ref: str) -> Optional[QueueEntry]:
        with self._lock:
            key = self._resolve_locked(wallet_address, pool_ref)
            return self._entries[wallet_address][key] if key else None

    def resolve_key(self, wallet_address: str, pool_ref: str) -> Optional[str]:
        """Match a full pool key, or a pool id followed by its venue."""
        with self._lock:
            return self._resolve_locked(wallet_address, pool_ref)

    def claim(self, wallet_address: str, pool_ref: str) -> Optional[QueueEntry]:
        """
        Hand the entry to one executor.

        Returns None when there is no pending, unexpired entry for the pool
        (missing, expired, or already held by another executor).
        """
        now = self._clock()
        with self._lock:
            key = self._resolve_locked(wallet_address, pool_ref)
            if key is None:
                return None
            entry = self._entries[wallet_address][key]
            if entry.status != QueueStatus.PENDING:
                logger.warning(f"[Queue] {key} already {entry.status.value}")
                return None
            if self._is_expired(entry, now):
                entry.status = QueueStatus.EXPIRED
                del self._entries[wallet_address][key]
                logger.info(f"[Queue] {key} expired before execution")
                return None
            entry.status = QueueStatus.EXECUTING
            return entry

    def release(self, entry: QueueEntry):
        """Return a claimed entry to PENDING (e.g. the user cancelled)."""
        with self._lock:
            if entry.status == QueueStatus.EXECUTING:
                entry.status = QueueStatus.PENDING

    def complete(self, entry: QueueEntry):
        """Remove a claimed entry once execution finished."""
        with self._lock:
            entry.status = QueueStatus.DONE
            wallet_entries = self._entries.get(entry.wallet_address, {})
            if wallet_entries.get(entry.key) is entry:
                del wallet_entries[entry.key]

    def snooze(self, wallet_address: str, pool_ref: str, seconds: Optional[int] = None) -> Optional[QueueEntry]:
        """Hide the alert for a while without dropping the queued entry."""
        seconds = self.snooze_seconds if seconds is None else seconds
        with self._lock:
            key = self._resolve_locked(wallet_address, pool_ref)
            if key is None:
                return None
            entry = self._entries[wallet_address][key]
            entry.snoozed_until = self._clock() + seconds
        logger.info(f"[Queue] {key} snoozed for {seconds}s")
        return entry

    def dismiss(self, wallet_address: str, pool_ref: str) -> Optional[QueueEntry]:
        """Drop a pending entry and its alert."""
        with self._lock:
            key = self._resolve_locked(wallet_address, pool_ref)
            if key is None:
                return None
            entry = self._entries[wallet_address][key]
            if entry.status == QueueStatus.EXECUTING:
                return None
            del self._entries[wallet_address][key]
        logger.info(f"[Queue] {key} dismissed")
        return entry

    def purge_expired(self) -> List[QueueEntry]:
        """Remove pending non-high entries older than the TTL and return them."""
        now = self._clock()
        expired = []
        with self._lock:
            for wallet_entries in self._entries.values():
                for key, entry in list(wallet_entries.items()):
                    if entry.status == QueueStatus.PENDING and self._is_expired(entry, now):
                        entry.status = QueueStatus.EXPIRED
                        expired.append(entry)
                        del wallet_entries[key]
        if expired:
            logger.info(f"[Queue] Purged {len(expired)} expired entries")
        return expired

    def active_alerts(self, wallet_address: Optional[str] = None) -> List[RebalanceAlert]:
        """
        Alerts currently on display: pending, not snoozed, and either high
        urgency or still inside the display window.
        """
        self.purge_expired()
        now = self._clock()
        with self._lock:
            entries = self._entries_locked(wallet_address)

        alerts = []
        for entry in entries:
            if entry.status != QueueStatus.PENDING or entry.is_snoozed(now):
                continue
            alert = render_alert(entry, self.display_seconds)
            if alert.display_until is not None and now >= alert.display_until:
                continue
            alerts.append(alert)
        return alerts

    def entries(self, wallet_address: Optional[str] = None) -> List[QueueEntry]:
        with self._lock:
            return self._entries_locked(wallet_address)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(e) for e in self._entries.values())

    def _entries_locked(self, wallet_address: Optional[str]) -> List[QueueEntry]:
        if wallet_address is not None:
            return list(self._entries.get(wallet_address, {}).values())
        return [e for wallet_entries in self._entries.values() for e in wallet_entries.values()]

    def _resolve_locked(self, wallet_address: str, pool_ref: str) -> Optional[str]:
        wallet_entries = self._entries.get(wallet_address, {})
        if pool_ref in wallet_entries:
            return pool_ref
        if not pool_ref:
            return None
        prefix = f"{pool_ref}-"
        for key in wallet_entries:
            if key.startswith(prefix):
                return key
        return None

    def _is_expired(self, entry: QueueEntry, now: float) -> bool:
        # High urgency entries stay until acted on or dismissed
        if entry.analysis.urgency == Urgency.HIGH:
            return False
        return now - entry.enqueued_at >= self.ttl_seconds
