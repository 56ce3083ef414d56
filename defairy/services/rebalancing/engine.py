#!/usr/bin/env python3
"""
Smart Rebalancer
Owns all rebalancing state for one process and ties the pieces together:

    position feed -> analyzer -> security gate -> queue/alerts -> executor

A background thread runs a monitoring cycle for every wallet that has
global rebalancing enabled. Execution is always user-triggered (one-click
or confirmed) and signed either by the wallet adapter the caller supplies
or, through prepare/submit, by the user's browser wallet. The security gate
runs again when an entry is claimed for execution.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from defairy.config import MONITOR_INTERVAL_SECONDS, SIGNING_SESSION_TTL_SECONDS
from defairy.services.audit import AuditEventType, AuditLog
from defairy.services.notifications import (
    OPPORTUNITY_EXPIRED_MESSAGE,
    NotificationService,
    Severity,
    format_alert,
    format_security_alert,
    format_wallet_connection,
)

from .analyzer import RebalanceAnalysis, Urgency, analyze, calculate_price_deviation
from .executor import (
    ConfirmationHandler,
    ConnectedWallet,
    ExecutionCoordinator,
    ExecutionReport,
    ReportedSignatures,
    ReportStatus,
    UnsupportedVenueError,
    WalletAdapter,
    WalletNotConnectedError,
    build_transaction_plan,
    resolve_wallet,
)
from .positions import Position, PositionFeed, PriceHistory
from .preferences import PreferenceStore, UserPreferences, validate_preferences
from .queue import QueueEntry, QueueStatus, RebalanceQueue, render_alert
from .security import (
    DISABLED_TOO_MANY_FAILURES,
    RejectionReason,
    SecurityCheck,
    SecurityConfig,
    SecurityGate,
)

logger = logging.getLogger("defairy.rebalance")


@dataclass
class PoolEvaluation:
    """What one monitoring cycle decided for one pool."""
    pool_key: str
    decision: str  # 'disabled' | 'no_action' | 'rejected' | 'queued' | 'executing'
    analysis: Optional[RebalanceAnalysis] = None
    security: Optional[SecurityCheck] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'poolKey': self.pool_key,
            'decision': self.decision,
            'analysis': self.analysis.to_dict() if self.analysis else None,
            'security': self.security.to_dict() if self.security else None,
        }


class SmartRebalancer:
    """
    Rebalancing engine instance. Every map the engine mutates lives on the
    instance, so separate instances never share state.
    """

    def __init__(
        self,
        position_feed: PositionFeed,
        price_history: Optional[PriceHistory] = None,
        wallet_adapter: Optional[WalletAdapter] = None,
        confirmations: Optional[ConfirmationHandler] = None,
        notifier=None,
        store: Optional[PreferenceStore] = None,
        security_config: Optional[SecurityConfig] = None,
        audit: Optional[AuditLog] = None,
        queue: Optional[RebalanceQueue] = None,
        db=None,
        monitor_interval: int = MONITOR_INTERVAL_SECONDS,
        signing_session_ttl: int = SIGNING_SESSION_TTL_SECONDS,
        clock=time.time,
    ):
        self.position_feed = position_feed
        self.price_history = price_history
        self.wallet_adapter = wallet_adapter
        self.confirmations = confirmations
        self.notifier = notifier or NotificationService()
        self.security_config = security_config or SecurityConfig()
        self.store = store or PreferenceStore(limits=self.security_config.limits(), clock=clock)
        self.security = SecurityGate(self.security_config, self.store, clock)
        self.audit = audit or AuditLog(clock=clock)
        self.queue = queue or RebalanceQueue(clock=clock)
        self.db = db
        self.monitor_interval = monitor_interval
        self.signing_session_ttl = signing_session_ttl
        self._clock = clock

        self.coordinator = ExecutionCoordinator(
            self.security, self.audit, self.notifier, confirmations, db=db, clock=clock,
        )

        self._monitored: Set[str] = set()
        self._monitored_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        # (wallet, pool key) -> (claimed entry, session start)
        self._signing_sessions: Dict[Tuple[str, str], Tuple[QueueEntry, float]] = {}
        self._sessions_lock = threading.Lock()

    # ==================== Configuration ====================

    def configure(self, wallet_address: str, raw_preferences: Optional[Dict[str, Any]]) -> UserPreferences:
        """Validate and store preferences; start or stop monitoring to match the global flag."""
        prefs = self.store.configure(wallet_address, raw_preferences)
        self.audit.log(AuditEventType.CONFIG_UPDATED, wallet_address, {
            'enableGlobalRebalancing': prefs.enable_global_rebalancing,
            'maxRebalanceAmount': prefs.max_rebalance_amount,
            'maxDailyTransactions': prefs.max_daily_transactions,
        })

        if prefs.enable_global_rebalancing:
            self.start_monitoring(wallet_address)
        else:
            self.stop_monitoring(wallet_address)
        return prefs

    def get_preferences(self, wallet_address: str) -> Optional[UserPreferences]:
        return self.store.get(wallet_address)

    def set_pool_enabled(self, wallet_address: str, pool_key: str, enabled: bool) -> Optional[UserPreferences]:
        """Toggle rebalancing for one pool. Re-enabling clears its failure counter."""
        prefs = self.store.set_pool_enabled(wallet_address, pool_key, enabled, reason='user')
        if prefs is None:
            return None
        if enabled:
            self.security.reset_pool(pool_key)
        event = AuditEventType.POOL_REBALANCING_ENABLED if enabled else AuditEventType.POOL_REBALANCING_DISABLED
        self.audit.log(event, wallet_address, {'poolKey': pool_key, 'reason': None if enabled else 'user'})
        return prefs

    # ==================== Monitoring ====================

    def start_monitoring(self, wallet_address: str):
        with self._monitored_lock:
            if wallet_address in self._monitored:
                return
            self._monitored.add(wallet_address)
        self.audit.log(AuditEventType.MONITORING_STARTED, wallet_address, {'interval': self.monitor_interval})
        logger.info(f"[Rebalance] Monitoring started for {wallet_address[:8]}")
        self.start()

    def stop_monitoring(self, wallet_address: str):
        with self._monitored_lock:
            if wallet_address not in self._monitored:
                return
            self._monitored.discard(wallet_address)
        self.audit.log(AuditEventType.MONITORING_STOPPED, wallet_address)
        logger.info(f"[Rebalance] Monitoring stopped for {wallet_address[:8]}")

    def resume_monitoring(self, wallet_addresses: List[str]) -> List[str]:
        """Restart monitoring for stored wallets that have global rebalancing on."""
        resumed = []
        for wallet_address in wallet_addresses:
            prefs = self.store.get(wallet_address)
            if prefs is not None and prefs.enable_global_rebalancing:
                self.start_monitoring(wallet_address)
                resumed.append(wallet_address)
        return resumed

    def monitored_wallets(self) -> List[str]:
        with self._monitored_lock:
            return sorted(self._monitored)

    def start(self):
        """Start the background monitoring loop."""
        if self.is_running():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._monitoring_loop, name='defairy-rebalancer', daemon=True)
        self._thread.start()
        logger.info(f"[Rebalance] Engine started ({self.monitor_interval}s interval)")

    def stop(self):
        """Stop the background monitoring loop."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("[Rebalance] Engine stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _monitoring_loop(self):
        while not self._stop_event.wait(self.monitor_interval):
            try:
                self.run_monitoring_cycle()
            except Exception as e:
                logger.error(f"[Rebalance] Error in monitoring loop: {e}")

    def run_monitoring_cycle(self, wallet_address: Optional[str] = None) -> Dict[str, List[PoolEvaluation]]:
        """Evaluate every monitored wallet (or just ``wallet_address``) once."""
        self.release_stale_sessions()
        self.queue.purge_expired()
        wallets = [wallet_address] if wallet_address else self.monitored_wallets()
        return {wallet: self.check_wallet(wallet) for wallet in wallets}

    def check_wallet(self, wallet_address: str) -> List[PoolEvaluation]:
        prefs = self.store.get(wallet_address)
        if prefs is None or not prefs.enable_global_rebalancing:
            return []

        try:
            positions = self.position_feed.get_positions(wallet_address)
        except Exception as e:
            logger.error(f"[Rebalance] Failed to load positions for {wallet_address[:8]}: {e}")
            self.audit.log(AuditEventType.MONITORING_ERROR, wallet_address, {'error': str(e)})
            return []

        evaluations = []
        for position in positions:
            try:
                evaluations.append(self.evaluate_position(position, prefs))
            except Exception as e:
                logger.error(f"[Rebalance] Error evaluating {getattr(position, 'pool_key', position)}: {e}")
                self.audit.log(AuditEventType.MONITORING_ERROR, wallet_address, {
                    'pool': getattr(position, 'pool_id', None),
                    'error': str(e),
                })
        return evaluations

    def evaluate_position(self, position: Position, prefs: UserPreferences) -> PoolEvaluation:
        """Analyze one position, gate it and queue an alert when warranted."""
        wallet_address = prefs.wallet_address
        if not prefs.is_pool_enabled(position.pool_key, position.pool_id):
            return PoolEvaluation(position.pool_key, 'disabled')

        deviation = calculate_price_deviation(position, self.price_history)
        analysis = analyze(position, prefs, deviation)
        if not analysis.should_rebalance:
            return PoolEvaluation(position.pool_key, 'no_action', analysis)

        check = self.security.check(position, analysis, prefs)
        if not check.approved:
            self._handle_rejection(position, prefs, check)
            return PoolEvaluation(position.pool_key, 'rejected', analysis, check)

        previous = self.queue.get(wallet_address, position.pool_key)
        entry = self.queue.enqueue(position, analysis, prefs)
        if entry.status == QueueStatus.EXECUTING:
            return PoolEvaluation(position.pool_key, 'executing', analysis, check)

        alert = render_alert(entry, self.queue.display_seconds)
        self.audit.log(AuditEventType.REBALANCE_QUEUED, wallet_address, {
            'pool': position.pool_id,
            'poolKey': position.pool_key,
            'alertType': alert.type.value,
            'urgency': analysis.urgency.value,
            'estimatedValue': analysis.estimated_value,
        })
        if previous is None:
            severity = Severity.WARNING if analysis.urgency == Urgency.HIGH else Severity.INFO
            self.notifier.notify(
                format_alert(alert.to_dict()), severity,
                wallet_address=wallet_address,
                channels=prefs.notification_channels,
                title=f"Smart Rebalancing: {position.pool_id}",
            )
        return PoolEvaluation(position.pool_key, 'queued', analysis, check)

    def _handle_rejection(self, position: Position, prefs: UserPreferences, check: SecurityCheck):
        self.audit.log(AuditEventType.SECURITY_REJECTED, prefs.wallet_address, {
            'pool': position.pool_id,
            'poolKey': position.pool_key,
            'reason': check.reason.value,
            **check.details,
        })
        if check.reason == RejectionReason.TOO_MANY_CONSECUTIVE_FAILURES:
            self.audit.log(AuditEventType.POOL_REBALANCING_DISABLED, prefs.wallet_address, {
                'poolKey': position.pool_key,
                'reason': DISABLED_TOO_MANY_FAILURES,
            })
        self.notifier.notify(
            format_security_alert(position.pool_id, check.reason.value), Severity.WARNING,
            wallet_address=prefs.wallet_address,
            channels=prefs.notification_channels,
            title='Security check failed',
        )

    def analyze_position(self, wallet_address: str, position: Position) -> Dict[str, Any]:
        """Dry run: analysis and alert type for a position, without gating or queueing."""
        prefs = self.store.get(wallet_address) or validate_preferences(wallet_address, {}, self.security_config.limits())
        deviation = calculate_price_deviation(position, self.price_history)
        analysis = analyze(position, prefs, deviation)
        return {
            'position': position.to_dict(),
            'analysis': analysis.to_dict(),
            'autoExecutable': analysis.estimated_value <= prefs.auto_execute_below,
            'poolEnabled': prefs.is_pool_enabled(position.pool_key, position.pool_id),
            'poolStatus': self.security.get_pool_status(position.pool_key),
        }

    # ==================== Alerts ====================

    def get_active_alerts(self, wallet_address: Optional[str] = None) -> List[Dict[str, Any]]:
        return [a.to_dict() for a in self.queue.active_alerts(wallet_address)]

    def snooze_alert(self, wallet_address: str, pool_ref: str, seconds: Optional[int] = None) -> bool:
        entry = self.queue.snooze(wallet_address, pool_ref, seconds)
        if entry is None:
            return False
        self.audit.log(AuditEventType.ALERT_SNOOZED, wallet_address, {
            'poolKey': entry.key,
            'snoozedUntil': entry.snoozed_until,
        })
        return True

    def dismiss_alert(self, wallet_address: str, pool_ref: str) -> bool:
        entry = self.queue.dismiss(wallet_address, pool_ref)
        if entry is None:
            return False
        self.audit.log(AuditEventType.ALERT_DISMISSED, wallet_address, {'poolKey': entry.key})
        return True

    # ==================== Execution ====================

    def execute_one_click(self, wallet_address: str, pool_ref: str) -> ExecutionReport:
        """One-click path; falls back to the confirmation dialog above the auto-execute limit."""
        return self._execute(wallet_address, pool_ref, force_confirmation=False)

    def execute_confirmed(self, wallet_address: str, pool_ref: str) -> ExecutionReport:
        """Confirmation-required path: always asks the user first."""
        return self._execute(wallet_address, pool_ref, force_confirmation=True)

    def _execute(self, wallet_address: str, pool_ref: str, force_confirmation: bool) -> ExecutionReport:
        entry = self.queue.get(wallet_address, pool_ref)
        if entry is None:
            return self._expired(wallet_address, pool_ref)

        try:
            wallet = resolve_wallet(self.wallet_adapter)
        except WalletNotConnectedError as e:
            logger.info(f"[Rebalance] {entry.key}: {e}")
            self.notifier.notify(
                format_wallet_connection(entry.position.pool_id, entry.analysis.estimated_value), Severity.INFO,
                wallet_address=wallet_address,
                channels=entry.preferences.notification_channels,
                title='Wallet connection required',
            )
            return ExecutionReport(entry.key, wallet_address, ReportStatus.WALLET_NOT_CONNECTED, message=str(e))

        if self.confirmations is None:
            raise RuntimeError("No confirmation handler configured")

        entry, rejected = self._claim_checked(wallet_address, entry.key)
        if rejected is not None:
            return rejected

        needs_confirmation = force_confirmation or self._needs_confirmation(entry)
        if needs_confirmation and not self.confirmations.confirm_rebalance(entry):
            self.queue.release(entry)
            logger.info(f"[Rebalance] User cancelled rebalancing of {entry.key}")
            return ExecutionReport(entry.key, wallet_address, ReportStatus.CANCELLED)

        return self._run(entry, wallet)

    def _claim_checked(self, wallet_address: str, pool_ref: str) -> Tuple[Optional[QueueEntry], Optional[ExecutionReport]]:
        """
        Claim the entry and run the security gate again against the wallet's
        current counters. Other executions may have used up the daily or
        weekly allowance since the entry was queued.

        Returns:
            (entry, None) when the entry may run, otherwise (None, report).
        """
        entry = self.queue.claim(wallet_address, pool_ref)
        if entry is None:
            return None, self._expired(wallet_address, pool_ref)

        prefs = self.store.get(wallet_address) or entry.preferences
        check = self.security.check(entry.position, entry.analysis, prefs)
        if check.approved:
            return entry, None

        self.queue.complete(entry)
        self._handle_rejection(entry.position, prefs, check)
        logger.warning(f"[Rebalance] {entry.key} rejected at execution: {check.reason.value}")
        return None, ExecutionReport(entry.key, wallet_address, ReportStatus.REJECTED, message=check.reason.value)

    def _needs_confirmation(self, entry: QueueEntry) -> bool:
        alert = render_alert(entry, self.queue.display_seconds)
        return (
            not alert.auto_executable
            or self.security.requires_confirmation(entry.preferences, entry.analysis.estimated_value)
        )

    def _run(self, entry: QueueEntry, wallet: ConnectedWallet,
             confirmations: Optional[ConfirmationHandler] = None) -> ExecutionReport:
        wallet_address = entry.wallet_address
        try:
            report = self.coordinator.execute(entry, wallet, confirmations)
        except Exception as e:
            self.queue.release(entry)
            logger.error(f"[Rebalance] Error executing {entry.key}: {e}")
            self.audit.log(AuditEventType.REBALANCE_ERROR, wallet_address, {
                'pool': entry.position.pool_id,
                'poolKey': entry.key,
                'error': str(e),
            })
            self.notifier.notify(
                f"Failed to execute rebalancing: {e}", Severity.ERROR,
                wallet_address=wallet_address,
                channels=entry.preferences.notification_channels,
            )
            return ExecutionReport(entry.key, wallet_address, ReportStatus.ERROR, message=str(e))

        if report.status == ReportStatus.CANCELLED:
            self.queue.release(entry)
        else:
            self.queue.complete(entry)
        return report

    def _expired(self, wallet_address: str, pool_ref: str) -> ExecutionReport:
        logger.info(f"[Rebalance] No pending rebalance for {pool_ref}")
        prefs = self.store.get(wallet_address)
        self.notifier.notify(
            OPPORTUNITY_EXPIRED_MESSAGE, Severity.WARNING,
            wallet_address=wallet_address,
            channels=prefs.notification_channels if prefs else None,
        )
        return ExecutionReport(pool_ref, wallet_address, ReportStatus.EXPIRED, message=OPPORTUNITY_EXPIRED_MESSAGE)

    # ==================== Browser wallet signing ====================

    def prepare_execution(self, wallet_address: str, pool_ref: str) -> ExecutionReport:
        """
        Claim an entry for signing in the user's own wallet and return its
        transaction plans. The entry stays claimed until the client submits
        its outcomes, cancels, or the signing session times out.
        """
        entry, rejected = self._claim_checked(wallet_address, pool_ref)
        if rejected is not None:
            return rejected

        try:
            plans = [build_transaction_plan(a, entry.position, wallet_address) for a in entry.analysis.actions]
        except UnsupportedVenueError as e:
            logger.warning(f"[Rebalance] {entry.key}: {e}")
            nothing_signed = ReportedSignatures(wallet_address, [], [])
            return self._run(entry, nothing_signed, nothing_signed)

        with self._sessions_lock:
            self._signing_sessions[(wallet_address, entry.key)] = (entry, self._clock())
        logger.info(f"[Rebalance] {entry.key} awaiting signature of {len(plans)} transaction(s)")
        return ExecutionReport(
            entry.key, wallet_address, ReportStatus.AWAITING_SIGNATURE,
            plans=plans,
            requires_confirmation=self._needs_confirmation(entry),
        )

    def submit_execution(self, wallet_address: str, pool_ref: str, outcomes: List[Dict[str, Any]]) -> ExecutionReport:
        """Record what the client wallet did with each prepared transaction."""
        entry = self._pop_session(wallet_address, pool_ref)
        if entry is None:
            return self._expired(wallet_address, pool_ref)
        signatures = ReportedSignatures(wallet_address, entry.analysis.actions, outcomes)
        return self._run(entry, signatures, signatures)

    def cancel_execution(self, wallet_address: str, pool_ref: str) -> ExecutionReport:
        """Give a prepared entry back to the queue without signing anything."""
        entry = self._pop_session(wallet_address, pool_ref)
        if entry is None:
            return self._expired(wallet_address, pool_ref)
        self.queue.release(entry)
        logger.info(f"[Rebalance] User cancelled signing of {entry.key}")
        return ExecutionReport(entry.key, wallet_address, ReportStatus.CANCELLED)

    def release_stale_sessions(self) -> List[str]:
        """Return entries whose signing session timed out to the queue."""
        cutoff = self._clock() - self.signing_session_ttl
        with self._sessions_lock:
            stale = [key for key, (_, started) in self._signing_sessions.items() if started <= cutoff]
            entries = [self._signing_sessions.pop(key)[0] for key in stale]
        for entry in entries:
            self.queue.release(entry)
            logger.info(f"[Rebalance] Signing session for {entry.key} timed out")
        return [entry.key for entry in entries]

    def _pop_session(self, wallet_address: str, pool_ref: str) -> Optional[QueueEntry]:
        key = self.queue.resolve_key(wallet_address, pool_ref)
        if key is None:
            return None
        with self._sessions_lock:
            session = self._signing_sessions.pop((wallet_address, key), None)
        return session[0] if session else None

    # ==================== Reporting ====================

    def get_audit_log(self, wallet_address: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self.audit.events(wallet_address=wallet_address, limit=limit)]

    def get_history(self, wallet_address: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        if self.db is None:
            return []
        return self.db.get_rebalance_history(wallet_address, limit)

    def get_status(self, wallet_address: Optional[str] = None) -> Dict[str, Any]:
        entries = self.queue.entries(wallet_address)
        with self._sessions_lock:
            awaiting = sum(1 for wallet, _ in self._signing_sessions if wallet_address in (None, wallet))
        return {
            'running': self.is_running(),
            'monitoredWallets': self.monitored_wallets(),
            'monitorInterval': self.monitor_interval,
            'queueSize': len(entries),
            'awaitingSignature': awaiting,
            'queue': [
                {'poolKey': e.key, 'status': e.status.value, 'enqueuedAt': e.enqueued_at,
                 'snoozedUntil': e.snoozed_until, 'tracking': self.security.get_pool_status(e.key)}
                for e in entries
            ],
            'security': self.security_config.to_dict(),
            'auditEvents': len(self.audit),
        }
