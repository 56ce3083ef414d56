#!/usr/bin/env python3
"""
Rebalance Execution Coordinator
Builds venue-specific transaction plans and drives each action through
preview, confirmation and wallet signing.

Keys never live here: every signature comes from the injected wallet.
Tracking state is only mutated after a confirmed signature, so a failed or
cancelled action leaves counters untouched (except the failure count).
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from defairy.config import ESTIMATED_TX_FEE_SOL, ORCA_WHIRLPOOL_PROGRAM, RAYDIUM_AMM_PROGRAM
from defairy.services.audit import AuditEventType, AuditLog
from defairy.services.notifications import (
    Severity,
    format_failure,
    format_success,
    format_summary,
)

from .analyzer import ActionType, RebalanceAction
from .positions import Position, Venue
from .preferences import parse_flag
from .queue import QueueEntry
from .security import SecurityGate

logger = logging.getLogger("defairy.executor")

ORCA_STEPS = {
    ActionType.CLOSE_AND_REOPEN_POSITION: [
        'Close existing position',
        'Collect fees and tokens',
        'Create new position with optimal range',
        'Add liquidity to new position',
    ],
    ActionType.SWAP_REBALANCE: [
        'Swap tokens to rebalance ratio',
        'Adjust liquidity in existing position',
    ],
}
DEFAULT_STEPS = ['Execute rebalancing']


class UnsupportedVenueError(Exception):
    """The position's venue has no transaction plan builder."""

    def __init__(self, venue: str):
        self.venue = venue
        super().__init__(f"Rebalancing not supported for {venue}")


class WalletNotConnectedError(Exception):
    """No wallet is connected to sign rebalancing transactions."""


class RemoteSigningError(Exception):
    """The client-side wallet reported an error for an action."""


class ExecutionState(Enum):
    PENDING = 'pending'
    PREVIEW_SHOWN = 'preview_shown'
    USER_CONFIRMED = 'user_confirmed'
    SIGNATURE_REQUESTED = 'signature_requested'
    SUCCESS = 'success'
    FAILURE = 'failure'
    USER_CANCELLED = 'user_cancelled'


class ReportStatus(Enum):
    COMPLETED = 'completed'
    PARTIAL = 'partial'
    FAILED = 'failed'
    CANCELLED = 'cancelled'
    EXPIRED = 'expired'
    REJECTED = 'rejected'
    AWAITING_SIGNATURE = 'awaiting_signature'
    WALLET_NOT_CONNECTED = 'wallet_not_connected'
    ERROR = 'error'


# ==================== Collaborators ====================

class ConnectedWallet(Protocol):
    public_key: str

    def sign_transaction(self, plan: 'TransactionPlan') -> str: ...


class WalletAdapter(Protocol):
    def is_connected(self) -> bool: ...
    def get_connected_wallet(self) -> Optional[ConnectedWallet]: ...


class ConfirmationHandler(Protocol):
    """User-facing confirmation dialogs."""
    def confirm_rebalance(self, entry: QueueEntry) -> bool: ...
    def preview_transaction(self, plan: 'TransactionPlan', action: RebalanceAction) -> bool: ...


def resolve_wallet(adapter: Optional[WalletAdapter]) -> ConnectedWallet:
    """
    Raises:
        WalletNotConnectedError: if no adapter is configured or no wallet is connected.
    """
    if adapter is None or not adapter.is_connected():
        raise WalletNotConnectedError("Wallet connection required")
    wallet = adapter.get_connected_wallet()
    if wallet is None:
        raise WalletNotConnectedError("No wallet available for transaction")
    return wallet


# ==================== Transaction plans ====================

@dataclass
class TransactionPlan:
    type: ActionType
    pool: str
    location: str
    action: RebalanceAction
    user_public_key: str
    estimated_fee: float = ESTIMATED_TX_FEE_SOL
    steps: List[str] = field(default_factory=list)
    dex_specific: Dict[str, Any] = field(default_factory=dict)
    instructions: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'pool': self.pool,
            'location': self.location,
            'action': self.action.to_dict(),
            'userPublicKey': self.user_public_key,
            'estimatedFee': self.estimated_fee,
            'steps': list(self.steps),
            'dexSpecific': dict(self.dex_specific),
            'instructions': list(self.instructions),
        }


def build_orca_plan(plan: TransactionPlan, position: Position) -> TransactionPlan:
    plan.dex_specific = {
        'sdk': 'orca',
        'poolAddress': position.pool_address,
        'positionAddress': position.position_address,
        'whirlpoolProgram': ORCA_WHIRLPOOL_PROGRAM,
    }
    plan.steps = list(ORCA_STEPS.get(plan.type, DEFAULT_STEPS))
    return plan


def build_raydium_plan(plan: TransactionPlan, position: Position) -> TransactionPlan:
    plan.dex_specific = {
        'sdk': 'raydium',
        'poolAddress': position.pool_address,
        'ammProgram': RAYDIUM_AMM_PROGRAM,
    }
    plan.steps = list(DEFAULT_STEPS)
    return plan


PLAN_BUILDERS = {
    Venue.ORCA: build_orca_plan,
    Venue.RAYDIUM: build_raydium_plan,
}


def build_transaction_plan(action: RebalanceAction, position: Position, user_public_key: str) -> TransactionPlan:
    """
    Raises:
        UnsupportedVenueError: for venues other than Orca and Raydium.
    """
    builder = PLAN_BUILDERS.get(position.venue)
    if builder is None:
        raise UnsupportedVenueError(position.venue.value)

    plan = TransactionPlan(
        type=action.type,
        pool=position.pool_id,
        location=position.venue.value,
        action=action,
        user_public_key=user_public_key,
    )
    return builder(plan, position)


# ==================== Client-side signing ====================

class ReportedSignatures:
    """
    Wallet and preview handler for transactions the user signed in the
    browser. The client receives the plans, signs them with its own wallet
    and reports one outcome per action, in action order:

        {"signature": "..."}   signed and sent
        {"error": "..."}       wallet or chain error
        {"cancelled": true}    user declined the preview

    An action with no reported outcome counts as cancelled.
    """

    def __init__(self, public_key: str, actions: List[RebalanceAction], outcomes: List[Dict[str, Any]]):
        self.public_key = public_key
        self._outcomes = {id(action): outcome for action, outcome in zip(actions, outcomes)}

    def _outcome(self, action: RebalanceAction) -> Optional[Dict[str, Any]]:
        return self._outcomes.get(id(action))

    def confirm_rebalance(self, entry: QueueEntry) -> bool:
        return True

    def preview_transaction(self, plan: TransactionPlan, action: RebalanceAction) -> bool:
        outcome = self._outcome(action)
        return isinstance(outcome, dict) and not parse_flag(outcome.get('cancelled'))

    def sign_transaction(self, plan: TransactionPlan) -> str:
        outcome = self._outcome(plan.action) or {}
        if outcome.get('error'):
            raise RemoteSigningError(str(outcome['error']))
        signature = outcome.get('signature')
        if not isinstance(signature, str) or not signature:
            raise RemoteSigningError("No signature reported for this action")
        return signature


# ==================== Results ====================

@dataclass
class RebalanceResult:
    signature: str
    action: RebalanceAction
    timestamp: float
    pool: str
    pool_key: str
    venue: str
    estimated_value: float
    wallet_address: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'signature': self.signature,
            'action': self.action.to_dict(),
            'timestamp': self.timestamp,
            'pool': self.pool,
            'poolKey': self.pool_key,
            'venue': self.venue,
            'estimatedValue': self.estimated_value,
            'walletAddress': self.wallet_address,
        }


@dataclass
class ActionOutcome:
    action: RebalanceAction
    state: ExecutionState = ExecutionState.PENDING
    result: Optional[RebalanceResult] = None
    error: Optional[str] = None
    plan: Optional[TransactionPlan] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action.to_dict(),
            'state': self.state.value,
            'result': self.result.to_dict() if self.result else None,
            'error': self.error,
            'plan': self.plan.to_dict() if self.plan else None,
        }


@dataclass
class ExecutionReport:
    pool_key: str
    wallet_address: str
    status: ReportStatus
    outcomes: List[ActionOutcome] = field(default_factory=list)
    message: Optional[str] = None
    plans: List[TransactionPlan] = field(default_factory=list)
    requires_confirmation: Optional[bool] = None

    @property
    def results(self) -> List[RebalanceResult]:
        return [o.result for o in self.outcomes if o.result is not None]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'poolKey': self.pool_key,
            'walletAddress': self.wallet_address,
            'status': self.status.value,
            'outcomes': [o.to_dict() for o in self.outcomes],
            'message': self.message,
            'plans': [p.to_dict() for p in self.plans],
            'requiresConfirmation': self.requires_confirmation,
        }


# ==================== Coordinator ====================

class ExecutionCoordinator:
    """Runs every action of a claimed queue entry, one at a time."""

    def __init__(
        self,
        security: SecurityGate,
        audit: AuditLog,
        notifier,
        confirmations: ConfirmationHandler,
        db=None,
        clock=time.time,
    ):
        self.security = security
        self.audit = audit
        self.notifier = notifier
        self.confirmations = confirmations
        self.db = db
        self._clock = clock

    def execute(
        self,
        entry: QueueEntry,
        wallet: ConnectedWallet,
        confirmations: Optional[ConfirmationHandler] = None,
    ) -> ExecutionReport:
        """Execute all actions of ``entry``. A failed action never stops the ones after it.

        ``confirmations`` overrides the coordinator's handler for this run.
        """
        confirmations = confirmations or self.confirmations
        position = entry.position
        logger.info(
            f"[Executor] Executing {len(entry.analysis.actions)} action(s) on {entry.key} "
            f"for {entry.wallet_address[:8]}"
        )

        outcomes = [
            self._execute_action(entry, action, wallet, confirmations)
            for action in entry.analysis.actions
        ]
        results = [o.result for o in outcomes if o.result is not None]

        if len(results) > 1:
            self._notify(entry, format_summary(position.pool_id, [r.to_dict() for r in results]),
                         Severity.SUCCESS, 'Rebalance summary')

        succeeded = len(results)
        failed = sum(1 for o in outcomes if o.state == ExecutionState.FAILURE)
        if outcomes and succeeded == len(outcomes):
            status = ReportStatus.COMPLETED
        elif succeeded:
            status = ReportStatus.PARTIAL
        elif failed:
            status = ReportStatus.FAILED
        else:
            status = ReportStatus.CANCELLED

        logger.info(f"[Executor] {entry.key} finished: {status.value} ({succeeded}/{len(outcomes)} succeeded)")
        return ExecutionReport(
            pool_key=entry.key,
            wallet_address=entry.wallet_address,
            status=status,
            outcomes=outcomes,
        )

    def _execute_action(self, entry: QueueEntry, action: RebalanceAction, wallet: ConnectedWallet,
                        confirmations: ConfirmationHandler) -> ActionOutcome:
        outcome = ActionOutcome(action=action)
        try:
            outcome.plan = build_transaction_plan(action, entry.position, wallet.public_key)

            outcome.state = ExecutionState.PREVIEW_SHOWN
            if not confirmations.preview_transaction(outcome.plan, action):
                outcome.state = ExecutionState.USER_CANCELLED
                logger.info(f"[Executor] User cancelled {action.type.value} on {entry.key}")
                return outcome
            outcome.state = ExecutionState.USER_CONFIRMED

            outcome.state = ExecutionState.SIGNATURE_REQUESTED
            signature = wallet.sign_transaction(outcome.plan)
            if not signature:
                raise RuntimeError("Wallet returned no signature")
        except Exception as e:
            outcome.state = ExecutionState.FAILURE
            outcome.error = str(e)
            self._handle_failure(entry, action, outcome.error)
            return outcome

        outcome.state = ExecutionState.SUCCESS
        outcome.result = self._handle_success(entry, action, signature)
        return outcome

    def _handle_success(self, entry: QueueEntry, action: RebalanceAction, signature: str) -> RebalanceResult:
        position = entry.position
        result = RebalanceResult(
            signature=signature,
            action=action,
            timestamp=self._clock(),
            pool=position.pool_id,
            pool_key=entry.key,
            venue=position.venue.value,
            estimated_value=action.estimated_value,
            wallet_address=entry.wallet_address,
        )
        logger.info(f"[Executor] ✅ Rebalance executed on {entry.key}: {signature}")

        self.security.record_success(entry.key, entry.preferences, action.estimated_value)
        self.audit.log(AuditEventType.REBALANCE_EXECUTED, entry.wallet_address, {
            'signature': signature,
            'pool': position.pool_id,
            'poolKey': entry.key,
            'action': action.type.value,
            'value': action.estimated_value,
        })

        if self.db is not None:
            try:
                self.db.record_rebalance(result.to_dict())
            except Exception as e:
                logger.error(f"[Executor] Failed to record rebalance history for {entry.key}: {e}")

        self._notify(entry, format_success(
            position.pool_id, position.venue.value, signature,
            action.type.value, action.estimated_value, result.timestamp,
        ), Severity.SUCCESS, 'Rebalance executed')
        return result

    def _handle_failure(self, entry: QueueEntry, action: RebalanceAction, error: str):
        position = entry.position
        logger.error(f"[Executor] ❌ {action.type.value} on {entry.key} failed: {error}")

        disabled = self.security.record_failure(entry.key, entry.preferences)
        failures = self.security.get_pool_status(entry.key)['consecutiveFailures']
        self.audit.log(AuditEventType.REBALANCE_FAILED, entry.wallet_address, {
            'pool': position.pool_id,
            'poolKey': entry.key,
            'action': action.type.value,
            'error': error,
            'failureCount': failures,
        })
        self._notify(entry, format_failure(position.pool_id, position.venue.value, action.type.value, error),
                     Severity.ERROR, 'Rebalance failed')

        if disabled:
            self.audit.log(AuditEventType.POOL_REBALANCING_DISABLED, entry.wallet_address, {
                'poolKey': entry.key,
                'reason': 'too_many_failures',
            })

    def _notify(self, entry: QueueEntry, message: str, severity: Severity, title: str):
        self.notifier.notify(
            message, severity,
            wallet_address=entry.wallet_address,
            channels=entry.preferences.notification_channels,
            title=title,
        )
