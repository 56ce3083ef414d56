#!/usr/bin/env python3
"""
Smart Rebalancing
Threshold preferences, position analysis, security gate, alert queue and
execution coordination for LP positions on Orca and Raydium.
"""

from .positions import (
    Venue,
    TokenBalance,
    Position,
    PositionFeed,
    PriceHistory,
    HttpPositionFeed,
)
from .preferences import (
    SecurityLimits,
    RebalanceThresholds,
    NotificationChannels,
    PoolSettings,
    UserPreferences,
    validate_preferences,
    parse_flag,
    InMemoryPreferenceBackend,
    DatabasePreferenceBackend,
    PreferenceStore,
)
from .analyzer import (
    ActionType,
    Urgency,
    PriceRange,
    SwapPlan,
    RebalanceAction,
    RebalanceAnalysis,
    analyze,
    calculate_price_deviation,
)
from .security import (
    RejectionReason,
    SecurityConfig,
    SecurityCheck,
    SecurityGate,
)
from .queue import (
    QueueStatus,
    AlertType,
    QueueEntry,
    RebalanceAlert,
    RebalanceQueue,
    render_alert,
)
from .executor import (
    ExecutionState,
    ReportStatus,
    UnsupportedVenueError,
    WalletNotConnectedError,
    RemoteSigningError,
    ReportedSignatures,
    TransactionPlan,
    RebalanceResult,
    ActionOutcome,
    ExecutionReport,
    ExecutionCoordinator,
    build_transaction_plan,
)
from .engine import SmartRebalancer, PoolEvaluation

__all__ = [
    # Positions
    'Venue',
    'TokenBalance',
    'Position',
    'PositionFeed',
    'PriceHistory',
    'HttpPositionFeed',
    # Preferences
    'SecurityLimits',
    'RebalanceThresholds',
    'NotificationChannels',
    'PoolSettings',
    'UserPreferences',
    'validate_preferences',
    'parse_flag',
    'InMemoryPreferenceBackend',
    'DatabasePreferenceBackend',
    'PreferenceStore',
    # Analyzer
    'ActionType',
    'Urgency',
    'PriceRange',
    'SwapPlan',
    'RebalanceAction',
    'RebalanceAnalysis',
    'analyze',
    'calculate_price_deviation',
    # Security
    'RejectionReason',
    'SecurityConfig',
    'SecurityCheck',
    'SecurityGate',
    # Queue
    'QueueStatus',
    'AlertType',
    'QueueEntry',
    'RebalanceAlert',
    'RebalanceQueue',
    'render_alert',
    # Execution
    'ExecutionState',
    'ReportStatus',
    'UnsupportedVenueError',
    'WalletNotConnectedError',
    'RemoteSigningError',
    'ReportedSignatures',
    'TransactionPlan',
    'RebalanceResult',
    'ActionOutcome',
    'ExecutionReport',
    'ExecutionCoordinator',
    'build_transaction_plan',
    # Engine
    'SmartRebalancer',
    'PoolEvaluation',
]
