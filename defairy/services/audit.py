#!/usr/bin/env python3
"""
Rebalancing Audit Log for DeFairy.

Append-only record of rebalancing decisions and outcomes:
- Configuration changes
- Security gate rejections
- Executed and failed rebalances
- Pools disabled by the circuit breaker

Events are kept in memory (capped) and mirrored as JSON lines to the
``defairy.audit`` logger.
"""
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

from defairy.config import (
    AUDIT_LOG_BACKUP_COUNT,
    AUDIT_LOG_DIR,
    AUDIT_LOG_FILE,
    AUDIT_LOG_MAX_BYTES,
    AUDIT_LOG_MAX_ENTRIES,
    AUDIT_LOG_TRIM_TO,
)

audit_logger = logging.getLogger('defairy.audit')
audit_logger.setLevel(logging.INFO)
audit_logger.propagate = False  # Don't propagate to root logger


class AuditEventType(Enum):
    """Types of rebalancing audit events."""
    # Configuration
    CONFIG_UPDATED = "CONFIG_UPDATED"
    POOL_REBALANCING_ENABLED = "POOL_REBALANCING_ENABLED"
    POOL_REBALANCING_DISABLED = "POOL_REBALANCING_DISABLED"

    # Monitoring
    MONITORING_STARTED = "MONITORING_STARTED"
    MONITORING_STOPPED = "MONITORING_STOPPED"
    MONITORING_ERROR = "MONITORING_ERROR"

    # Decisions
    SECURITY_REJECTED = "SECURITY_REJECTED"
    REBALANCE_QUEUED = "REBALANCE_QUEUED"
    ALERT_SNOOZED = "ALERT_SNOOZED"
    ALERT_DISMISSED = "ALERT_DISMISSED"

    # Execution
    REBALANCE_EXECUTED = "REBALANCE_EXECUTED"
    REBALANCE_FAILED = "REBALANCE_FAILED"
    REBALANCE_ERROR = "REBALANCE_ERROR"


@dataclass
class AuditEvent:
    """A single audit trail entry."""
    event_type: AuditEventType
    wallet_address: Optional[str]
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    id: str = ''

    def __post_init__(self):
        if not self.id:
            self.id = f"{int(self.timestamp * 1000)}{uuid.uuid4().hex[:9]}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'timestamp': self.timestamp,
            'eventType': self.event_type.value,
            'walletAddress': self.wallet_address,
            'details': self.details,
        }


class AuditLog:
    """
    Capped, thread-safe audit log.

    When the log grows past ``max_entries`` it keeps only the newest
    ``trim_to`` events.
    """

    def __init__(
        self,
        max_entries: int = AUDIT_LOG_MAX_ENTRIES,
        trim_to: int = AUDIT_LOG_TRIM_TO,
        clock=time.time,
    ):
        if trim_to > max_entries:
            raise ValueError("trim_to must not exceed max_entries")
        self.max_entries = max_entries
        self.trim_to = trim_to
        self._clock = clock
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def log(
        self,
        event_type: AuditEventType,
        wallet_address: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        """Append an event and mirror it to the audit logger."""
        event = AuditEvent(
            event_type=event_type,
            wallet_address=wallet_address,
            details=details or {},
            timestamp=self._clock(),
        )

        with self._lock:
            self._events.append(event)
            if len(self._events) > self.max_entries:
                self._events = self._events[-self.trim_to:]

        audit_logger.info(json.dumps(event.to_dict(), default=str))
        return event

    def events(
        self,
        wallet_address: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEvent]:
        """Return events oldest-first, optionally filtered."""
        with self._lock:
            result = list(self._events)

        if wallet_address:
            result = [e for e in result if e.wallet_address == wallet_address]
        if event_type:
            result = [e for e in result if e.event_type == event_type]
        if limit:
            result = result[-limit:]
        return result

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


def setup_audit_file_handler(
    log_dir: str = AUDIT_LOG_DIR,
    log_file: str = AUDIT_LOG_FILE,
    max_bytes: int = AUDIT_LOG_MAX_BYTES,
    backup_count: int = AUDIT_LOG_BACKUP_COUNT,
) -> RotatingFileHandler:
    """Attach a rotating JSON-lines file handler to the audit logger."""
    path = Path(log_dir)
    path.mkdir(parents=True, exist_ok=True)

    handler = RotatingFileHandler(
        path / log_file,
        maxBytes=max_bytes,
        backupCount=backup_count
    )
    handler.setFormatter(logging.Formatter('%(message)s'))
    audit_logger.addHandler(handler)
    return handler
