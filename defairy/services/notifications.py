#!/usr/bin/env python3
"""Rebalancing notifications for DeFairy: in-app inbox, Discord, Telegram and e-mail."""
import logging
import threading
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

from defairy.config import (
    ALERT_EMAIL_FROM,
    DISCORD_WEBHOOK_URL,
    SENDGRID_API_KEY,
    SENDGRID_API_URL,
    TELEGRAM_API_BASE,
    TELEGRAM_BOT_TOKEN,
)

logger = logging.getLogger("defairy.notifications")

OPPORTUNITY_EXPIRED_MESSAGE = 'Rebalancing opportunity expired'


class Severity(Enum):
    INFO = 'info'
    SUCCESS = 'success'
    WARNING = 'warning'
    ERROR = 'error'


SEVERITY_COLORS = {
    Severity.INFO: 0x00FFFF,
    Severity.SUCCESS: 0x00FF00,
    Severity.WARNING: 0xFF9800,
    Severity.ERROR: 0xF44336,
}


def _humanize(value: str) -> str:
    return value.replace('_', ' ')


def _timestamp(ts: Optional[float] = None) -> str:
    return datetime.fromtimestamp(ts if ts is not None else time.time(), tz=timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')


# ==================== Message formats ====================

def format_success(pool: str, location: str, signature: str, action_type: str,
                   value_usd: float, timestamp: float) -> str:
    return (
        "🧚‍♀️ **Smart Rebalance Success!**\n\n"
        f"Your {pool} position has been rebalanced:\n\n"
        f"💫 **Transaction**: {signature}\n"
        f"🎯 **Action**: {_humanize(action_type)}\n"
        f"💰 **Value**: ${value_usd:,.2f}\n"
        f"📍 **Location**: {location}\n"
        f"🕐 **Time**: {_timestamp(timestamp)}\n\n"
        "Your position is now optimally balanced! ✨"
    )


def format_failure(pool: str, location: str, action_type: str, error: str) -> str:
    return (
        "🚨 **Smart Rebalance Error**\n\n"
        "An error occurred during rebalancing:\n\n"
        f"🏊 **Pool**: {pool} ({location})\n"
        f"🎯 **Action**: {_humanize(action_type)}\n"
        f"❌ **Error**: {error}\n"
        f"🕐 **Time**: {_timestamp()}\n\n"
        "Your positions are safe, but manual review may be needed."
    )


def format_security_alert(pool: str, reason: str) -> str:
    return (
        "⚠️ **Security Check Failed**\n\n"
        "Smart rebalancing was blocked for security reasons:\n\n"
        f"🏊 **Pool**: {pool}\n"
        f"🛡️ **Reason**: {_humanize(reason)}\n"
        f"🕐 **Time**: {_timestamp()}\n\n"
        "Please review your rebalancing settings or try again later."
    )


def format_wallet_connection(pool: str, value_usd: float) -> str:
    return (
        "🔗 **Wallet Connection Required**\n\n"
        "Smart rebalancing is ready but needs wallet connection:\n\n"
        f"🏊 **Pool**: {pool}\n"
        f"💰 **Estimated Value**: ${value_usd:,.2f}\n\n"
        "Please connect your wallet to proceed with rebalancing."
    )


def format_summary(pool: str, results: List[Dict[str, Any]]) -> str:
    total = sum(r.get('estimatedValue', 0) for r in results)
    lines = [f"• {_humanize(r['action']['type'])}: {r['signature']}" for r in results]
    return (
        "🧚‍♀️ **Rebalance Summary**\n\n"
        f"{len(results)} actions executed on {pool}:\n"
        + "\n".join(lines)
        + f"\n\n💰 **Total Value**: ${total:,.2f}"
    )


def format_alert(alert: Dict[str, Any]) -> str:
    """Text form of a new rebalance alert for external channels."""
    path = 'One-click rebalance available' if alert.get('autoExecutable') else 'Confirmation required'
    return (
        f"🧚‍♀️ **Smart Rebalancing: {alert['pool']}** [{alert['urgency'].upper()}]\n\n"
        f"Reasons: {', '.join(alert.get('reasons', []))}\n"
        f"Estimated Value: ${alert.get('estimatedValue', 0):,.2f}\n"
        f"Location: {alert.get('location')}\n"
        f"Actions: {len(alert.get('actions', []))} rebalancing action(s)\n\n"
        f"{path}."
    )


# ==================== Delivery ====================

class NotificationService:
    """
    Fire-and-forget notification sink.

    Every message lands in the in-app inbox (unless the wallet turned it
    off); Discord receives everything when a webhook is configured; Telegram
    and e-mail follow the wallet's channel preferences.
    """

    def __init__(
        self,
        discord_webhook_url: str = DISCORD_WEBHOOK_URL,
        telegram_bot_token: str = TELEGRAM_BOT_TOKEN,
        sendgrid_api_key: str = SENDGRID_API_KEY,
        email_from: str = ALERT_EMAIL_FROM,
        session: Optional[requests.Session] = None,
        inbox_size: int = 200,
        clock=time.time,
    ):
        self.discord_webhook_url = discord_webhook_url
        self.telegram_bot_token = telegram_bot_token
        self.sendgrid_api_key = sendgrid_api_key
        self.email_from = email_from
        self._session = session or requests.Session()
        self._clock = clock
        self._inbox = deque(maxlen=inbox_size)
        self._lock = threading.Lock()

    def notify(
        self,
        message: str,
        severity: Severity = Severity.INFO,
        wallet_address: Optional[str] = None,
        channels=None,
        title: Optional[str] = None,
    ):
        """Deliver ``message``. ``channels`` is the wallet's NotificationChannels, if known."""
        if channels is None or channels.in_app:
            self._push_inbox(message, severity, wallet_address, title)

        self._send_discord(title or 'DeFairy Rebalancer', message, severity)

        if channels is not None:
            if channels.telegram and channels.telegram_chat_id:
                self._send_telegram(channels.telegram_chat_id, message)
            if channels.email and channels.email_address:
                self._send_email(channels.email_address, title or 'DeFairy rebalancing update', message)

    def inbox(self, wallet_address: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """Newest-first in-app messages."""
        with self._lock:
            items = list(self._inbox)
        if wallet_address:
            items = [i for i in items if i['walletAddress'] in (wallet_address, None)]
        return list(reversed(items))[:limit]

    def _push_inbox(self, message: str, severity: Severity, wallet_address: Optional[str], title: Optional[str]):
        with self._lock:
            self._inbox.append({
                'id': uuid.uuid4().hex[:12],
                'timestamp': self._clock(),
                'severity': severity.value,
                'title': title,
                'message': message,
                'walletAddress': wallet_address,
            })

    def _send_discord(self, title: str, message: str, severity: Severity):
        if not self.discord_webhook_url:
            return
        payload = {
            "username": "DeFairy Rebalancer",
            "embeds": [{
                "title": title,
                "description": message[:4000],
                "color": SEVERITY_COLORS[severity],
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }],
        }
        try:
            self._session.post(self.discord_webhook_url, json=payload, timeout=10)
        except requests.RequestException as e:
            logger.warning(f"[Notify] Discord delivery failed: {e}")

    def _send_telegram(self, chat_id: str, message: str):
        if not self.telegram_bot_token:
            logger.debug("[Notify] Telegram requested but no bot token configured")
            return
        url = f"{TELEGRAM_API_BASE}/bot{self.telegram_bot_token}/sendMessage"
        try:
            self._session.post(url, json={'chat_id': chat_id, 'text': message}, timeout=10)
        except requests.RequestException as e:
            logger.warning(f"[Notify] Telegram delivery failed: {e}")

    def _send_email(self, to_address: str, subject: str, message: str):
        if not self.sendgrid_api_key:
            logger.debug("[Notify] E-mail requested but no SendGrid key configured")
            return
        payload = {
            'personalizations': [{'to': [{'email': to_address}]}],
            'from': {'email': self.email_from},
            'subject': subject,
            'content': [{'type': 'text/plain', 'value': message}],
        }
        headers = {'Authorization': f'Bearer {self.sendgrid_api_key}'}
        try:
            self._session.post(SENDGRID_API_URL, json=payload, headers=headers, timeout=10)
        except requests.RequestException as e:
            logger.warning(f"[Notify] E-mail delivery failed: {e}")
