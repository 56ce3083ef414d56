#!/usr/bin/env python3
"""Configuration module for the DeFairy rebalancing engine."""
import os

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(__file__), '.env'))

# Base paths
BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# SECURITY CEILINGS: user preferences are clamped to these values
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
MAX_REBALANCE_AMOUNT_USD = float(os.getenv('DEFAIRY_MAX_REBALANCE_USD', '5000'))
MAX_DAILY_TRANSACTIONS = int(os.getenv('DEFAIRY_MAX_DAILY_TRANSACTIONS', '10'))
MAX_WEEKLY_AMOUNT_USD = float(os.getenv('DEFAIRY_MAX_WEEKLY_USD', '20000'))
REQUIRE_CONFIRMATION_ABOVE_USD = float(os.getenv('DEFAIRY_REQUIRE_CONFIRM_USD', '1000'))
MIN_SECONDS_BETWEEN_REBALANCES = int(os.getenv('DEFAIRY_REBALANCE_COOLDOWN_SECONDS', '300'))
MAX_CONSECUTIVE_FAILURES = int(os.getenv('DEFAIRY_MAX_CONSECUTIVE_FAILURES', '3'))

# Engine timing
MONITOR_INTERVAL_SECONDS = int(os.getenv('DEFAIRY_MONITOR_INTERVAL_SECONDS', '300'))
QUEUE_ENTRY_TTL_SECONDS = int(os.getenv('DEFAIRY_QUEUE_TTL_SECONDS', '900'))
# Claimed entries handed to a browser wallet return to the queue after this long
SIGNING_SESSION_TTL_SECONDS = int(os.getenv('DEFAIRY_SIGNING_SESSION_TTL_SECONDS', '300'))
ALERT_DISPLAY_SECONDS = int(os.getenv('DEFAIRY_ALERT_DISPLAY_SECONDS', '300'))
SNOOZE_SECONDS = int(os.getenv('DEFAIRY_SNOOZE_SECONDS', '3600'))

# Audit trail
AUDIT_LOG_MAX_ENTRIES = int(os.getenv('DEFAIRY_AUDIT_MAX_ENTRIES', '1000'))
AUDIT_LOG_TRIM_TO = int(os.getenv('DEFAIRY_AUDIT_TRIM_TO', '500'))
AUDIT_LOG_DIR = os.getenv('DEFAIRY_AUDIT_LOG_DIR', 'logs')
AUDIT_LOG_FILE = os.getenv('DEFAIRY_AUDIT_LOG_FILE', 'audit.log')
AUDIT_LOG_MAX_BYTES = int(os.getenv('DEFAIRY_AUDIT_LOG_MAX_BYTES', str(10 * 1024 * 1024)))  # 10MB
AUDIT_LOG_BACKUP_COUNT = int(os.getenv('DEFAIRY_AUDIT_LOG_BACKUP_COUNT', '5'))
AUDIT_FILE_ENABLED = os.getenv('DEFAIRY_AUDIT_FILE_ENABLED', 'false').lower() == 'true'

# Price history (CoinGecko)
COINGECKO_API = os.getenv('COINGECKO_API', 'https://api.coingecko.com/api/v3')
COINGECKO_API_KEY = os.getenv('COINGECKO_API_KEY', '')
PRICE_CACHE_TTL_SECONDS = 300

# Position feed exposed by the dashboard (returns the aggregated LP positions for a wallet)
POSITIONS_FEED_URL = os.getenv('DEFAIRY_POSITIONS_URL', 'http://localhost:3000/api/positions')

# Notification channels
DISCORD_WEBHOOK_URL = os.getenv('DISCORD_WEBHOOK_URL', '')
TELEGRAM_BOT_TOKEN = os.getenv('TELEGRAM_BOT_TOKEN', '')
TELEGRAM_API_BASE = 'https://api.telegram.org'
SENDGRID_API_KEY = os.getenv('SENDGRID_API_KEY', '')
SENDGRID_API_URL = 'https://api.sendgrid.com/v3/mail/send'
ALERT_EMAIL_FROM = os.getenv('DEFAIRY_ALERT_EMAIL_FROM', 'alerts@defairy.app')

# On-chain programs referenced by transaction plans
ORCA_WHIRLPOOL_PROGRAM = 'whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc'
RAYDIUM_AMM_PROGRAM = '675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8'
ESTIMATED_TX_FEE_SOL = 0.005

# Database
DATABASE_URL = os.getenv('DATABASE_URL', f"sqlite:///{os.path.join(BASE_DIR, 'defairy.db')}")

# Server config - SECURITY: Bind to localhost only
SERVER_HOST = os.getenv('DEFAIRY_HOST', '127.0.0.1')
SERVER_PORT = int(os.getenv('DEFAIRY_PORT', '5001'))

# SECURITY: CORS - only the dashboard origins may call the API
ALLOWED_ORIGINS = os.getenv('DEFAIRY_ALLOWED_ORIGINS', 'http://localhost:3000,http://127.0.0.1:3000').split(',')
