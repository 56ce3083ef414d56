#!/usr/bin/env python3
"""Main entry point for the DeFairy rebalancing service."""
import logging
import signal
import sys

from flask import Flask, jsonify
from flask_cors import CORS

from defairy.config import ALLOWED_ORIGINS, AUDIT_FILE_ENABLED, SERVER_HOST, SERVER_PORT
from defairy.database import DefairyDB
from defairy.routes import init_rebalance_routes, rebalance_bp
from defairy.services.audit import setup_audit_file_handler
from defairy.services.prices import CoinGeckoPriceHistory
from defairy.services.rebalancing import (
    DatabasePreferenceBackend,
    HttpPositionFeed,
    PreferenceStore,
    SmartRebalancer,
)

logger = logging.getLogger("defairy")


def create_app(engine: SmartRebalancer) -> Flask:
    """Application factory."""
    app = Flask(__name__)

    # SECURITY: Restrict CORS to the dashboard origins only
    CORS(app, origins=ALLOWED_ORIGINS, supports_credentials=True)

    @app.after_request
    def add_security_headers(response):
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
        return response

    @app.route('/health')
    def health():
        return jsonify({"status": "ok", "running": engine.is_running()})

    init_rebalance_routes(engine)
    app.register_blueprint(rebalance_bp)
    return app


def build_engine(db: DefairyDB) -> SmartRebalancer:
    """Wire the engine with its production collaborators.

    Signing happens in the user's browser wallet, so the server-side engine
    has no wallet adapter. The execute routes hand the wallet its transaction
    plans and feed the reported signatures back through the engine.
    """
    store = PreferenceStore(DatabasePreferenceBackend(db))
    return SmartRebalancer(
        position_feed=HttpPositionFeed(),
        price_history=CoinGeckoPriceHistory(),
        store=store,
        db=db,
    )


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='[%(asctime)s.%(msecs)03d] [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )

    if AUDIT_FILE_ENABLED:
        setup_audit_file_handler()

    db = DefairyDB()
    db.create_schema()

    engine = build_engine(db)
    resumed = engine.resume_monitoring(db.list_preference_wallets())
    logger.info(f"Resumed monitoring for {len(resumed)} wallet(s)")

    app = create_app(engine)

    def handle_shutdown(signum, frame):
        logger.info("Shutdown signal received, stopping rebalancer...")
        engine.stop()
        sys.exit(0)

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    app.run(host=SERVER_HOST, port=SERVER_PORT, debug=False)


if __name__ == '__main__':
    main()
