#!/usr/bin/env python3
"""
Smart rebalancing API routes.
Preferences, pool toggles, alerts, dry-run analysis, execution, audit and history.

Keys stay in the user's wallet: the execute routes hand out transaction
plans and record the signatures (or errors) the client wallet reports back.
"""

import time
import logging
from flask import Blueprint, jsonify, request

from defairy.services.rebalancing import Position, ReportStatus

logger = logging.getLogger("defairy.routes")

rebalance_bp = Blueprint('rebalance', __name__)

rebalancer = None


def init_rebalance_routes(engine):
    """Attach the rebalancing engine the routes operate on."""
    global rebalancer
    rebalancer = engine
    logger.info("[Routes] Rebalance routes initialized")


def _error(message: str, status: int):
    return jsonify({"success": False, "error": message}), status


# ==================== Preferences ====================

@rebalance_bp.route('/api/rebalance/<wallet>/preferences', methods=['GET'])
def api_get_preferences(wallet: str):
    """Get a wallet's validated preferences."""
    try:
        prefs = rebalancer.get_preferences(wallet)
        if prefs is None:
            return _error("No preferences configured", 404)
        return jsonify({"success": True, "preferences": prefs.to_dict()})
    except Exception as e:
        logger.error(f"[Routes] Get preferences error: {e}")
        return _error(str(e), 500)


@rebalance_bp.route('/api/rebalance/<wallet>/preferences', methods=['POST'])
def api_configure(wallet: str):
    """Configure preferences. Out-of-range values are clamped, never rejected."""
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return _error("Request body must be a JSON object", 400)

        prefs = rebalancer.configure(wallet, data)
        return jsonify({
            "success": True,
            "preferences": prefs.to_dict(),
            "monitoring": wallet in rebalancer.monitored_wallets(),
        })
    except Exception as e:
        logger.error(f"[Routes] Configure error: {e}")
        return _error(str(e), 500)


@rebalance_bp.route('/api/rebalance/<wallet>/pools/<path:pool_key>/toggle', methods=['POST'])
def api_toggle_pool(wallet: str, pool_key: str):
    """Enable or disable rebalancing for one pool."""
    try:
        data = request.get_json(silent=True) or {}
        if 'enabled' not in data:
            return _error("'enabled' is required", 400)
        if not isinstance(data['enabled'], bool):
            return _error("'enabled' must be true or false", 400)

        prefs = rebalancer.set_pool_enabled(wallet, pool_key, data['enabled'])
        if prefs is None:
            return _error("No preferences configured", 404)
        return jsonify({
            "success": True,
            "poolKey": pool_key,
            "settings": prefs.pool_specific_settings[pool_key].to_dict(),
        })
    except Exception as e:
        logger.error(f"[Routes] Toggle pool error: {e}")
        return _error(str(e), 500)


# ==================== Alerts ====================

@rebalance_bp.route('/api/rebalance/<wallet>/alerts')
def api_alerts(wallet: str):
    """Alerts currently on display for a wallet."""
    try:
        alerts = rebalancer.get_active_alerts(wallet)
        return jsonify({"success": True, "alerts": alerts, "count": len(alerts), "timestamp": time.time()})
    except Exception as e:
        logger.error(f"[Routes] Get alerts error: {e}")
        return _error(str(e), 500)


@rebalance_bp.route('/api/rebalance/<wallet>/alerts/<path:pool_ref>/snooze', methods=['POST'])
def api_snooze_alert(wallet: str, pool_ref: str):
    try:
        data = request.get_json(silent=True) or {}
        seconds = data.get('seconds')
        if seconds is not None:
            try:
                seconds = int(seconds)
            except (TypeError, ValueError):
                return _error("'seconds' must be an integer", 400)
            if seconds <= 0:
                return _error("'seconds' must be positive", 400)

        if not rebalancer.snooze_alert(wallet, pool_ref, seconds):
            return _error("No pending rebalance for this pool", 404)
        return jsonify({"success": True})
    except Exception as e:
        logger.error(f"[Routes] Snooze error: {e}")
        return _error(str(e), 500)


@rebalance_bp.route('/api/rebalance/<wallet>/alerts/<path:pool_ref>/dismiss', methods=['POST'])
def api_dismiss_alert(wallet: str, pool_ref: str):
    try:
        if not rebalancer.dismiss_alert(wallet, pool_ref):
            return _error("No pending rebalance for this pool", 404)
        return jsonify({"success": True})
    except Exception as e:
        logger.error(f"[Routes] Dismiss error: {e}")
        return _error(str(e), 500)


@rebalance_bp.route('/api/rebalance/<wallet>/notifications')
def api_notifications(wallet: str):
    """In-app notification inbox."""
    try:
        limit = request.args.get('limit', 50, type=int)
        inbox = getattr(rebalancer.notifier, 'inbox', None)
        messages = inbox(wallet, limit) if inbox else []
        return jsonify({"success": True, "notifications": messages})
    except Exception as e:
        logger.error(f"[Routes] Notifications error: {e}")
        return _error(str(e), 500)


# ==================== Execution ====================

REPORT_HTTP_STATUS = {
    ReportStatus.EXPIRED: 404,
    ReportStatus.REJECTED: 409,
    ReportStatus.ERROR: 500,
}


def _report_response(report):
    status = REPORT_HTTP_STATUS.get(report.status, 200)
    body = {"success": status == 200, "execution": report.to_dict()}
    if status != 200:
        body["error"] = report.message or report.status.value
    return jsonify(body), status


@rebalance_bp.route('/api/rebalance/<wallet>/execute/<path:pool_ref>/prepare', methods=['POST'])
def api_prepare_execution(wallet: str, pool_ref: str):
    """Claim a queued rebalance and return the transactions for the wallet to sign."""
    try:
        return _report_response(rebalancer.prepare_execution(wallet, pool_ref))
    except Exception as e:
        logger.error(f"[Routes] Prepare execution error: {e}")
        return _error(str(e), 500)


@rebalance_bp.route('/api/rebalance/<wallet>/execute/<path:pool_ref>/submit', methods=['POST'])
def api_submit_execution(wallet: str, pool_ref: str):
    """
    Report the outcome of each prepared transaction, in action order.

    Body: {"outcomes": [{"signature": "..."} | {"error": "..."} | {"cancelled": true}, ...]}
    """
    try:
        data = request.get_json(silent=True) or {}
        outcomes = data.get('outcomes') if isinstance(data, dict) else None
        if not isinstance(outcomes, list) or not all(isinstance(o, dict) for o in outcomes):
            return _error("'outcomes' must be a list of objects", 400)

        return _report_response(rebalancer.submit_execution(wallet, pool_ref, outcomes))
    except Exception as e:
        logger.error(f"[Routes] Submit execution error: {e}")
        return _error(str(e), 500)


@rebalance_bp.route('/api/rebalance/<wallet>/execute/<path:pool_ref>/cancel', methods=['POST'])
def api_cancel_execution(wallet: str, pool_ref: str):
    """Return a prepared rebalance to the queue unsigned."""
    try:
        return _report_response(rebalancer.cancel_execution(wallet, pool_ref))
    except Exception as e:
        logger.error(f"[Routes] Cancel execution error: {e}")
        return _error(str(e), 500)


# ==================== Analysis ====================

@rebalance_bp.route('/api/rebalance/<wallet>/analyze', methods=['POST'])
def api_analyze(wallet: str):
    """Dry-run analysis of a single position record."""
    try:
        data = request.get_json(silent=True)
        try:
            position = Position.from_dict(data)
        except ValueError as e:
            return _error(str(e), 400)

        return jsonify({"success": True, **rebalancer.analyze_position(wallet, position)})
    except Exception as e:
        logger.error(f"[Routes] Analyze error: {e}")
        return _error(str(e), 500)


@rebalance_bp.route('/api/rebalance/<wallet>/cycle', methods=['POST'])
def api_run_cycle(wallet: str):
    """Run one monitoring cycle for a wallet now."""
    try:
        results = rebalancer.run_monitoring_cycle(wallet)
        evaluations = results.get(wallet, [])
        return jsonify({
            "success": True,
            "evaluations": [e.to_dict() for e in evaluations],
            "alerts": rebalancer.get_active_alerts(wallet),
        })
    except Exception as e:
        logger.error(f"[Routes] Monitoring cycle error: {e}")
        return _error(str(e), 500)


# ==================== Reporting ====================

@rebalance_bp.route('/api/rebalance/audit')
def api_audit_log():
    try:
        wallet = request.args.get('wallet')
        limit = request.args.get('limit', 100, type=int)
        return jsonify({"success": True, "events": rebalancer.get_audit_log(wallet, limit)})
    except Exception as e:
        logger.error(f"[Routes] Audit log error: {e}")
        return _error(str(e), 500)


@rebalance_bp.route('/api/rebalance/<wallet>/history')
def api_history(wallet: str):
    try:
        limit = request.args.get('limit', 50, type=int)
        return jsonify({"success": True, "history": rebalancer.get_history(wallet, limit)})
    except Exception as e:
        logger.error(f"[Routes] History error: {e}")
        return _error(str(e), 500)


@rebalance_bp.route('/api/rebalance/status')
def api_status():
    try:
        wallet = request.args.get('wallet')
        return jsonify({"success": True, "status": rebalancer.get_status(wallet), "timestamp": time.time()})
    except Exception as e:
        logger.error(f"[Routes] Status error: {e}")
        return _error(str(e), 500)
