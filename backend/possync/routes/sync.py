# Overview: Flask API routes for device sync; push and pull of items, customers and transactions.

# backend/possync/routes/sync.py
"""Delta sync API routes (flexible auth: bearer token or X-User-Id)"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import sync_service
from ..services.sync_service import SyncError
from ..validation import ValidationError
from ..decorators import flexible_auth


sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")


@sync_bp.post("/push")
@flexible_auth
def push_route():
    """
    Push local changes.

    Body: {items: [...], customers: [...], transactions: [...], user_id}
    Returns per-collection {synced, conflicts} plus server_timestamp.
    Per-record problems are conflicts, never a failed request.
    """
    try:
        data = request.get_json() or {}
        result = sync_service.push_changes(
            data,
            user_id=g.user_id,
            company_code=g.company_code,
        )
        return jsonify(result), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except SyncError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to process sync push")
        return jsonify({"error": "Internal server error"}), 500


@sync_bp.post("/pull")
@flexible_auth
def pull_route():
    """
    Pull remote changes.

    Body: {since: ISO-8601 | epoch ms, user_id}
    Returns full snapshots of every record changed after `since`.
    """
    try:
        data = request.get_json(silent=True) or {}
        result = sync_service.pull_changes(user_id=g.user_id, since=data.get("since"))
        return jsonify(result), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to process sync pull")
        return jsonify({"error": "Internal server error"}), 500


@sync_bp.get("/status")
@flexible_auth
def status_route():
    return jsonify(sync_service.sync_status(g.user_id)), 200
