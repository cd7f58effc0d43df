# Overview: Flask API routes for per-collection batch upload and delta listing.

# backend/possync/routes/records.py
"""
Per-collection routes for devices that sync one entity type at a time.

POST /api/<collection>/batch resolves records exactly like /api/sync/push
(idempotency key, then local_id, then updated_at).
GET /api/<collection>?since=... lists records changed after the cursor.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import sync_service
from ..time_utils import to_utc_z, utcnow
from ..validation import ValidationError
from ..decorators import flexible_auth


items_bp = Blueprint("items", __name__, url_prefix="/api/items")
customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")
transactions_bp = Blueprint("transactions", __name__, url_prefix="/api/transactions")


def _batch(collection: str):
    try:
        data = request.get_json()
        records = data if isinstance(data, list) else (data or {}).get(collection)
        if not isinstance(records, list) or not records:
            return jsonify({"error": f"{collection} array is required"}), 400

        result = sync_service.push_records(
            collection,
            records,
            user_id=g.user_id,
            company_code=g.company_code,
        )
        result["server_timestamp"] = to_utc_z(utcnow())
        return jsonify(result), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to process %s batch", collection)
        return jsonify({"error": "Internal server error"}), 500


def _listing(collection: str):
    try:
        server_timestamp = utcnow()
        since = sync_service.parse_since(request.args.get("since"))
        records = sync_service.list_changes(
            collection,
            user_id=g.user_id,
            since=since,
            overlap_ms=int(current_app.config.get("SYNC_PULL_OVERLAP_MS", 0)),
        )
        return jsonify({
            collection: [r.to_dict() for r in records],
            "server_timestamp": to_utc_z(server_timestamp),
        }), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list %s", collection)
        return jsonify({"error": "Internal server error"}), 500


@items_bp.post("/batch")
@flexible_auth
def items_batch_route():
    return _batch("items")


@items_bp.get("")
@flexible_auth
def list_items_route():
    return _listing("items")


@customers_bp.post("/batch")
@flexible_auth
def customers_batch_route():
    return _batch("customers")


@customers_bp.get("")
@flexible_auth
def list_customers_route():
    return _listing("customers")


@transactions_bp.post("/batch")
@flexible_auth
def transactions_batch_route():
    return _batch("transactions")


@transactions_bp.get("")
@flexible_auth
def list_transactions_route():
    return _listing("transactions")
