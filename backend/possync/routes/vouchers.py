# Overview: Flask API routes for voucher numbers; preview, generate and confirm.

# backend/possync/routes/vouchers.py
"""Voucher API routes (flexible auth)"""

from flask import Blueprint, request, jsonify, g, current_app

from ..company import normalize_company_code
from ..services import voucher_service
from ..services.voucher_service import VoucherConflictError, VoucherError, VoucherNotFoundError
from ..decorators import flexible_auth


vouchers_bp = Blueprint("vouchers", __name__, url_prefix="/api/vouchers")


def _company_code(data: dict) -> str:
    # An explicit code in the body scopes this call; otherwise the resolved one
    return normalize_company_code(data.get("company_code")) or g.company_code


@vouchers_bp.post("/init-daily")
@flexible_auth
def init_daily_route():
    """
    Preview the next sequence for (company_code, date). No allocation.

    Body: {company_code?, date?, user_id?}
    """
    try:
        data = request.get_json(silent=True) or {}
        preview = voucher_service.preview_next_sequence(
            g.user_id,
            _company_code(data),
            data.get("date"),
        )
        return jsonify(preview), 200

    except VoucherError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to preview voucher sequence")
        return jsonify({"error": "Internal server error"}), 500


@vouchers_bp.post("/generate")
@flexible_auth
def generate_route():
    """
    Claim one exact voucher number.

    Body: {provisional_voucher, company_code?, date?, sequence}
    409 when that number already exists or was already handed out.
    """
    try:
        data = request.get_json() or {}
        if data.get("sequence") is None:
            return jsonify({"error": "sequence required"}), 400

        voucher_number = voucher_service.reserve_voucher_number(
            g.user_id,
            _company_code(data),
            data.get("date"),
            data.get("sequence"),
        )
        return jsonify({
            "voucher_number": voucher_number,
            "provisional_voucher": data.get("provisional_voucher"),
        }), 201

    except VoucherConflictError as e:
        return jsonify({"error": str(e), "details": e.details}), 409
    except VoucherError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to generate voucher number")
        return jsonify({"error": "Internal server error"}), 500


@vouchers_bp.post("/confirm")
@flexible_auth
def confirm_route():
    """
    Bind a final number to a transaction and clear its provisional voucher.

    Body: {provisional_voucher, voucher_number, transaction_id}
    transaction_id may be the cloud id or the device local id.
    """
    try:
        data = request.get_json() or {}
        if not data.get("voucher_number"):
            return jsonify({"error": "voucher_number required"}), 400

        txn = voucher_service.confirm_voucher_number(
            g.user_id,
            data.get("voucher_number"),
            transaction_id=data.get("transaction_id"),
            provisional_voucher=data.get("provisional_voucher"),
        )
        return jsonify({
            "transaction_id": txn.cloud_id,
            "local_id": txn.local_id,
            "voucher_number": txn.voucher_number,
            "provisional_voucher": txn.provisional_voucher,
        }), 200

    except VoucherNotFoundError as e:
        return jsonify({"error": str(e), "details": e.details}), 404
    except VoucherConflictError as e:
        return jsonify({"error": str(e), "details": e.details}), 409
    except VoucherError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to confirm voucher number")
        return jsonify({"error": "Internal server error"}), 500


@vouchers_bp.get("/sequences")
@flexible_auth
def sequences_route():
    rows = voucher_service.list_sequences(g.user_id)
    return jsonify({"sequences": [row.to_dict() for row in rows]}), 200
