# Overview: Flask API routes for auth operations; parses input and returns JSON responses.

# backend/possync/routes/auth.py
"""
Authentication API routes

Signup and login issue a JWT bearer token. Devices that never sign up keep
syncing with the X-User-Id header (see decorators.flexible_auth).
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..services import auth_service
from ..services.auth_service import PasswordValidationError
from ..decorators import require_auth


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _token_response(user, status: int, message: str):
    return jsonify({
        "user": user.to_dict(),
        "token": auth_service.create_access_token(user),
        "company_code": user.company_code,
        "message": message,
    }), status


@auth_bp.post("/signup")
def signup_route():
    """
    Create a shop account and return a bearer token.

    Body: {name, email, password, company?, location?}
    The company code is derived from the shop name (company) here, once.
    """
    try:
        data = request.get_json() or {}
        name = data.get("name")
        email = data.get("email")
        password = data.get("password")

        if not all([name, email, password]):
            return jsonify({"error": "name, email and password required"}), 400

        user = auth_service.create_user(
            name=name,
            email=email,
            password=password,
            company=data.get("company") or data.get("shop_name"),
            location=data.get("location"),
        )
        return _token_response(user, 201, "Signup successful")

    except PasswordValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to sign up user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/login")
def login_route():
    """Authenticate with email + password and return a bearer token."""
    try:
        data = request.get_json() or {}
        email = data.get("email") or data.get("identifier")
        password = data.get("password")

        if not all([email, password]):
            return jsonify({"error": "email and password required"}), 400

        user = auth_service.authenticate(email, password)
        if not user:
            return jsonify({"error": "Invalid credentials"}), 401

        return _token_response(user, 200, "Login successful")

    except Exception:
        current_app.logger.exception("Failed to login user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.get("/me")
@require_auth
def me_route():
    return jsonify({"user": g.current_user.to_dict(), "company_code": g.company_code}), 200
