# Overview: Request decorators for API routes; authentication and tenant context.

from functools import wraps
from flask import request, jsonify, g, current_app

from .company import resolve_company_code
from .services import auth_service
from .services.auth_service import AuthError


def _bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _establish_company_code(claims: dict | None) -> str:
    """
    Ordered resolution chain for the voucher company code:
    token claim -> user row -> X-Company-Code header -> request body -> default
    """
    def _from_user():
        user = auth_service.get_user(g.user_id)
        return user.company_code if user else None

    return resolve_company_code(
        [
            (claims or {}).get("company_code"),
            _from_user,
            request.headers.get("X-Company-Code"),
            _body().get("company_code"),
        ],
        default=current_app.config.get("DEFAULT_COMPANY_CODE", "GUR"),
    )


def _check_body_user() -> tuple | None:
    """A body user_id that disagrees with the authenticated identity is refused."""
    body_user = _body().get("user_id")
    if body_user not in (None, "") and str(body_user) != g.user_id:
        return jsonify({"error": "User mismatch"}), 403
    return None


def require_auth(f):
    """
    Require a valid bearer token (JWT).

    Sets the following Flask g attributes:
    - g.user_id: token subject
    - g.current_user: the User row (401 if missing or deactivated)
    - g.company_code: resolved voucher company code
    - g.auth_method: "jwt"
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = _bearer_token()
        if not token:
            return jsonify({"error": "Authentication required"}), 401

        try:
            claims = auth_service.decode_access_token(token)
        except AuthError as e:
            return jsonify({"error": str(e)}), 401

        user = auth_service.get_user(claims["sub"])
        if not user or not user.is_active:
            return jsonify({"error": "Invalid or expired token"}), 401

        g.user_id = user.id
        g.current_user = user
        g.auth_method = "jwt"
        g.company_code = _establish_company_code(claims)

        return f(*args, **kwargs)

    return decorated_function


def flexible_auth(f):
    """
    Accept a bearer token OR an X-User-Id header (sync, voucher and batch routes).

    WHY: A device registered fully offline never got a token but must still
    sync. A present but invalid token is rejected rather than silently
    falling back to the header.

    Sets g.user_id, g.company_code, g.auth_method ("jwt" | "header").
    Returns 401 when neither is present, 403 when the body names another user.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        claims = None
        token = _bearer_token()

        if token:
            try:
                claims = auth_service.decode_access_token(token)
            except AuthError as e:
                return jsonify({"error": str(e)}), 401
            g.user_id = str(claims["sub"])
            g.auth_method = "jwt"
        else:
            header_user = (request.headers.get("X-User-Id") or "").strip()
            if not header_user:
                return jsonify({"error": "Authentication required"}), 401
            g.user_id = header_user
            g.auth_method = "header"

        mismatch = _check_body_user()
        if mismatch:
            return mismatch

        g.company_code = _establish_company_code(claims)
        return f(*args, **kwargs)

    return decorated_function
