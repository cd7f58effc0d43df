# backend/possync/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/possync.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///possync.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Bearer tokens issued at login/signup
    JWT_SECRET = os.environ.get("JWT_SECRET", "dev-jwt-secret-change-me")
    JWT_ALGORITHM = "HS256"
    JWT_EXPIRES_HOURS = int(os.environ.get("JWT_EXPIRES_HOURS", "168"))  # 7 days

    # Voucher numbering: {COMPANY_CODE}-{YYYYMMDD}-{SEQ}
    DEFAULT_COMPANY_CODE = os.environ.get("DEFAULT_COMPANY_CODE", "GUR")
    VOUCHER_SEQUENCE_PAD = int(os.environ.get("VOUCHER_SEQUENCE_PAD", "4"))

    # Upper bound on records accepted per entity type in one push/batch call
    SYNC_MAX_BATCH = int(os.environ.get("SYNC_MAX_BATCH", "500"))

    # Pull re-sends records modified this long before the cursor (merge is idempotent)
    SYNC_PULL_OVERLAP_MS = int(os.environ.get("SYNC_PULL_OVERLAP_MS", "1000"))

    # Browser origins allowed to call the API (web dashboard in development)
    CORS_ALLOWED_ORIGINS = tuple(
        o.strip()
        for o in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ).split(",")
        if o.strip()
    )
