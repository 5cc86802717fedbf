# backend/backoffice/config.py
from __future__ import annotations
import os
from decimal import Decimal


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/backoffice.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///backoffice.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # VAT applied to tax-inclusive valuations when a material has no default tax.
    # Percent, e.g. 20 -> value * 1.20
    DEFAULT_TAX_RATE_PERCENT = Decimal(os.environ.get("DEFAULT_TAX_RATE_PERCENT", "20"))

    # Keys (accounts or material/warehouse pairs) loaded per page by the
    # recalculation job; each key is still committed in its own transaction.
    RECALC_CHUNK_SIZE = int(os.environ.get("RECALC_CHUNK_SIZE", "200"))

    # Attempts for a mutating operation before a lock/version conflict is surfaced.
    CONCURRENCY_RETRY_ATTEMPTS = int(os.environ.get("CONCURRENCY_RETRY_ATTEMPTS", "3"))
