# backend/billing/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str) -> frozenset[str]:
    raw = os.environ.get(name, default)
    return frozenset(part.strip().upper() for part in raw.split(",") if part.strip())


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location
        "sqlite:///billing.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Currency used for catalog prices when a tenant has no "currency" setting
    BILLING_DEFAULT_CURRENCY = os.environ.get("BILLING_DEFAULT_CURRENCY", "USD")

    # Flat tax rate applied when a tenant has no "tax_rate" setting (0.08 = 8%)
    BILLING_DEFAULT_TAX_RATE = os.environ.get("BILLING_DEFAULT_TAX_RATE", "0")

    # "allow": overpayment leaves a negative balance (credit); "reject": OverpaymentRejected
    BILLING_OVERPAYMENT_POLICY = os.environ.get("BILLING_OVERPAYMENT_POLICY", "allow")

    # Strict compliance: audit entries commit in the same transaction as the primary write
    BILLING_AUDIT_STRICT = _env_bool("BILLING_AUDIT_STRICT", False)

    # Methods whose payments start PENDING until the gateway confirms them
    BILLING_ASYNC_PAYMENT_METHODS = _env_list("BILLING_ASYNC_PAYMENT_METHODS", "ONLINE,BANK_TRANSFER")

    BILLING_INVOICE_PREFIX = os.environ.get("BILLING_INVOICE_PREFIX", "INV")

    # Optimistic-lock / deadlock retry policy
    BILLING_RETRY_ATTEMPTS = int(os.environ.get("BILLING_RETRY_ATTEMPTS", "3"))
    BILLING_RETRY_BACKOFF = float(os.environ.get("BILLING_RETRY_BACKOFF", "0.05"))

    # Backoff hints handed to the external sync retry job
    BILLING_SYNC_BACKOFF_BASE = float(os.environ.get("BILLING_SYNC_BACKOFF_BASE", "30"))
    BILLING_SYNC_BACKOFF_MAX = float(os.environ.get("BILLING_SYNC_BACKOFF_MAX", "3600"))

    # Browser origins allowed to call the API directly
    CORS_ALLOWED_ORIGINS = frozenset(
        o.strip() for o in os.environ.get("CORS_ALLOWED_ORIGINS", "").split(",") if o.strip()
    )
