# settlement/config/config.py
# Canonical settlement-service configuration (env-first, production-safe)

from __future__ import annotations

import os
from typing import Optional


# ----------------------------
# Env helpers
# ----------------------------
_TRUTHY = {"1", "true", "yes", "on", "y"}
_FALSY = {"0", "false", "no", "off", "n"}


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    if v is None:
        return default
    s = str(v).strip()
    return s if s else default


def _bool(name: str, default: bool = False) -> bool:
    v = _env(name)
    if v is None:
        return default
    s = v.strip().lower()
    if s in _TRUTHY:
        return True
    if s in _FALSY:
        return False
    return default


def _int(name: str, default: int) -> int:
    v = _env(name)
    if v is None:
        return default
    try:
        return int(str(v).strip())
    except ValueError:
        return default


# ----------------------------
# Config classes
# ----------------------------
class BaseConfig:
    """
    Env-first config:
    - every setting can be overridden via environment variables
    - safe defaults for local dev
    """

    ENV = (_env("APP_ENV") or _env("ENV") or _env("FLASK_ENV") or "base").strip().lower()

    DEBUG = _bool("FLASK_DEBUG", False)
    TESTING = _bool("TESTING", False)

    # Security
    SECRET_KEY = _env("SECRET_KEY", "dev-change-me")
    JWT_SECRET = _env("JWT_SECRET", "dev-jwt-secret")
    JWT_ALG = _env("JWT_ALG", "HS256")
    JWT_AUDIENCE = _env("JWT_AUDIENCE")
    CRON_SECRET = _env("CRON_SECRET")

    # CORS for the admin API (CSV or "*")
    CORS_ORIGINS = _env("CORS_ORIGINS", "*")

    # Logging
    LOG_LEVEL = _env("LOG_LEVEL", "INFO")
    WERKZEUG_LOG_LEVEL = _env("WERKZEUG_LOG_LEVEL", "WARNING")

    # SQLAlchemy
    SQLALCHEMY_DATABASE_URI = _env("SQLALCHEMY_DATABASE_URI", "sqlite:///settlement-dev.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}
    AUTO_CREATE_SQLITE = _bool("AUTO_CREATE_SQLITE", True)

    # Stripe: one secret key per mode, chosen by the row's stripe_mode
    STRIPE_SECRET_KEY_TEST = _env("STRIPE_SECRET_KEY_TEST")
    STRIPE_SECRET_KEY_LIVE = _env("STRIPE_SECRET_KEY_LIVE")
    STRIPE_MAX_NETWORK_RETRIES = _int("STRIPE_MAX_NETWORK_RETRIES", 2)

    # Fee model used when donors opt to cover processing fees
    FF_FEES_PCT = _env("FF_FEES_PCT", "0.029")
    FF_FEES_FLAT = _env("FF_FEES_FLAT", "0.30")

    # Stripe refuses charges below this many minor units
    MIN_CHARGE_CENTS = _int("MIN_CHARGE_CENTS", 50)

    # Receipt fallbacks when receipt_settings has no row
    RECEIPT_ORG_NAME = _env("RECEIPT_ORG_NAME", "Best Day Ministries")
    RECEIPT_ORG_EIN = _env("RECEIPT_ORG_EIN", "00-0000000")

    @classmethod
    def init_app(cls, app) -> None:
        """
        Optional hook for factory boot hardening.
        Called from create_app() after app.config.from_object(...)
        """
        uri = str(app.config.get("SQLALCHEMY_DATABASE_URI") or "")

        if uri.startswith("sqlite:"):
            opts = dict(app.config.get("SQLALCHEMY_ENGINE_OPTIONS") or {})
            connect_args = dict(opts.get("connect_args") or {})
            connect_args.setdefault("check_same_thread", False)
            opts["connect_args"] = connect_args
            opts.setdefault("pool_pre_ping", True)
            app.config["SQLALCHEMY_ENGINE_OPTIONS"] = opts


class DevelopmentConfig(BaseConfig):
    ENV = "development"
    DEBUG = True


class TestingConfig(BaseConfig):
    ENV = "testing"
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    JWT_SECRET = "test-jwt-secret-0123456789abcdef0123"
    CRON_SECRET = "test-cron-secret"
    STRIPE_SECRET_KEY_TEST = "sk_test_dummy"
    STRIPE_SECRET_KEY_LIVE = None


class ProductionConfig(BaseConfig):
    ENV = "production"
    DEBUG = False

    @classmethod
    def init_app(cls, app) -> None:
        super().init_app(app)

        # ---- Production guardrails (fail fast) ----
        sk = app.config.get("SECRET_KEY")
        if not sk or sk == "dev-change-me":
            raise RuntimeError("SECRET_KEY must be set to a strong random value in production.")

        jwt_secret = app.config.get("JWT_SECRET")
        if not jwt_secret or jwt_secret == "dev-jwt-secret":
            raise RuntimeError("JWT_SECRET must be set in production.")

        if not app.config.get("CRON_SECRET"):
            raise RuntimeError("CRON_SECRET must be set in production.")

        if _bool("FLASK_DEBUG", False):
            raise RuntimeError("FLASK_DEBUG must be 0 in production.")
