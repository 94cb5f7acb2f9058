# settlement/__init__.py
# Stripe settlement service - Flask app factory
# Goals:
# - deterministic blueprint registration
# - one Stripe gateway per mode, injectable for tests
# - JSON error shape everywhere (this is an API-only app)

from __future__ import annotations

import logging
import os
import time
from importlib import import_module
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type, Union
from uuid import uuid4

from dotenv import load_dotenv
from flask import Blueprint, Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

# IMPORTANT: never override real env vars in prod
load_dotenv(override=False)

ConfigLike = Union[str, Type[Any]]

from settlement.config import CONFIG_BY_NAME  # noqa: E402
from settlement.extensions import db, init_all_extensions  # noqa: E402
from settlement.services.gateway import init_gateways  # noqa: E402


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _env_mode() -> str:
    for key in ("APP_ENV", "ENV", "FLASK_ENV"):
        val = (os.getenv(key) or "").strip().lower()
        if val:
            if val == "prod":
                return "production"
            if val == "dev":
                return "development"
            return val
    return "development"


def _resolve_config(target: Optional[ConfigLike]) -> ConfigLike:
    """
    Choose config class.
    - If explicitly provided, respect it (class, dotted path or short name).
    - Else if FLASK_CONFIG is set, use it.
    - Else pick by environment mode.
    """
    if target is None:
        target = (os.getenv("FLASK_CONFIG") or "").strip() or _env_mode()
    if isinstance(target, str) and target.lower() in CONFIG_BY_NAME:
        return CONFIG_BY_NAME[target.lower()]
    return target


def _parse_cors_origins(raw: Any) -> Union[str, List[str]]:
    s = str(raw or "*").strip()
    if s == "*":
        return "*"
    return [o.strip() for o in s.split(",") if o.strip()]


def _json_error(message: str, status: int, **extra: Any):
    payload: Dict[str, Any] = {"success": False, "error": str(message)}
    rid = extra.pop("request_id", None)
    if rid:
        payload["request_id"] = rid
    payload.update(extra)
    resp = jsonify(payload)
    resp.status_code = int(status)
    resp.headers.setdefault("Cache-Control", "no-store")
    return resp


# -----------------------------------------------------------------------------
# Logging with request_id
# -----------------------------------------------------------------------------
class _RequestIDFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        try:
            record.request_id = getattr(g, "request_id", "-")
        except RuntimeError:
            record.request_id = "-"
        return True


def _configure_logging(app: Flask) -> None:
    fmt = "%(asctime)s [%(levelname)s] %(name)s [rid=%(request_id)s]: %(message)s"
    root = logging.getLogger()

    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt))
        handler.addFilter(_RequestIDFilter())
        root.addHandler(handler)
    else:
        for h in root.handlers:
            h.addFilter(_RequestIDFilter())
            if not getattr(h, "formatter", None) or "%(request_id)s" not in getattr(h.formatter, "_fmt", ""):
                h.setFormatter(logging.Formatter(fmt))

    root.setLevel(str(app.config.get("LOG_LEVEL", "INFO")).upper())
    logging.getLogger("werkzeug").setLevel(str(app.config.get("WERKZEUG_LOG_LEVEL", "WARNING")).upper())
    app.logger.info("Loaded config: ENV=%s DEBUG=%s", app.config.get("ENV", "?"), app.debug)


# -----------------------------------------------------------------------------
# Blueprints
# -----------------------------------------------------------------------------
def _safe_register(app: Flask, dotted: str, attr: str, url_prefix: Optional[str]) -> bool:
    disabled = {p.strip().lower() for p in (os.getenv("DISABLE_BPS", "")).split(",") if p.strip()}
    if dotted.split(".")[-1].lower() in disabled:
        app.logger.info("Disabled module: %s", dotted)
        return False

    mod = import_module(dotted)
    blueprint = getattr(mod, attr, None)
    if not isinstance(blueprint, Blueprint):
        app.logger.warning("No blueprint %r found in %s", attr, dotted)
        return False
    if blueprint.name in app.blueprints:
        return False

    app.register_blueprint(blueprint, url_prefix=url_prefix or blueprint.url_prefix)
    app.logger.info("Registered blueprint: %-12s → %s", blueprint.name, url_prefix or blueprint.url_prefix or "/")
    return True


def _register_blueprints(app: Flask) -> None:
    core: List[Tuple[str, str, Optional[str]]] = [
        ("settlement.blueprints.health", "bp", None),
        ("settlement.blueprints.settlement", "bp", "/admin/settlement"),
    ]
    for dotted, attr, prefix in core:
        _safe_register(app, dotted, attr, prefix)

    if "settlement" not in app.blueprints:
        raise RuntimeError("Settlement blueprint failed to register (check DISABLE_BPS)")


# -----------------------------------------------------------------------------
# Integrations
# -----------------------------------------------------------------------------
def _maybe_create_sqlite_tables(app: Flask) -> None:
    uri = (app.config.get("SQLALCHEMY_DATABASE_URI") or "").strip()
    if not uri.startswith("sqlite"):
        return
    if app.config.get("AUTO_CREATE_SQLITE", True) is not True:
        return
    import settlement.models  # noqa: F401  (register tables on the metadata)

    try:
        with app.app_context():
            db.create_all()
    except Exception:
        app.logger.exception("SQLite create_all failed (continuing)")


# -----------------------------------------------------------------------------
# Request lifecycle + errors
# -----------------------------------------------------------------------------
def _register_request_lifecycle(app: Flask) -> None:
    @app.before_request
    def _bootstrap_request():
        g.request_id = request.headers.get("X-Request-ID") or uuid4().hex
        g._start_ts = time.perf_counter()

    @app.after_request
    def _attach_request_headers(resp):
        resp.headers["X-Request-ID"] = getattr(g, "request_id", "-")
        start = getattr(g, "_start_ts", None)
        if start:
            resp.headers["X-Response-Time-ms"] = str(int((time.perf_counter() - start) * 1000))
        return resp


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(HTTPException)
    def _http_err(err: HTTPException):
        return _json_error(err.description or err.name, err.code or 500, request_id=getattr(g, "request_id", "-"))

    @app.errorhandler(Exception)
    def _uncaught(err: Exception):
        app.logger.exception("Unhandled error")
        db.session.rollback()
        return _json_error("Internal Server Error", 500, request_id=getattr(g, "request_id", "-"))


# -----------------------------------------------------------------------------
# Factory
# -----------------------------------------------------------------------------
def create_app(config_class: Optional[ConfigLike] = None) -> Flask:
    app = Flask(__name__)

    cfg = _resolve_config(config_class)
    app.config.from_object(cfg)
    init_hook = getattr(cfg, "init_app", None)
    if callable(init_hook):
        init_hook(app)

    app.url_map.strict_slashes = False
    app.config.setdefault("PROPAGATE_EXCEPTIONS", False)
    app.json.sort_keys = False

    _configure_logging(app)

    init_all_extensions(app, cors_origins=_parse_cors_origins(app.config.get("CORS_ORIGINS")))
    _maybe_create_sqlite_tables(app)
    init_gateways(app)

    _register_request_lifecycle(app)
    _register_error_handlers(app)
    _register_blueprints(app)

    from settlement.cli import settlement_cli

    app.cli.add_command(settlement_cli)

    return app


__all__ = ["create_app"]
