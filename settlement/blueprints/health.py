from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict

from flask import Blueprint, current_app, jsonify
from sqlalchemy import text

from settlement.extensions import db
from settlement.services.gateway import EXTENSION_KEY

bp = Blueprint("health", __name__)

APP_STARTED_AT = time.time()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _db_check() -> Dict[str, Any]:
    try:
        db.session.execute(text("SELECT 1"))
        return {"status": "ok", "ok": True}
    except Exception as e:
        db.session.rollback()
        current_app.logger.warning("healthz: database check failed: %s", e)
        return {"status": "fail", "ok": False, "reason": type(e).__name__}


def _stripe_check() -> Dict[str, Any]:
    registry = current_app.extensions.get(EXTENSION_KEY)
    modes = registry.configured_modes() if registry is not None else []
    return {"status": "ok" if modes else "degraded", "ok": bool(modes), "modes": modes}


@bp.get("/healthz")
def healthz():
    parts = {"database": _db_check(), "stripe": _stripe_check()}
    status = "fail" if parts["database"]["status"] == "fail" else "ok"
    body = {
        "status": status,
        "time": _now_iso(),
        "uptime_s": round(time.time() - APP_STARTED_AT, 1),
        "checks": parts,
    }
    resp = jsonify(body)
    resp.status_code = 200 if status == "ok" else 503
    resp.headers["Cache-Control"] = "no-store"
    return resp
