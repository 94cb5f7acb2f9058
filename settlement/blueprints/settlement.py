# settlement/blueprints/settlement.py
"""
Admin settlement API, mounted at /admin/settlement.

  POST /donations/from-stripe          ingest one Stripe payment bundle
  POST /donations/recalculate-amounts  resolver sweep       (admin or cron)
  POST /donations/reconcile-pending    pending reconciliation (admin or cron)
  POST /bike-rides/process-charges     pledge settlement batch

Every response is JSON with a ``success`` flag and no-store cache headers.
"""
from __future__ import annotations

from typing import Any, Dict, Optional, cast

from flask import Blueprint, current_app, g, jsonify, request

from settlement.errors import SettlementError
from settlement.extensions import db
from settlement.security import require_admin
from settlement.services.amount_resolver import recalculate_amounts
from settlement.services.donation_ingest import ingest_donation
from settlement.services.donation_reconcile import reconcile_pending
from settlement.services.fees import FeeModel
from settlement.services.gateway import GatewayError, get_registry
from settlement.services.pledge_settlement import process_event_charges
from settlement.services.trace import StepTrace

bp = Blueprint("settlement", __name__, url_prefix="/admin/settlement")


# ----------------------------
# JSON helpers
# ----------------------------
def _request_payload() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return cast(Dict[str, Any], data)
    return {}


def _json_response(payload: Dict[str, Any], status: int = 200):
    resp = jsonify(payload)
    resp.status_code = int(status)
    resp.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, max-age=0")
    resp.headers.setdefault("Pragma", "no-cache")
    resp.headers.setdefault("Expires", "0")
    return resp


def _json_error(message: str, status: int, extra: Optional[Dict[str, Any]] = None):
    body: Dict[str, Any] = {"success": False, "error": message}
    if extra:
        for k, v in extra.items():
            body.setdefault(k, v)
    return _json_response(body, status)


@bp.errorhandler(SettlementError)
def _settlement_error(e: SettlementError):
    db.session.rollback()
    if e.status_code >= 500:
        current_app.logger.error("settlement: %s", e.message)
    else:
        current_app.logger.info("settlement: rejected (%s): %s", e.status_code, e.message)
    return _json_response(e.to_dict(), e.status_code)


# ----------------------------
# Routes
# ----------------------------
@bp.post("/donations/from-stripe")
@require_admin()
def donation_from_stripe():
    body = _request_payload()
    trace = StepTrace("create-donation-from-stripe", current_app.logger)
    trace.step("request", {"caller": g.caller, "items": len(body.get("stripeItems") or [])})

    try:
        result = ingest_donation(
            items=body.get("stripeItems"),
            email=body.get("email"),
            mode=body.get("stripeMode"),
            trace=trace,
        )
    except SettlementError as e:
        db.session.rollback()
        trace.step("error", {"error": e.message})
        return _json_error(e.message, e.status_code, extra={**e.details, "trace": trace.as_list()})
    except GatewayError as e:
        db.session.rollback()
        msg = getattr(e, "user_message", None) or str(e)
        current_app.logger.error("ingest: Stripe error: %s", msg, exc_info=True)
        return _json_error(msg, 502, extra={"trace": trace.as_list()})
    except Exception as e:
        db.session.rollback()
        current_app.logger.exception("ingest: unexpected error")
        trace.step("error", {"error": str(e)})
        return _json_error("Failed to create donation from Stripe data", 500, extra={"trace": trace.as_list()})

    result["trace"] = trace.as_list()
    return _json_response(result)


@bp.post("/donations/recalculate-amounts")
@require_admin(allow_cron=True)
def recalculate_donation_amounts():
    body = _request_payload()
    mode = str(body.get("stripeMode") or "").strip().lower() or None
    current_app.logger.info("recalculate-amounts requested by %s (mode=%s)", g.caller, mode or "all")
    return _json_response(
        recalculate_amounts(get_registry(), mode=mode, fees=FeeModel.from_config(current_app.config))
    )


@bp.post("/donations/reconcile-pending")
@require_admin(allow_cron=True)
def reconcile_pending_donations():
    body = _request_payload()
    mode = str(body.get("mode") or "").strip().lower() or None
    current_app.logger.info("reconcile-pending requested by %s (mode=%s)", g.caller, mode or "all")
    return _json_response(
        reconcile_pending(get_registry(), mode=mode, since=body.get("since"), limit=body.get("limit"))
    )


@bp.post("/bike-rides/process-charges")
@require_admin()
def process_bike_ride_charges():
    body = _request_payload()
    current_app.logger.info("process-charges for event %s requested by %s", body.get("event_id"), g.caller)
    result = process_event_charges(
        get_registry(),
        body.get("event_id"),
        body.get("actual_miles"),
        min_charge_cents=int(current_app.config.get("MIN_CHARGE_CENTS") or 50),
    )
    return _json_response(result)
