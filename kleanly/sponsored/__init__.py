# kleanly/sponsored/__init__.py
from __future__ import annotations

from typing import Any, Dict, Optional

from flask import Blueprint, current_app, jsonify, request

from kleanly import db, limiter
from kleanly.errors import NotFound, ValidationFailed
from kleanly.models_billing import SponsorshipLock
from kleanly.services import make_ledger, make_locks, make_orchestrator, make_subscriptions
from kleanly.services.checkout import parse_slot

sponsored_bp = Blueprint("sponsored_bp", __name__)

# Clients have sent both camelCase and snake_case over time.
_ALIASES = {
    "business_id": ("businessId", "business_id", "cleanerId", "cleaner_id"),
    "area_id": ("areaId", "area_id", "regionId", "region_id"),
    "category_id": ("categoryId", "category_id", "category"),
    "slot": ("slot", "slotId", "slot_id"),
    "lock_id": ("lockId", "lock_id"),
    "months": ("months",),
    "action": ("action",),
}


# ----------------------------- helpers --------------------------------------
def _payload() -> Dict[str, Any]:
    if request.method == "GET":
        return request.args.to_dict()
    body = request.get_json(silent=True)
    if body is None:
        body = request.form.to_dict() if request.form else {}
    if not isinstance(body, dict):
        raise ValidationFailed("invalid_json", "Request body must be a JSON object")
    return body


def _arg(body: Dict[str, Any], name: str) -> Optional[Any]:
    for key in _ALIASES[name]:
        value = body.get(key)
        if value not in (None, ""):
            return value
    return None


def _required(body: Dict[str, Any], name: str) -> str:
    value = _arg(body, name)
    if value is None:
        raise ValidationFailed("missing_field", f"{_ALIASES[name][0]} is required", field=_ALIASES[name][0])
    return str(value).strip()


def _slot(body: Dict[str, Any]) -> int:
    raw = _arg(body, "slot")
    return parse_slot(1 if raw is None else raw, current_app.config.get("SPONSOR_SLOTS") or (1,))


# ----------------------------- checkout -------------------------------------
@sponsored_bp.route("/sponsored-checkout", methods=["POST"])
@limiter.limit("30 per minute")
def sponsored_checkout():
    body = _payload()
    result = make_orchestrator().create_checkout(
        _required(body, "business_id"),
        _required(body, "area_id"),
        _required(body, "category_id"),
        _required(body, "slot"),
        lock_id=_arg(body, "lock_id"),
    )
    return jsonify(result.to_dict())


@sponsored_bp.route("/area-preview", methods=["POST"])
@sponsored_bp.route("/sponsored-preview", methods=["POST"])
@limiter.limit("120 per minute")
def sponsored_preview():
    body = _payload()
    return jsonify(make_orchestrator().preview(
        _required(body, "area_id"),
        _required(body, "category_id"),
        _slot(body),
        months=_arg(body, "months"),
    ))


# ----------------------------- upgrade --------------------------------------
@sponsored_bp.route("/sponsored-upgrade-preview", methods=["POST"])
@limiter.limit("60 per minute")
def sponsored_upgrade_preview():
    body = _payload()
    return jsonify(make_orchestrator().upgrade_preview(
        _required(body, "business_id"),
        _required(body, "area_id"),
        _required(body, "category_id"),
        _slot(body),
    ))


@sponsored_bp.route("/sponsored-upgrade", methods=["POST"])
@limiter.limit("10 per minute")
def sponsored_upgrade():
    body = _payload()
    return jsonify(make_orchestrator().upgrade(
        _required(body, "business_id"),
        _required(body, "area_id"),
        _required(body, "category_id"),
        _slot(body),
    ))


# ----------------------------- subscription actions -------------------------
@sponsored_bp.route("/subscription-cancel", methods=["POST"])
@limiter.limit("20 per minute")
def subscription_cancel():
    body = _payload()
    action = str(_arg(body, "action") or "cancel").strip().lower()
    if action not in ("cancel", "reactivate"):
        raise ValidationFailed("invalid_action", "action must be cancel or reactivate")

    manager = make_subscriptions()
    args = (_required(body, "business_id"), _required(body, "area_id"), _slot(body))
    category_id = _arg(body, "category_id")
    if action == "cancel":
        row = manager.cancel(*args, category_id=category_id)
    else:
        row = manager.reactivate(*args, category_id=category_id)
    return jsonify({"ok": True, "action": action, "sponsorship": row.to_dict()})


@sponsored_bp.route("/subscription-get", methods=["GET", "POST"])
def subscription_get():
    body = _payload()
    manager = make_subscriptions()
    row, invoice = manager.lookup(
        _required(body, "business_id"),
        _required(body, "area_id"),
        _slot(body),
        category_id=_arg(body, "category_id"),
    )
    return jsonify(manager.to_payload(row, invoice))


@sponsored_bp.route("/release-sponsored-lock", methods=["POST"])
def release_sponsored_lock():
    body = _payload()
    lock_id = _required(body, "lock_id")
    business_id = _required(body, "business_id")
    lock = db.session.get(SponsorshipLock, lock_id)
    if lock is None or lock.business_id != business_id:
        raise NotFound("lock_not_found", "Lock not found")
    released = make_locks().release(lock_id, "abandoned")
    return jsonify({"ok": True, "released": released})


# ----------------------------- map overlay ----------------------------------
@sponsored_bp.route("/category-sponsored-geo", methods=["GET", "POST"])
def category_sponsored_geo():
    body = _payload()
    category_id = _required(body, "category_id")

    features = []
    for row in make_ledger().live_for_category(category_id):
        geometry = row.geometry
        if not geometry:
            continue
        features.append({
            "type": "Feature",
            "geometry": geometry,
            "properties": {
                "sponsorship_id": row.id,
                "business_id": row.business_id,
                "area_id": row.region_id,
                "slot": row.slot,
                "status": row.status,
                "area_km2": round(row.area_km2 or 0.0, 6),
            },
        })
    return jsonify({"ok": True, "type": "FeatureCollection", "features": features})
