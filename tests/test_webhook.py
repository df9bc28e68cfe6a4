import json

from factories import event, sign, subscription
from kleanly import db
from kleanly.models_billing import BillingEvent, Sponsorship


def _post(client, body, signature=None, raw=None):
    payload = raw if raw is not None else json.dumps(body).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if signature is not False:
        headers["Stripe-Signature"] = signature or sign(payload)
    return client.post("/stripe-webhook", data=payload, headers=headers)


def test_signed_event_is_processed(client, world):
    sub = subscription("sub_x", world.x, world.region, world.bins)
    resp = _post(client, event("customer.subscription.created", sub, event_id="evt_signed"))
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["ok"] is True
    assert data["event_id"] == "evt_signed"
    assert data["outcome"]["action"] == "activated"
    db.session.expire_all()
    assert db.session.query(Sponsorship).filter_by(stripe_subscription_id="sub_x").count() == 1


def test_handled_conflict_still_answers_200(client, world, gateway):
    sub = subscription("sub_x", world.x, "no-such-area", world.bins)
    resp = _post(client, event("customer.subscription.created", sub))
    assert resp.status_code == 200
    assert resp.get_json()["outcome"]["reason"] == "no_remaining"


def test_legacy_path_is_the_same_receiver(client, world):
    payload = json.dumps(event("customer.created", {"id": "cus_1"})).encode("utf-8")
    resp = client.post("/api/stripe/webhook", data=payload, headers={"Stripe-Signature": sign(payload)})
    assert resp.status_code == 200
    assert resp.get_json()["outcome"]["action"] == "ignored"


def test_bad_signature_is_rejected(client, world):
    body = event("customer.subscription.created", subscription("sub_x", world.x, world.region, world.bins))
    payload = json.dumps(body).encode("utf-8")
    resp = _post(client, body, signature=sign(payload, secret="whsec_wrong"))
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "invalid_signature"
    db.session.expire_all()
    assert db.session.query(Sponsorship).count() == 0
    assert db.session.query(BillingEvent).count() == 0


def test_missing_signature_is_rejected(client, world):
    resp = _post(client, event("customer.created", {"id": "cus_1"}), signature=False)
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "missing_signature"


def test_unparseable_payload_is_rejected(client, world):
    resp = _post(client, None, raw=b"{not json")
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "invalid_payload"


def test_get_returns_a_hint(client):
    resp = client.get("/stripe-webhook")
    assert resp.status_code == 200
    assert resp.get_json()["ok"] is True


def test_unconfigured_secret_is_a_server_error(client, gateway):
    gateway.webhook_secret = ""
    payload = json.dumps(event("customer.created", {"id": "cus_1"})).encode("utf-8")
    resp = client.post("/stripe-webhook", data=payload, headers={"Stripe-Signature": sign(payload)})
    assert resp.status_code == 500
    assert resp.get_json()["code"] == "webhook_not_configured"
