import json

from app.core.settings import settings
from app.db.session import SessionLocal
from app.main import app
from app.models.order import CheckoutSession, Entitlement, Order
from app.models.user import CreatorAccount, User
from app.services.orders import fulfil_checkout_session, generate_order_number
from app.services.payments import AccountStatus, get_payment_gateway

from conftest import VALID_SIGNATURE, bearer, login


def _post_event(client, event, signature=VALID_SIGNATURE):
    headers = {"Content-Type": "application/json"}
    if signature:
        headers["Stripe-Signature"] = signature
    return client.post("/api/webhooks/stripe", content=json.dumps(event), headers=headers)


def _seller_and_buyer(client, market, onboarded=True):
    creator_id = market.create_user("creator@example.com", role="creator")
    if onboarded:
        market.complete_creator(creator_id, account_id="acct_creator")
    buyer_id = market.create_user("buyer@example.com")
    seeded = market.create_product(creator_id, price_cents=2500)
    return creator_id, buyer_id, seeded, bearer(login(client, "buyer@example.com"))


def test_generate_order_number_format():
    number = generate_order_number()
    prefix, millis, suffix = number.split("-")
    assert prefix == "ORD"
    assert millis.isdigit()
    assert len(suffix) == 6
    assert all(c.isdigit() or c.isupper() for c in suffix)


def test_checkout_creates_pending_session(client, market, gateway):
    _, buyer_id, seeded, headers = _seller_and_buyer(client, market)
    r = client.post("/api/checkout/create", headers=headers, json={"product_id": seeded["product_id"]})
    assert r.status_code == 200
    body = r.json()
    assert body["session_id"] == "cs_test_1"
    assert body["checkout_url"].endswith("cs_test_1")

    call = gateway.checkout_calls[0]
    assert call["amount_cents"] == 2500
    assert call["destination_account"] == "acct_creator"
    assert call["fee_percent"] == 10.0

    with SessionLocal() as db:
        session = db.query(CheckoutSession).one()
        assert session.status == "PENDING"
        assert session.user_id == buyer_id
        assert session.amount_cents == 2500
        assert session.expires_at is not None


def test_checkout_requires_onboarded_creator_and_published_product(client, market):
    _, _, seeded, headers = _seller_and_buyer(client, market, onboarded=False)
    r = client.post("/api/checkout/create", headers=headers, json={"product_id": seeded["product_id"]})
    assert r.status_code == 400
    assert r.json()["detail"] == "Creator account not configured"

    assert client.post("/api/checkout/create", headers=headers, json={"product_id": 9999}).status_code == 404


def test_checkout_without_payment_configuration_conflicts(client, market, monkeypatch):
    _, _, seeded, headers = _seller_and_buyer(client, market)
    app.dependency_overrides.pop(get_payment_gateway, None)
    monkeypatch.setattr(settings, "stripe_secret_key", "")

    r = client.post("/api/checkout/create", headers=headers, json={"product_id": seeded["product_id"]})
    assert r.status_code == 409
    assert r.json()["code"] == "PAYMENTS_NOT_CONFIGURED"


def _completed_event(session_id, payment_intent="pi_test_1", event_id="evt_1"):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {"object": {"id": session_id, "payment_intent": payment_intent, "metadata": {}}},
    }


def test_webhook_rejects_bad_signatures(client):
    r = _post_event(client, _completed_event("cs_x"), signature=None)
    assert r.status_code == 400
    assert r.json()["detail"] == "No signature provided"
    assert _post_event(client, _completed_event("cs_x"), signature="t=1,v1=forged").status_code == 400


def test_checkout_completed_fulfils_once(client, market):
    creator_id, buyer_id, seeded, headers = _seller_and_buyer(client, market)
    session_id = client.post("/api/checkout/create", headers=headers, json={"product_id": seeded["product_id"]}).json()[
        "session_id"
    ]

    assert _post_event(client, _completed_event(session_id)).status_code == 200
    # Provider retries must not create a second order
    assert _post_event(client, _completed_event(session_id, event_id="evt_2")).status_code == 200

    with SessionLocal() as db:
        order = db.query(Order).one()
        assert order.status == "COMPLETED"
        assert order.total_amount_cents == 2500
        assert order.payment_intent_id == "pi_test_1"
        assert order.order_number.startswith("ORD-")
        assert len(order.items) == 1

        entitlement = db.query(Entitlement).one()
        assert entitlement.user_id == buyer_id
        assert entitlement.version_id == seeded["version_id"]
        assert entitlement.is_active is True

        assert db.query(CheckoutSession).one().status == "COMPLETED"
        account = db.query(CreatorAccount).filter(CreatorAccount.user_id == creator_id).one()
        assert account.total_sales == 1
        assert account.total_revenue_cents == 2250

    assert market.product(seeded["product_id"]).sale_count == 1
    assert len(market.audit_actions("ORDER_CREATED")) == 1
    assert len(market.audit_actions("STRIPE_WEBHOOK_RECEIVED")) == 2

    library = client.get("/api/library", headers=headers).json()
    assert [item["product"]["id"] for item in library] == [seeded["product_id"]]


def test_fulfilment_claims_checkout_against_stale_reads(client, market):
    _, _, seeded, headers = _seller_and_buyer(client, market)
    session_id = client.post("/api/checkout/create", headers=headers, json={"product_id": seeded["product_id"]}).json()[
        "session_id"
    ]

    # A second delivery that read the session while it was still pending
    stale = SessionLocal()
    try:
        assert stale.query(CheckoutSession).filter(CheckoutSession.session_id == session_id).one().status == "PENDING"

        with SessionLocal() as db:
            assert fulfil_checkout_session(db, {"id": session_id, "payment_intent": "pi_first"}) is not None

        assert fulfil_checkout_session(stale, {"id": session_id, "payment_intent": "pi_second"}) is None
    finally:
        stale.close()

    with SessionLocal() as db:
        assert db.query(Order).count() == 1
        assert db.query(Order).one().payment_intent_id == "pi_first"
    assert market.product(seeded["product_id"]).sale_count == 1


def test_charge_refunded_deactivates_entitlements(client, market):
    _, buyer_id, seeded, _ = _seller_and_buyer(client, market)
    grant = market.grant_entitlement(
        buyer_id, seeded["product_id"], seeded["version_id"], amount_cents=2500, payment_intent_id="pi_refund"
    )
    event = {
        "id": "evt_refund",
        "type": "charge.refunded",
        "data": {"object": {"id": "ch_1", "payment_intent": "pi_refund", "amount_refunded": 2500}},
    }
    assert _post_event(client, event).status_code == 200

    with SessionLocal() as db:
        order = db.get(Order, grant["order_id"])
        assert order.status == "REFUNDED"
        assert order.refunded_amount_cents == 2500
    assert market.entitlement(grant["entitlement_id"]).is_active is False


def test_partial_refund_keeps_entitlements(client, market):
    _, buyer_id, seeded, _ = _seller_and_buyer(client, market)
    grant = market.grant_entitlement(
        buyer_id, seeded["product_id"], seeded["version_id"], amount_cents=2500, payment_intent_id="pi_partial"
    )
    event = {
        "id": "evt_partial",
        "type": "charge.refunded",
        "data": {"object": {"id": "ch_2", "payment_intent": "pi_partial", "amount_refunded": 1000}},
    }
    assert _post_event(client, event).status_code == 200
    with SessionLocal() as db:
        assert db.get(Order, grant["order_id"]).status == "PARTIALLY_REFUNDED"
    assert market.entitlement(grant["entitlement_id"]).is_active is True


def test_account_updated_sets_onboarding_status(client, market):
    creator_id = market.create_user("creator@example.com", role="creator")
    with SessionLocal() as db:
        db.add(CreatorAccount(user_id=creator_id, stripe_account_id="acct_pending", onboarding_status="IN_PROGRESS"))
        db.commit()

    event = {
        "id": "evt_acct",
        "type": "account.updated",
        "data": {
            "object": {
                "id": "acct_pending",
                "details_submitted": True,
                "charges_enabled": True,
                "payouts_enabled": True,
            }
        },
    }
    assert _post_event(client, event).status_code == 200
    with SessionLocal() as db:
        account = db.query(CreatorAccount).filter(CreatorAccount.user_id == creator_id).one()
        assert account.onboarding_status == "COMPLETED"
        assert account.stripe_account_status == "active"


def test_admin_refund_flow(client, market, gateway):
    _, buyer_id, seeded, buyer_headers = _seller_and_buyer(client, market)
    market.create_user("admin@example.com", role="admin")
    admin_headers = bearer(login(client, "admin@example.com"))
    grant = market.grant_entitlement(
        buyer_id, seeded["product_id"], seeded["version_id"], amount_cents=2500, payment_intent_id="pi_admin"
    )

    assert client.post(f"/api/admin/orders/{grant['order_id']}/refund", headers=buyer_headers).status_code == 403
    assert client.post("/api/admin/orders/9999/refund", headers=admin_headers).status_code == 404

    gateway.refund_amount_cents = 2500
    r = client.post(f"/api/admin/orders/{grant['order_id']}/refund", headers=admin_headers)
    assert r.status_code == 200
    assert r.json() == {"refund_id": "re_test_1", "amount_cents": 2500, "full_refund": True, "order_status": "REFUNDED"}
    assert gateway.refunds == ["pi_admin"]
    assert market.entitlement(grant["entitlement_id"]).is_active is False
    assert len(market.audit_actions("ORDER_REFUNDED")) == 1

    r_again = client.post(f"/api/admin/orders/{grant['order_id']}/refund", headers=admin_headers)
    assert r_again.status_code == 409
    assert gateway.refunds == ["pi_admin"]


def test_admin_refund_requires_payment_intent(client, market):
    _, buyer_id, seeded, _ = _seller_and_buyer(client, market)
    market.create_user("admin@example.com", role="admin")
    grant = market.grant_entitlement(buyer_id, seeded["product_id"], seeded["version_id"])
    r = client.post(
        f"/api/admin/orders/{grant['order_id']}/refund", headers=bearer(login(client, "admin@example.com"))
    )
    assert r.status_code == 400


def test_creator_onboarding_flow(client, market, gateway):
    buyer_id = market.create_user("maker@example.com")
    headers = bearer(login(client, "maker@example.com"))

    assert client.get("/api/creator/onboarding/status", headers=headers).json() == {
        "has_account": False,
        "onboarding_status": None,
        "stripe_account_status": None,
        "is_complete": False,
    }

    r = client.post("/api/creator/onboarding/start", headers=headers)
    assert r.status_code == 200
    assert r.json()["url"].endswith(f"acct_test_{buyer_id}")
    with SessionLocal() as db:
        assert db.get(User, buyer_id).role == "creator"

    gateway.account_status = AccountStatus(details_submitted=True, charges_enabled=False, payouts_enabled=False)
    assert client.get("/api/creator/onboarding/status", headers=headers).json()["onboarding_status"] == "IN_PROGRESS"
    assert client.get("/api/creator/onboarding/dashboard", headers=headers).status_code == 409

    gateway.account_status = AccountStatus(details_submitted=True, charges_enabled=True, payouts_enabled=True)
    status = client.get("/api/creator/onboarding/status", headers=headers).json()
    assert status["is_complete"] is True
    r_dash = client.get("/api/creator/onboarding/dashboard", headers=headers)
    assert r_dash.status_code == 200
    assert r_dash.json()["url"].endswith(f"acct_test_{buyer_id}")


def test_dashboard_orders_lists_callers_orders(client, market):
    _, buyer_id, seeded, headers = _seller_and_buyer(client, market)
    market.grant_entitlement(buyer_id, seeded["product_id"], seeded["version_id"])
    r = client.get("/api/dashboard/orders", headers=headers)
    assert r.status_code == 200
    assert len(r.json()) == 1
    assert client.get("/api/dashboard/orders", headers=bearer(login(client, "creator@example.com"))).json() == []
