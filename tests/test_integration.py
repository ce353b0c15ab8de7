from coursepay.models import Entitlement, GatewayEvent, Payment, Sale
from tests.factories import (
    BUYER_ID,
    mercadopago_notification,
    open_sale,
    stripe_charge_refunded,
    stripe_event,
)


def test_full_payment_lifecycle_integration(client, course, db, mocker):
    """
    Test the full lifecycle:
    1. Create payment intent (API -> DB + Stripe mocked)
    2. Webhook success, delivered twice (Stripe -> API -> DB)
    3. Client confirm arriving after the webhook
    4. Refund (API -> Stripe mocked -> DB)
    """

    # --- 1. CREATE PAYMENT INTENT ---
    mocker.patch(
        "stripe.PaymentIntent.create",
        return_value={"id": "pi_integration_test_123", "client_secret": "secret_test_456"},
    )

    response = client.post(
        "/payments/intent",
        json={"webinar_id": course.id, "amount": "49.99", "currency": "usd"}
    )

    assert response.status_code == 200
    assert response.json()["client_secret"] == "secret_test_456"
    sale_id = response.json()["sale_id"]

    sale = db.get(Sale, sale_id)
    assert sale.status == "pending"
    assert sale.payment.gateway_payment_id == "pi_integration_test_123"

    # --- 2. WEBHOOK SUCCESS, DELIVERED TWICE ---
    mocker.patch(
        "stripe.Webhook.construct_event",
        return_value=stripe_event("payment_intent.succeeded", "pi_integration_test_123", sale_id, event_id="evt_test"),
    )

    for _ in range(2):
        webhook_response = client.post(
            "/webhooks/stripe",
            content="raw_stripe_payload",
            headers={"stripe-signature": "test_signature"}
        )
        assert webhook_response.status_code == 200
        assert webhook_response.json() == {"status": "success"}

    db.expire_all()
    sale = db.get(Sale, sale_id)
    assert sale.status == "success"
    assert sale.reference_id == "pi_integration_test_123"
    assert sale.payment.status == "success"
    assert sale.payment.gateway_transaction_id == "ch_1"
    assert db.query(Entitlement).filter_by(buyer_id=BUYER_ID, product_id=course.id).count() == 1
    assert db.query(GatewayEvent).filter_by(event_id="evt_test").count() == 1

    # --- 3. CLIENT CONFIRM AFTER THE WEBHOOK ---
    mocker.patch("stripe.PaymentIntent.retrieve", return_value={
        "id": "pi_integration_test_123",
        "status": "succeeded",
        "latest_charge": "ch_1",
        "metadata": {"sale_id": str(sale_id)},
    })

    confirm_response = client.post(
        "/payments/confirm",
        json={"sale_id": sale_id, "payment_intent_id": "pi_integration_test_123"}
    )

    assert confirm_response.status_code == 200
    assert confirm_response.json()["sale"]["status"] == "success"
    assert db.query(Entitlement).count() == 1

    # --- 4. REFUND ---
    refund = mocker.patch("stripe.Refund.create", return_value={"id": "re_test", "status": "succeeded"})

    refund_response = client.post("/payments/refund", json={"sale_id": sale_id})

    assert refund_response.status_code == 200
    assert refund_response.json()["refund_id"] == "re_test"
    assert refund.call_args.kwargs["payment_intent"] == "pi_integration_test_123"

    db.expire_all()
    final_sale = db.get(Sale, sale_id)
    assert final_sale.status == "refunded"
    assert final_sale.payment.status == "refunded"
    assert final_sale.payment.gateway_refund_id == "re_test"

    # a late success delivery cannot resurrect the sale
    mocker.patch(
        "stripe.Webhook.construct_event",
        return_value=stripe_event("payment_intent.succeeded", "pi_integration_test_123", sale_id, event_id="evt_late"),
    )
    late_response = client.post("/webhooks/stripe", content="raw", headers={"stripe-signature": "sig"})

    assert late_response.status_code == 200
    db.expire_all()
    assert db.get(Sale, sale_id).status == "refunded"


def test_webhook_non_existent_payment(client, db, mocker):
    """Events for sales we don't know are acknowledged and leave no trace."""
    mocker.patch(
        "stripe.Webhook.construct_event",
        return_value=stripe_event("payment_intent.succeeded", "pi_unknown", sale_id=424242),
    )

    response = client.post("/webhooks/stripe", content="raw", headers={"stripe-signature": "test"})

    assert response.status_code == 200
    assert response.json() == {"status": "success"}
    assert db.query(Sale).count() == 0
    assert db.query(GatewayEvent).count() == 0


def test_charge_refunded_webhook_correlates_by_intent(client, recon, course, db, mocker):
    sale = open_sale(recon, course, intent_id="pi_dash")
    mocker.patch(
        "stripe.Webhook.construct_event",
        return_value=stripe_event("payment_intent.succeeded", "pi_dash", sale.id),
    )
    client.post("/webhooks/stripe", content="raw", headers={"stripe-signature": "sig"})

    # refunded from the Stripe dashboard
    mocker.patch("stripe.Webhook.construct_event", return_value=stripe_charge_refunded("pi_dash"))
    response = client.post("/webhooks/stripe", content="raw", headers={"stripe-signature": "sig"})

    assert response.status_code == 200
    assert db.get(Sale, sale.id).status == "refunded"
    assert db.query(Payment).filter_by(sale_id=sale.id).one().status == "refunded"


def test_mercadopago_webhook_lifecycle(client, recon, course, db, mp_sdk):
    sale = open_sale(recon, course, intent_id="pref_1", gateway="mercadopago")
    mp_sdk.payment.return_value.get.return_value = {
        "status": 200,
        "response": {"id": 999, "status": "approved", "external_reference": str(sale.id)},
    }
    body, headers = mercadopago_notification(payment_id="999")

    response = client.post("/webhooks/mercadopago", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"status": "success"}
    mp_sdk.payment.return_value.get.assert_called_with("999")
    settled = db.get(Sale, sale.id)
    assert settled.status == "success"
    payment = db.query(Payment).filter_by(sale_id=sale.id).one()
    assert payment.gateway_payment_id == "pref_1"
    assert payment.gateway_transaction_id == "999"
    assert db.query(Entitlement).count() == 1

    mp_sdk.refund.return_value.create.return_value = {"status": 201, "response": {"id": 55, "status": "approved"}}
    refund_response = client.post("/payments/refund", json={"sale_id": sale.id})

    assert refund_response.status_code == 200
    assert refund_response.json()["refund_id"] == "55"
    assert mp_sdk.refund.return_value.create.call_args.args[0] == "999"


def test_mercadopago_webhook_bad_signature(client, recon, course, db, mp_sdk):
    sale = open_sale(recon, course, intent_id="pref_1", gateway="mercadopago")
    body, headers = mercadopago_notification(payment_id="999", secret="wrong-secret")

    response = client.post("/webhooks/mercadopago", content=body, headers=headers)

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid signature"}
    assert mp_sdk.payment.return_value.get.call_count == 0
    assert db.get(Sale, sale.id).status == "pending"


def test_refund_webhook_before_success_is_redelivered(client, recon, course, db, mocker):
    sale = open_sale(recon, course, intent_id="pi_early")
    refund_event = stripe_charge_refunded("pi_early", event_id="evt_refund")
    success_event = stripe_event("payment_intent.succeeded", "pi_early", sale.id, event_id="evt_ok")
    construct = mocker.patch("stripe.Webhook.construct_event")

    statuses = []
    for event in (refund_event, success_event, refund_event):
        construct.return_value = event
        response = client.post("/webhooks/stripe", content="raw", headers={"stripe-signature": "sig"})
        statuses.append(response.status_code)

    # the early refund is refused so Stripe retries it
    assert statuses == [409, 200, 200]
    db.expire_all()
    settled = db.get(Sale, sale.id)
    assert settled.status == "refunded"
    assert settled.payment.status == "refunded"
    assert db.query(GatewayEvent).filter_by(event_id="evt_refund").one().result == "applied"


def test_mercadopago_return_url_confirms_payment(client, recon, course, db, mp_sdk):
    sale = open_sale(recon, course, intent_id="pref_1", gateway="mercadopago")
    mp_sdk.payment.return_value.get.return_value = {
        "status": 200,
        "response": {"id": 999, "status": "approved", "external_reference": str(sale.id)},
    }

    response = client.get(
        "/payments/verify/mercadopago",
        params={"status": "approved", "payment_id": "999", "external_reference": sale.id},
    )

    assert response.status_code == 200
    assert response.json()["sale"]["status"] == "success"
    mp_sdk.payment.return_value.get.assert_called_with("999")
    assert db.query(Entitlement).filter_by(buyer_id=BUYER_ID, product_id=course.id).count() == 1


def test_mercadopago_return_url_without_payment(client, recon, course, db, mp_sdk):
    sale = open_sale(recon, course, intent_id="pref_1", gateway="mercadopago")

    response = client.get(
        "/payments/verify/mercadopago",
        params={"status": "null", "payment_id": "null", "external_reference": sale.id},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Payment not completed", "status": "null"}
    assert mp_sdk.payment.return_value.get.call_count == 0
    assert db.get(Sale, sale.id).status == "pending"
