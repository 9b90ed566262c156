from decimal import Decimal

import stripe

from conftest import cart_item, checkout_payload
from storefront.checkout import get_optional_stripe_gateway
from storefront.main import app
from storefront.models import Order, StockReservation


def _stock(db_session, variant):
    db_session.expire_all()
    return variant.stock


def test_card_checkout_creates_pending_order_and_intent(client, db_session, make_variant, fake_stripe):
    variant = make_variant(stock=5)

    resp = client.post("/api/checkout", json=checkout_payload(items=[cart_item(variant, 2)]))

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["status"] == "pending"
    assert body["paymentIntentId"] == "pi_test_1"
    assert body["clientSecret"] == "pi_test_1_secret_test"

    order = db_session.query(Order).one()
    assert order.id == body["orderId"]
    assert order.status == "pending"
    assert order.payment_method == "stripe"
    assert order.payment_intent_id == "pi_test_1"

    sent = fake_stripe.created_intents[0]
    assert sent["amount"] == Decimal("55")
    assert sent["metadata"]["orderId"] == order.id
    assert sent["payment_method_id"] is None
    assert _stock(db_session, variant) == 5


def test_saved_card_is_charged_immediately(client, db_session, make_variant, fake_stripe):
    variant = make_variant(stock=5)
    payload = checkout_payload(
        items=[cart_item(variant, 2)],
        paymentMethod={"type": "card", "savedMethodId": "pm_saved"},
    )

    resp = client.post("/api/checkout", json=payload)

    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "paid"
    assert fake_stripe.created_intents[0]["payment_method_id"] == "pm_saved"
    db_session.expire_all()
    order = db_session.query(Order).one()
    assert order.status == "paid"
    assert order.payment_status == "completed"
    assert _stock(db_session, variant) == 3


def test_paypal_checkout_returns_approval_url(client, db_session, make_variant, fake_paypal):
    variant = make_variant(stock=5)
    payload = checkout_payload(items=[cart_item(variant, 1)], paymentMethod={"type": "paypal"})

    resp = client.post("/api/checkout", json=payload)

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["paymentIntentId"] == "PP-ORDER-1"
    assert body["approvalUrl"] == "https://www.paypal.test/checkoutnow?token=PP-ORDER-1"
    assert fake_paypal.created_orders[0]["reference_id"] == body["orderId"]
    order = db_session.query(Order).one()
    assert order.payment_method == "paypal"
    assert order.status == "pending"


def test_declined_card_marks_order_failed(client, db_session, make_variant, fake_stripe):
    variant = make_variant(stock=5)
    fake_stripe.fail_with = stripe.CardError("Your card was declined.", None, "card_declined")

    resp = client.post("/api/checkout", json=checkout_payload(items=[cart_item(variant, 1)]))

    assert resp.status_code == 400
    db_session.expire_all()
    order = db_session.query(Order).one()
    assert order.status == "failed"
    assert order.payment_status == "failed"


def test_checkout_rejects_bad_input(client, make_variant):
    variant = make_variant(stock=5)
    items = [cart_item(variant, 1)]

    resp = client.post("/api/checkout", json=checkout_payload(items=items, paymentMethod={"type": "crypto"}))
    assert resp.status_code == 400
    assert resp.json()["error"] == "Unsupported payment method"

    resp = client.post("/api/checkout", json=checkout_payload(items=items, total=0))
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid order total"

    payload = checkout_payload(items=items)
    payload["shippingAddress"]["street"] = ""
    resp = client.post("/api/checkout", json=payload)
    assert resp.status_code == 400
    assert resp.json()["error"] == "Shipping address is incomplete"


def test_checkout_without_stripe_configured(client, db_session, make_variant):
    variant = make_variant(stock=5)
    app.dependency_overrides[get_optional_stripe_gateway] = lambda: None

    resp = client.post("/api/checkout", json=checkout_payload(items=[cart_item(variant, 1)]))

    assert resp.status_code == 500
    assert resp.json()["error"] == "Stripe is not configured. Set STRIPE_SECRET_KEY."
    assert db_session.query(Order).count() == 0


def test_confirm_stripe_payment_creates_paid_order(client, db_session, make_variant, fake_stripe):
    variant = make_variant(stock=5)
    fake_stripe.add_intent("pi_paid", status="succeeded", amount=5500)
    body = {"paymentIntentId": "pi_paid", "checkoutData": checkout_payload(items=[cart_item(variant, 2)])}

    resp = client.post("/api/checkout/confirm-stripe-payment", json=body)

    assert resp.status_code == 200, resp.text
    assert resp.json()["success"] is True
    db_session.expire_all()
    order = db_session.query(Order).one()
    assert order.id == resp.json()["orderId"]
    assert order.status == "paid"
    assert order.payment_intent_id == "pi_paid"
    assert _stock(db_session, variant) == 3


def test_confirm_stripe_payment_is_idempotent(client, db_session, make_variant, fake_stripe):
    variant = make_variant(stock=5)
    fake_stripe.add_intent("pi_paid")
    body = {"paymentIntentId": "pi_paid", "checkoutData": checkout_payload(items=[cart_item(variant, 2)])}

    first = client.post("/api/checkout/confirm-stripe-payment", json=body)
    second = client.post("/api/checkout/confirm-stripe-payment", json=body)

    assert first.status_code == 200
    assert second.status_code == 200
    assert first.json()["orderId"] == second.json()["orderId"]
    assert db_session.query(Order).count() == 1
    assert _stock(db_session, variant) == 3


def test_confirm_stripe_payment_refuses_unfinished_intent(client, db_session, make_variant, fake_stripe):
    variant = make_variant(stock=5)
    fake_stripe.add_intent("pi_slow", status="processing")
    body = {"paymentIntentId": "pi_slow", "checkoutData": checkout_payload(items=[cart_item(variant, 1)])}

    resp = client.post("/api/checkout/confirm-stripe-payment", json=body)

    assert resp.status_code == 400
    assert resp.json()["error"] == "Payment not completed. Status: processing"
    assert db_session.query(Order).count() == 0


def test_confirm_stripe_payment_unknown_intent(client, make_variant):
    variant = make_variant(stock=5)
    body = {"paymentIntentId": "pi_missing", "checkoutData": checkout_payload(items=[cart_item(variant, 1)])}

    resp = client.post("/api/checkout/confirm-stripe-payment", json=body)

    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid request. Please check your payment details."


def test_paid_order_floors_stock_at_zero(client, db_session, make_variant, fake_stripe):
    variant = make_variant(stock=3)
    fake_stripe.add_intent("pi_paid")
    body = {"paymentIntentId": "pi_paid", "checkoutData": checkout_payload(items=[cart_item(variant, 5)])}

    resp = client.post("/api/checkout/confirm-stripe-payment", json=body)

    assert resp.status_code == 200
    assert _stock(db_session, variant) == 0


def test_paid_order_releases_reservations(client, db_session, make_variant, fake_stripe):
    variant = make_variant(stock=5)
    item = cart_item(variant, 2)
    reserve = client.post("/api/inventory/reserve", json={"userId": "user-1", "items": [item]})
    assert reserve.status_code == 200
    fake_stripe.add_intent("pi_paid")

    resp = client.post(
        "/api/checkout/confirm-stripe-payment",
        json={"paymentIntentId": "pi_paid", "checkoutData": checkout_payload(items=[item])},
    )

    assert resp.status_code == 200
    assert db_session.query(StockReservation).count() == 0


def test_confirm_paypal_payment_creates_paid_order(client, db_session, make_variant, fake_paypal):
    variant = make_variant(stock=5)
    fake_paypal.add_capture("CAP-1")
    body = {
        "paymentData": {"status": "COMPLETED", "transactionId": "CAP-1", "payerId": "PAYER"},
        "checkoutData": checkout_payload(items=[cart_item(variant, 1)]),
    }

    resp = client.post("/api/checkout/confirm-paypal-payment", json=body)

    assert resp.status_code == 200, resp.text
    assert resp.json()["transactionId"] == "CAP-1"
    db_session.expire_all()
    order = db_session.query(Order).one()
    assert order.payment_method == "paypal"
    assert order.status == "paid"
    assert order.payment_intent_id == "CAP-1"
    assert _stock(db_session, variant) == 4


def test_confirm_paypal_payment_refuses_relayed_status(client, db_session, make_variant):
    variant = make_variant(stock=5)
    body = {
        "paymentData": {"status": "PENDING", "transactionId": "CAP-1"},
        "checkoutData": checkout_payload(items=[cart_item(variant, 1)]),
    }

    resp = client.post("/api/checkout/confirm-paypal-payment", json=body)

    assert resp.status_code == 400
    assert resp.json()["error"] == "Payment not completed. Status: PENDING"
    assert db_session.query(Order).count() == 0


def test_confirm_paypal_payment_rechecks_capture(client, db_session, make_variant, fake_paypal):
    variant = make_variant(stock=5)
    fake_paypal.add_capture("CAP-2", status="PENDING")
    body = {
        "paymentData": {"status": "COMPLETED", "transactionId": "CAP-2"},
        "checkoutData": checkout_payload(items=[cart_item(variant, 1)]),
    }

    resp = client.post("/api/checkout/confirm-paypal-payment", json=body)

    assert resp.status_code == 400
    assert resp.json()["error"] == "PayPal capture not completed. Status: PENDING"
    assert db_session.query(Order).count() == 0


def test_confirm_paypal_payment_for_pending_order(client, db_session, make_variant, fake_paypal):
    variant = make_variant(stock=5)
    payload = checkout_payload(items=[cart_item(variant, 2)], paymentMethod={"type": "paypal"})
    order_id = client.post("/api/checkout", json=payload).json()["orderId"]
    capture_id = fake_paypal.capture_order("PP-ORDER-1")["purchase_units"][0]["payments"]["captures"][0]["id"]

    resp = client.post(
        "/api/checkout/confirm-paypal-payment",
        json={"orderId": order_id, "paymentData": {"status": "COMPLETED", "transactionId": capture_id}},
    )

    assert resp.status_code == 200, resp.text
    assert resp.json()["orderId"] == order_id
    db_session.expire_all()
    order = db_session.get(Order, order_id)
    assert order.status == "paid"
    assert order.payment_intent_id == capture_id
    assert _stock(db_session, variant) == 3


def _paypal_pending_order(client, variant, quantity=1):
    payload = checkout_payload(items=[cart_item(variant, quantity)], paymentMethod={"type": "paypal"})
    resp = client.post("/api/checkout", json=payload)
    assert resp.status_code == 200, resp.text
    return resp.json()


def _confirm_paypal_order(client, order_id, capture_id):
    return client.post(
        "/api/checkout/confirm-paypal-payment",
        json={"orderId": order_id, "paymentData": {"status": "COMPLETED", "transactionId": capture_id}},
    )


def test_one_capture_cannot_pay_two_orders(client, db_session, make_variant, fake_paypal):
    variant = make_variant(stock=5)
    first = _paypal_pending_order(client, variant)
    second = _paypal_pending_order(client, variant)
    capture = fake_paypal.capture_order(first["paymentIntentId"])["purchase_units"][0]["payments"]["captures"][0]

    assert _confirm_paypal_order(client, first["orderId"], capture["id"]).status_code == 200
    resp = _confirm_paypal_order(client, second["orderId"], capture["id"])

    assert resp.status_code == 409
    assert resp.json()["error"] == "Payment is already recorded on another order"
    db_session.expire_all()
    assert db_session.query(Order).filter(Order.status == "paid").count() == 1
    assert db_session.get(Order, second["orderId"]).status == "pending"
    assert _stock(db_session, variant) == 4


def test_confirming_the_same_capture_again_is_harmless(client, db_session, make_variant, fake_paypal):
    variant = make_variant(stock=5)
    order = _paypal_pending_order(client, variant)
    capture_id = fake_paypal.capture_order(order["paymentIntentId"])["purchase_units"][0]["payments"]["captures"][0]["id"]

    first = _confirm_paypal_order(client, order["orderId"], capture_id)
    second = _confirm_paypal_order(client, order["orderId"], capture_id)

    assert first.status_code == 200
    assert second.status_code == 200
    assert _stock(db_session, variant) == 4


def test_capture_of_another_paypal_order_is_refused(client, db_session, make_variant, fake_paypal):
    variant = make_variant(stock=5)
    first = _paypal_pending_order(client, variant)
    second = _paypal_pending_order(client, variant)
    capture_id = fake_paypal.capture_order(first["paymentIntentId"])["purchase_units"][0]["payments"]["captures"][0]["id"]

    resp = _confirm_paypal_order(client, second["orderId"], capture_id)

    assert resp.status_code == 400
    assert resp.json()["error"] == "PayPal capture does not belong to this order"
    db_session.expire_all()
    assert db_session.get(Order, second["orderId"]).status == "pending"


def test_capture_amount_must_match_pending_order(client, db_session, make_variant, fake_paypal):
    variant = make_variant(stock=5)
    order = _paypal_pending_order(client, variant)
    fake_paypal.add_capture("CAP-LOW", value="1.00", order_id=order["paymentIntentId"])

    resp = _confirm_paypal_order(client, order["orderId"], "CAP-LOW")

    assert resp.status_code == 400
    assert resp.json()["error"] == "PayPal capture amount does not match the order total"
    db_session.expire_all()
    assert db_session.get(Order, order["orderId"]).status == "pending"


def test_capture_amount_must_match_checkout_total(client, db_session, make_variant, fake_paypal):
    variant = make_variant(stock=5)
    fake_paypal.add_capture("CAP-LOW", value="1.00")
    body = {
        "paymentData": {"status": "COMPLETED", "transactionId": "CAP-LOW"},
        "checkoutData": checkout_payload(items=[cart_item(variant, 1)]),
    }

    resp = client.post("/api/checkout/confirm-paypal-payment", json=body)

    assert resp.status_code == 400
    assert resp.json()["error"] == "PayPal capture amount does not match the order total"
    assert db_session.query(Order).count() == 0


def test_card_order_is_not_confirmed_by_paypal(client, db_session, make_variant, fake_paypal):
    variant = make_variant(stock=5)
    resp = client.post("/api/orders/create-pending", json=checkout_payload(items=[cart_item(variant, 1)]))
    order_id = resp.json()["orderId"]
    fake_paypal.add_capture("CAP-1")

    resp = _confirm_paypal_order(client, order_id, "CAP-1")

    assert resp.status_code == 400
    assert resp.json()["error"] == "Order is not a PayPal order"


def test_confirm_stripe_payment_amount_must_match(client, db_session, make_variant, fake_stripe):
    variant = make_variant(stock=5)
    fake_stripe.add_intent("pi_cheap", amount=100)
    body = {"paymentIntentId": "pi_cheap", "checkoutData": checkout_payload(items=[cart_item(variant, 1)])}

    resp = client.post("/api/checkout/confirm-stripe-payment", json=body)

    assert resp.status_code == 400
    assert resp.json()["error"] == "Payment amount does not match the order total"
    assert db_session.query(Order).count() == 0


def test_payment_method_given_as_string(client, db_session, make_variant):
    variant = make_variant(stock=5)

    resp = client.post(
        "/api/checkout",
        json=checkout_payload(items=[cart_item(variant, 1)], paymentMethod="paypal"),
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["approvalUrl"] == "https://www.paypal.test/checkoutnow?token=PP-ORDER-1"

    resp = client.post(
        "/api/checkout",
        json=checkout_payload(items=[cart_item(variant, 1)], paymentMethod="stripe"),
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["clientSecret"] == "pi_test_1_secret_test"
    methods = {o.payment_method for o in db_session.query(Order).all()}
    assert methods == {"paypal", "stripe"}
