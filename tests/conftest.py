import os

# Point the app at SQLite and keep real provider keys out of the test run
# before anything from the package is imported.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["PAYPAL_CLIENT_ID"] = ""
os.environ["PAYPAL_CLIENT_SECRET"] = ""

import itertools
from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe
from fastapi import HTTPException
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storefront.checkout import get_optional_paypal_client, get_optional_stripe_gateway
from storefront.database import get_db
from storefront.main import app
from storefront.models import Base, Coupon, Product, ProductVariant
from storefront.paypal_client import get_paypal_client
from storefront.pricing import round_money, to_minor_units
from storefront.stripe_gateway import get_stripe_gateway

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeStripe:
    """Stands in for StripeGateway; keeps intents in memory."""

    currency = "usd"

    def __init__(self):
        self.intents = {}
        self.created_intents = []
        self.created_sessions = []
        self.payment_methods = {}
        self.sessions = {}
        self.fail_with = None
        self._ids = itertools.count(1)

    def add_intent(self, intent_id, status="succeeded", amount=5500, metadata=None):
        # 5500 cents matches the total of checkout_payload()
        intent = SimpleNamespace(
            id=intent_id,
            status=status,
            amount=amount,
            currency="usd",
            client_secret=f"{intent_id}_secret_test",
            payment_method="pm_card_visa",
            metadata=metadata or {},
        )
        self.intents[intent_id] = intent
        return intent

    def create_payment_intent(self, **kwargs):
        if self.fail_with is not None:
            raise self.fail_with
        self.created_intents.append(kwargs)
        status = "succeeded" if kwargs.get("payment_method_id") else "requires_payment_method"
        return self.add_intent(
            f"pi_test_{next(self._ids)}",
            status=status,
            amount=to_minor_units(kwargs["amount"]),
            metadata=kwargs.get("metadata"),
        )

    def retrieve_payment_intent(self, payment_intent_id):
        if payment_intent_id not in self.intents:
            raise stripe.InvalidRequestError(f"No such payment_intent: '{payment_intent_id}'", "id")
        return self.intents[payment_intent_id]

    def retrieve_payment_method(self, payment_method_id):
        if payment_method_id not in self.payment_methods:
            raise stripe.InvalidRequestError(f"No such PaymentMethod: '{payment_method_id}'", "id")
        return self.payment_methods[payment_method_id]

    def create_checkout_session(self, **kwargs):
        self.created_sessions.append(kwargs)
        session_id = f"cs_test_{next(self._ids)}"
        session = SimpleNamespace(
            id=session_id,
            url=f"https://checkout.stripe.com/c/pay/{session_id}",
            status="open",
            payment_status="unpaid",
            amount_total=None,
            currency=self.currency,
            customer_email=kwargs.get("email"),
            payment_intent=None,
            metadata=kwargs.get("metadata") or {},
        )
        self.sessions[session_id] = session
        return session

    def retrieve_checkout_session(self, session_id):
        if session_id not in self.sessions:
            raise stripe.InvalidRequestError(f"No such checkout.session: '{session_id}'", "id")
        return self.sessions[session_id]


class FakePayPal:
    """Stands in for PayPalClient."""

    def __init__(self):
        self.captures = {}
        self.order_amounts = {}
        self.created_orders = []
        self.captured_orders = []

    def add_capture(self, capture_id, status="COMPLETED", value="55.00", order_id=None):
        capture = {
            "id": capture_id,
            "status": status,
            "amount": {"currency_code": "USD", "value": value},
            "supplementary_data": {"related_ids": {"order_id": order_id}},
        }
        self.captures[capture_id] = capture
        return capture

    def create_order(self, **kwargs):
        self.created_orders.append(kwargs)
        order_id = f"PP-ORDER-{len(self.created_orders)}"
        self.order_amounts[order_id] = f"{round_money(kwargs['amount']):.2f}"
        return {
            "id": order_id,
            "status": "CREATED",
            "links": [
                {"rel": "self", "href": f"https://api.paypal.test/v2/checkout/orders/{order_id}"},
                {"rel": "approve", "href": f"https://www.paypal.test/checkoutnow?token={order_id}"},
            ],
        }

    def get_order(self, order_id):
        return {
            "id": order_id,
            "status": "APPROVED",
            "purchase_units": [{"amount": {"currency_code": "USD", "value": "42.00"}}],
            "payer": {"email_address": "buyer@example.com"},
        }

    def capture_order(self, order_id):
        self.captured_orders.append(order_id)
        capture = self.add_capture(
            f"CAP-{order_id}",
            value=self.order_amounts.get(order_id, "42.00"),
            order_id=order_id,
        )
        return {
            "id": order_id,
            "status": "COMPLETED",
            "purchase_units": [{"payments": {"captures": [capture]}}],
        }

    def get_capture(self, capture_id):
        if capture_id not in self.captures:
            raise HTTPException(status_code=400, detail="Error retrieving PayPal capture")
        return self.captures[capture_id]


@pytest.fixture
def db_session():
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def fake_stripe():
    return FakeStripe()


@pytest.fixture
def fake_paypal():
    return FakePayPal()


@pytest.fixture
def client(db_session, fake_stripe, fake_paypal):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_gateway] = lambda: fake_stripe
    app.dependency_overrides[get_optional_stripe_gateway] = lambda: fake_stripe
    app.dependency_overrides[get_paypal_client] = lambda: fake_paypal
    app.dependency_overrides[get_optional_paypal_client] = lambda: fake_paypal
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_variant(db_session):
    def _make(stock, color="Black", size="M", price="25.00"):
        product = Product(name=f"Tee {color} {size}", price=Decimal(price))
        db_session.add(product)
        db_session.flush()
        variant = ProductVariant(product_id=product.id, color=color, size=size, stock=stock)
        db_session.add(variant)
        db_session.commit()
        return variant

    return _make


@pytest.fixture
def make_coupon(db_session):
    def _make(code, discount_type="percentage", discount_value="10", **kwargs):
        coupon = Coupon(
            code=code,
            discount_type=discount_type,
            discount_value=Decimal(str(discount_value)),
            **kwargs,
        )
        db_session.add(coupon)
        db_session.commit()
        return coupon

    return _make


def checkout_payload(user_id="user-1", items=(), **overrides):
    payload = {
        "userId": user_id,
        "items": list(items),
        "shippingAddress": {
            "name": "Ana Gomez",
            "phone": "3001234567",
            "street": "Calle 10 # 5-20",
            "city": "Bogota",
            "state": "Cundinamarca",
            "postal_code": "110111",
            "country": "CO",
        },
        "subtotal": 50,
        "shipping": 5,
        "tax": 0,
        "total": 55,
        "couponDiscount": 0,
    }
    payload.update(overrides)
    return payload


def cart_item(variant, quantity, price=25):
    return {
        "id": variant.product_id,
        "variant_id": variant.id,
        "quantity": quantity,
        "price": price,
        "size": variant.size,
        "color": variant.color,
    }
