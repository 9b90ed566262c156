"""
Checkout orchestration: validate the cart, create the pending order, hand the
charge to Stripe or PayPal, and confirm the order once the provider reports
success.

Each step is its own database round trip; the only cross-step guarantees are
the conditional updates in ``crud`` (pending -> paid, floored stock decrement).
"""
import logging
from typing import Any, Dict, Optional

import stripe
from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session

from . import crud
from .config import Settings, get_settings
from .database import get_db
from .models import Order
from .paypal_client import PayPalClient, approval_url
from .pricing import Number, round_money, to_minor_units
from .schemas import CheckoutData, PayPalPaymentData
from .stripe_gateway import StripeGateway, stripe_error_to_http

logger = logging.getLogger(__name__)

STRIPE_SUCCEEDED = "succeeded"
PAYPAL_COMPLETED = "COMPLETED"

PAYMENT_TYPES = {"card": "stripe", "paypal": "paypal"}


class CheckoutService:
    def __init__(
        self,
        db: Session,
        settings: Settings,
        stripe_gateway: Optional[StripeGateway] = None,
        paypal_client: Optional[PayPalClient] = None,
    ) -> None:
        self.db = db
        self.settings = settings
        self.stripe = stripe_gateway
        self.paypal = paypal_client

    # -----------------------------
    # Providers
    # -----------------------------

    def _require_stripe(self) -> StripeGateway:
        if self.stripe is None:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Stripe is not configured. Set STRIPE_SECRET_KEY.",
            )
        return self.stripe

    def _require_paypal(self) -> PayPalClient:
        if self.paypal is None:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="PayPal is not configured. Set PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET.",
            )
        return self.paypal

    def _retrieve_intent(self, payment_intent_id: str):
        gateway = self._require_stripe()
        try:
            return gateway.retrieve_payment_intent(payment_intent_id)
        except stripe.StripeError as e:
            logger.warning("Could not retrieve PaymentIntent %s: %s", payment_intent_id, e)
            raise stripe_error_to_http(e)

    # -----------------------------
    # Payment matching
    # -----------------------------

    def _check_reference_unused(self, reference: str, order_id: str) -> None:
        existing = crud.get_order_by_payment_reference(self.db, reference)
        if existing is not None and existing.id != order_id:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Payment is already recorded on another order",
            )

    @staticmethod
    def _check_intent_matches(intent, total: Number, order_id: Optional[str] = None) -> None:
        metadata = getattr(intent, "metadata", None) or {}
        intent_order_id = metadata.get("orderId")
        if order_id and intent_order_id and intent_order_id != order_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Payment does not belong to this order",
            )
        if intent.amount != to_minor_units(total):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Payment amount does not match the order total",
            )

    @staticmethod
    def _check_capture_matches(
        capture: Dict[str, Any], total: Number, paypal_order_id: Optional[str] = None
    ) -> None:
        related_ids = (capture.get("supplementary_data") or {}).get("related_ids") or {}
        if paypal_order_id and related_ids.get("order_id") != paypal_order_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="PayPal capture does not belong to this order",
            )
        value = (capture.get("amount") or {}).get("value")
        if value is None or round_money(value) != round_money(total):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="PayPal capture amount does not match the order total",
            )

    # -----------------------------
    # Validation
    # -----------------------------

    @staticmethod
    def require_cart(data: CheckoutData) -> None:
        if not data.user_id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not authenticated")
        if not data.items:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Your cart is empty")

    def validate(self, data: CheckoutData) -> None:
        self.require_cart(data)

        if data.total <= 0:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid order total")

        address = data.shipping_address
        if not (address.street and address.city and address.postal_code):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Shipping address is incomplete")

        self.validate_stock(data)

    def validate_stock(self, data: CheckoutData) -> None:
        try:
            crud.validate_stock(self.db, data.items)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    # -----------------------------
    # Orders
    # -----------------------------

    def create_pending_order(self, data: CheckoutData, payment_method: str = "stripe") -> Order:
        """Validate stock for every item, then insert the order and its items."""
        self.require_cart(data)
        self.validate_stock(data)

        order = crud.create_order(
            self.db,
            data,
            status="pending",
            payment_status="pending",
            payment_method=payment_method,
        )
        logger.info("Created pending order %s (%s) for user %s", order.id, order.order_number, order.user_id)
        return order

    def _after_payment(self, order: Order) -> None:
        failed = crud.decrement_stock_for_order(self.db, order)
        if failed:
            logger.error("Order %s is paid but stock was not updated for variants %s", order.id, failed)
        try:
            crud.release_reservations(self.db, user_id=order.user_id)
        except Exception:
            self.db.rollback()
            logger.exception("Failed to release reservations for user %s", order.user_id)

    def finalize_paid_order(self, order_id: str, payment_reference: str) -> Order:
        if not crud.mark_order_paid(self.db, order_id, payment_reference):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Order was already processed by another request",
            )
        order = crud.get_order(self.db, order_id)
        logger.info("Order %s marked as paid (reference %s)", order_id, payment_reference)
        self._after_payment(order)
        return order

    def create_paid_order(self, data: CheckoutData, payment_reference: str, payment_method: str) -> Order:
        existing = crud.get_order_by_payment_reference(self.db, payment_reference)
        if existing is not None:
            logger.info("Payment %s already recorded on order %s", payment_reference, existing.id)
            return existing

        self.require_cart(data)
        order = crud.create_order(
            self.db,
            data,
            status="paid",
            payment_status="completed",
            payment_method=payment_method,
            payment_intent_id=payment_reference,
        )
        logger.info("Created paid order %s for payment %s", order.id, payment_reference)
        self._after_payment(order)
        return order

    # -----------------------------
    # Flows
    # -----------------------------

    def confirm_order_payment(self, order_id: Optional[str], payment_intent_id: Optional[str]) -> Dict[str, Any]:
        if not order_id or not payment_intent_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Order ID and Payment Intent ID are required",
            )

        order = crud.get_pending_order(self.db, order_id)
        if order is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Order not found or already processed",
            )

        intent = self._retrieve_intent(payment_intent_id)
        if intent.status != STRIPE_SUCCEEDED:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Payment has not been completed successfully",
            )
        self._check_intent_matches(intent, order.total, order_id=order.id)
        self._check_reference_unused(payment_intent_id, order.id)

        self.finalize_paid_order(order.id, payment_intent_id)
        return {
            "success": True,
            "orderId": order_id,
            "paymentIntentId": payment_intent_id,
            "message": "Payment confirmed successfully",
        }

    def process(self, data: CheckoutData) -> Dict[str, Any]:
        """Validate, create a pending order and start the provider payment."""
        if not data.user_id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not authenticated")

        payment_type = (data.payment_method.type if data.payment_method else "card").lower()
        if payment_type not in PAYMENT_TYPES:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported payment method")

        self.validate(data)
        if payment_type == "card":
            gateway = self._require_stripe()
        else:
            paypal = self._require_paypal()

        order = self.create_pending_order(data, payment_method=PAYMENT_TYPES[payment_type])
        try:
            if payment_type == "card":
                return self._start_stripe_payment(gateway, order, data)
            return self._start_paypal_payment(paypal, order, data)
        except stripe.StripeError as e:
            logger.warning("Stripe rejected payment for order %s: %s", order.id, e)
            crud.mark_order_failed(self.db, order.id)
            raise stripe_error_to_http(e)
        except HTTPException:
            logger.warning("Payment provider failed for order %s", order.id)
            crud.mark_order_failed(self.db, order.id)
            raise

    def _start_stripe_payment(self, gateway: StripeGateway, order: Order, data: CheckoutData) -> Dict[str, Any]:
        saved_method_id = data.payment_method.saved_method_id if data.payment_method else None
        intent = gateway.create_payment_intent(
            amount=data.total,
            metadata={
                "orderId": order.id,
                "userId": data.user_id,
                "itemCount": str(len(data.items)),
            },
            payment_method_id=saved_method_id,
            return_url=f"{self.settings.public_base_url}/orden-confirmada",
            description=f"Order {order.order_number}",
        )
        crud.set_payment_reference(self.db, order.id, intent.id)

        order_status = "pending"
        if intent.status == STRIPE_SUCCEEDED:
            self.finalize_paid_order(order.id, intent.id)
            order_status = "paid"

        return {
            "success": True,
            "orderId": order.id,
            "orderNumber": order.order_number,
            "paymentIntentId": intent.id,
            "clientSecret": intent.client_secret,
            "status": order_status,
        }

    def _start_paypal_payment(self, paypal: PayPalClient, order: Order, data: CheckoutData) -> Dict[str, Any]:
        pp_order = paypal.create_order(
            amount=data.total,
            reference_id=order.id,
            return_url=f"{self.settings.public_base_url}/orden-confirmada",
            cancel_url=f"{self.settings.public_base_url}/checkout",
        )
        crud.set_payment_reference(self.db, order.id, pp_order["id"])
        return {
            "success": True,
            "orderId": order.id,
            "orderNumber": order.order_number,
            "paymentIntentId": pp_order["id"],
            "approvalUrl": approval_url(pp_order),
            "status": "pending",
        }

    def confirm_stripe_checkout(
        self, payment_intent_id: Optional[str], data: Optional[CheckoutData]
    ) -> Dict[str, Any]:
        if not payment_intent_id or data is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Payment Intent ID and checkout data are required",
            )

        intent = self._retrieve_intent(payment_intent_id)
        if intent.status != STRIPE_SUCCEEDED:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Payment not completed. Status: {intent.status}",
            )
        logger.info("Stripe confirmed PaymentIntent %s", payment_intent_id)
        self._check_intent_matches(intent, data.total)

        order = self.create_paid_order(data, payment_intent_id, payment_method="stripe")
        return {"success": True, "orderId": order.id, "paymentIntentId": payment_intent_id}

    def confirm_paypal_checkout(
        self,
        payment_data: Optional[PayPalPaymentData],
        data: Optional[CheckoutData],
        order_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if payment_data is None or (data is None and not order_id):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Payment data and checkout data are required",
            )

        if payment_data.status != PAYPAL_COMPLETED:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Payment not completed. Status: {payment_data.status}",
            )
        transaction_id = payment_data.transaction_id
        if not transaction_id:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="PayPal transaction ID is required")

        # The relayed status comes from the browser; re-read the capture from PayPal.
        capture = self._require_paypal().get_capture(transaction_id)
        capture_status = capture.get("status")
        if capture_status != PAYPAL_COMPLETED:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"PayPal capture not completed. Status: {capture_status}",
            )
        logger.info("PayPal confirmed capture %s", transaction_id)

        if order_id:
            order = crud.get_order(self.db, order_id)
            if order is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
            self._check_reference_unused(transaction_id, order.id)
            if order.status == "paid" and order.payment_intent_id == transaction_id:
                logger.info("Capture %s already recorded on order %s", transaction_id, order.id)
            else:
                if order.payment_method != "paypal":
                    raise HTTPException(
                        status_code=status.HTTP_400_BAD_REQUEST,
                        detail="Order is not a PayPal order",
                    )
                # payment_intent_id holds the PayPal order id until the capture replaces it
                self._check_capture_matches(capture, order.total, paypal_order_id=order.payment_intent_id)
                order = self.finalize_paid_order(order_id, transaction_id)
        else:
            self._check_capture_matches(capture, data.total)
            order = self.create_paid_order(data, transaction_id, payment_method="paypal")

        return {"success": True, "orderId": order.id, "transactionId": transaction_id}


def get_optional_stripe_gateway(settings: Settings = Depends(get_settings)) -> Optional[StripeGateway]:
    if not settings.stripe_configured:
        return None
    return StripeGateway(settings.stripe_secret_key, currency=settings.stripe_currency)


def get_optional_paypal_client(settings: Settings = Depends(get_settings)) -> Optional[PayPalClient]:
    if not settings.paypal_configured:
        return None
    return PayPalClient(settings.paypal_client_id, settings.paypal_client_secret, settings.paypal_api_url)


def get_checkout_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    stripe_gateway: Optional[StripeGateway] = Depends(get_optional_stripe_gateway),
    paypal_client: Optional[PayPalClient] = Depends(get_optional_paypal_client),
) -> CheckoutService:
    return CheckoutService(db, settings, stripe_gateway=stripe_gateway, paypal_client=paypal_client)
