import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import stripe

from coursepay.errors import GatewayError, SignatureError
from coursepay.gateways.base import (
    CheckoutRequest,
    GatewayIds,
    InboundEvent,
    IntentHandle,
    Outcome,
    PaymentSnapshot,
    RefundReceipt,
    plain,
)

logger = logging.getLogger(__name__)

EVENT_OUTCOMES = {
    "payment_intent.succeeded": Outcome.SUCCESS,
    "payment_intent.canceled": Outcome.FAILED,
    "charge.refunded": Outcome.REFUNDED,
}

# a declined attempt leaves the intent open for another card
DECLINED_EVENT = "payment_intent.payment_failed"

INTENT_OUTCOMES = {
    "succeeded": Outcome.SUCCESS,
    "canceled": Outcome.FAILED,
}


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def _charge_id(intent: Dict[str, Any]) -> Optional[str]:
    charge = intent.get("latest_charge")
    if isinstance(charge, str):
        return charge
    if charge:
        return plain(charge).get("id")
    return None


class StripeGateway:
    name = "stripe"

    def __init__(self, secret_key: str, webhook_secret: str):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def payment_request(self, checkout: CheckoutRequest) -> IntentHandle:
        params = {
            "amount": to_minor_units(checkout.amount),
            "currency": checkout.currency,
            "metadata": checkout.metadata,
            "automatic_payment_methods": {"enabled": True},
            "api_key": self.secret_key,
        }
        if checkout.idempotency_key:
            params["idempotency_key"] = checkout.idempotency_key

        try:
            intent = plain(stripe.PaymentIntent.create(**params))
        except stripe.StripeError as e:
            logger.error(f"Stripe payment intent error for sale {checkout.sale_id}: {e}")
            raise GatewayError("Failed to create payment intent")

        return IntentHandle(payment_id=intent["id"], client_secret=intent.get("client_secret"))

    def verify_event(self, payload: bytes, headers: Mapping[str, str]) -> InboundEvent:
        signature = headers.get("stripe-signature")
        if not payload or not signature:
            raise SignatureError("Missing payload or signature")
        if not self.webhook_secret:
            raise GatewayError("Stripe webhook secret not configured")

        try:
            event = plain(stripe.Webhook.construct_event(payload, signature, self.webhook_secret))
        except ValueError:
            raise SignatureError("Invalid payload")
        except stripe.SignatureVerificationError as e:
            logger.error(f"Stripe webhook signature verification failed: {e}")
            raise SignatureError("Invalid signature")

        event_type = event.get("type", "")
        obj = plain(event.get("data", {}).get("object"))
        outcome = EVENT_OUTCOMES.get(event_type)
        if event_type == DECLINED_EVENT:
            error = plain(obj.get("last_payment_error"))
            return InboundEvent(
                event_id=event.get("id"),
                event_type=event_type,
                transaction_ref=plain(obj.get("metadata")).get("sale_id"),
                ids=GatewayIds(payment_id=obj.get("id")),
                failure_reason=error.get("message") or "Payment failed at gateway",
            )
        if outcome is None:
            return InboundEvent(event_id=event.get("id"), event_type=event_type)

        if event_type.startswith("charge."):
            # charges don't inherit the intent's metadata, correlate through the intent id
            ids = GatewayIds(payment_id=obj.get("payment_intent"), transaction_id=obj.get("id"))
        else:
            ids = GatewayIds(payment_id=obj.get("id"), transaction_id=_charge_id(obj))

        metadata = plain(obj.get("metadata"))
        return InboundEvent(
            event_id=event.get("id"),
            event_type=event_type,
            transaction_ref=metadata.get("sale_id"),
            outcome=outcome,
            ids=ids,
        )

    def fetch_payment(self, reference: str) -> PaymentSnapshot:
        try:
            intent = plain(stripe.PaymentIntent.retrieve(reference, api_key=self.secret_key))
        except stripe.StripeError as e:
            logger.error(f"Stripe payment intent retrieve failed for {reference}: {e}")
            raise GatewayError("Failed to retrieve payment intent")

        status = intent.get("status", "")
        return PaymentSnapshot(
            reference=intent.get("id", reference),
            transaction_ref=plain(intent.get("metadata")).get("sale_id"),
            outcome=INTENT_OUTCOMES.get(status),
            raw_status=status,
            ids=GatewayIds(payment_id=intent.get("id", reference), transaction_id=_charge_id(intent)),
        )

    def refund(self, ids: GatewayIds, amount: Optional[Decimal] = None) -> RefundReceipt:
        params = {"payment_intent": ids.payment_id, "api_key": self.secret_key}
        if amount is not None:
            params["amount"] = to_minor_units(amount)

        try:
            refund = plain(stripe.Refund.create(**params))
        except stripe.StripeError as e:
            logger.error(f"Stripe refund error for {ids.payment_id}: {e}")
            raise GatewayError("Failed to process refund")

        return RefundReceipt(refund_id=refund.get("id", ""), status=refund.get("status", ""))
