import hashlib
import hmac
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import mercadopago

from coursepay.errors import GatewayError, SignatureError
from coursepay.gateways.base import (
    CheckoutRequest,
    GatewayIds,
    InboundEvent,
    IntentHandle,
    Outcome,
    PaymentSnapshot,
    RefundReceipt,
)

logger = logging.getLogger(__name__)

PAYMENT_OUTCOMES = {
    "approved": Outcome.SUCCESS,
    "rejected": Outcome.FAILED,
    "cancelled": Outcome.FAILED,
    "refunded": Outcome.REFUNDED,
    "charged_back": Outcome.REFUNDED,
}


def _parse_signature(header: str) -> Dict[str, str]:
    parts = {}
    for chunk in header.split(","):
        key, _, value = chunk.strip().partition("=")
        if key and value:
            parts[key] = value
    return parts


class MercadoPagoGateway:
    """MercadoPago checkout through hosted preferences.

    The notification body is only trusted for the payment id; the payment
    state is always fetched back from the API.
    """

    name = "mercadopago"

    def __init__(self, access_token: str, public_key: str, webhook_secret: str,
                 callback_base_url: str = "", sdk=None):
        self.public_key = public_key
        self.webhook_secret = webhook_secret
        self.callback_base_url = callback_base_url
        self.sdk = sdk or mercadopago.SDK(access_token)

    def _call(self, response: Dict[str, Any], action: str) -> Dict[str, Any]:
        status = response.get("status", 500)
        if status >= 400:
            logger.error(f"MercadoPago {action} failed with HTTP {status}: {response.get('response')}")
            raise GatewayError(f"Failed to {action}")
        return response.get("response") or {}

    def _callback_urls(self) -> Dict[str, str]:
        url = f"{self.callback_base_url}/payments/verify/mercadopago"
        return {"success": url, "failure": url, "pending": url}

    def payment_request(self, checkout: CheckoutRequest) -> IntentHandle:
        preference_data = {
            "items": [
                {
                    "id": str(checkout.product_id),
                    "title": checkout.product_title,
                    "quantity": 1,
                    "unit_price": float(checkout.amount),
                    "currency_id": checkout.currency.upper(),
                }
            ],
            "external_reference": str(checkout.sale_id),
            "metadata": checkout.metadata,
            "back_urls": self._callback_urls(),
            "auto_return": "approved",
        }

        preference = self._call(self.sdk.preference().create(preference_data), "create preference")
        return IntentHandle(
            payment_id=preference["id"],
            public_key=self.public_key,
            redirect_url=preference.get("init_point"),
        )

    def verify_event(self, payload: bytes, headers: Mapping[str, str]) -> InboundEvent:
        signature = headers.get("x-signature")
        if not payload or not signature:
            raise SignatureError("Missing payload or signature")
        if not self.webhook_secret:
            raise GatewayError("MercadoPago webhook secret not configured")

        try:
            body = json.loads(payload)
        except ValueError:
            raise SignatureError("Invalid payload")
        if not isinstance(body, dict):
            raise SignatureError("Invalid payload")

        data_id = str((body.get("data") or {}).get("id", ""))
        parts = _parse_signature(signature)
        ts, received = parts.get("ts"), parts.get("v1")
        if not ts or not received or not data_id:
            raise SignatureError("Invalid signature")

        manifest = f"id:{data_id};request-id:{headers.get('x-request-id', '')};ts:{ts};"
        expected = hmac.new(self.webhook_secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, received):
            logger.error(f"MercadoPago webhook signature verification failed for {data_id}")
            raise SignatureError("Invalid signature")

        event_type = body.get("type") or body.get("topic") or ""
        event_id = str(body["id"]) if body.get("id") is not None else None
        if event_type != "payment":
            return InboundEvent(event_id=event_id, event_type=event_type)

        snapshot = self.fetch_payment(data_id)
        return InboundEvent(
            event_id=event_id,
            event_type=f"payment.{snapshot.raw_status}",
            transaction_ref=snapshot.transaction_ref,
            outcome=snapshot.outcome,
            ids=snapshot.ids,
        )

    def fetch_payment(self, reference: str) -> PaymentSnapshot:
        payment = self._call(self.sdk.payment().get(reference), "retrieve payment")
        status = payment.get("status", "")
        return PaymentSnapshot(
            reference=str(payment.get("id", reference)),
            transaction_ref=payment.get("external_reference"),
            outcome=PAYMENT_OUTCOMES.get(status),
            raw_status=status,
            # the preference id was attached at checkout and stays the payment id
            ids=GatewayIds(transaction_id=str(payment.get("id", reference))),
        )

    def refund(self, ids: GatewayIds, amount: Optional[Decimal] = None) -> RefundReceipt:
        if not ids.transaction_id:
            raise GatewayError("MercadoPago payment id is unknown")

        refund_object = {"amount": float(amount)} if amount is not None else None
        refund = self._call(self.sdk.refund().create(ids.transaction_id, refund_object), "process refund")
        return RefundReceipt(refund_id=str(refund.get("id", "")), status=refund.get("status", ""))
