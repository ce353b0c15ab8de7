from typing import Dict

from coursepay.config import Settings
from coursepay.gateways.base import (
    CheckoutRequest,
    GatewayIds,
    InboundEvent,
    IntentHandle,
    Outcome,
    PaymentGateway,
    PaymentSnapshot,
    RefundReceipt,
)
from coursepay.gateways.mercadopago_gateway import MercadoPagoGateway
from coursepay.gateways.stripe_gateway import StripeGateway

__all__ = [
    "CheckoutRequest",
    "GatewayIds",
    "InboundEvent",
    "IntentHandle",
    "MercadoPagoGateway",
    "Outcome",
    "PaymentGateway",
    "PaymentSnapshot",
    "RefundReceipt",
    "StripeGateway",
    "build_gateways",
]


def build_gateways(settings: Settings) -> Dict[str, PaymentGateway]:
    gateways = {}
    for name in settings.enabled_gateways:
        if name == StripeGateway.name:
            gateways[name] = StripeGateway(settings.stripe_secret_key, settings.stripe_webhook_secret)
        elif name == MercadoPagoGateway.name:
            gateways[name] = MercadoPagoGateway(
                access_token=settings.mercado_pago_access_token,
                public_key=settings.mercado_pago_public_key,
                webhook_secret=settings.mercado_pago_webhook_secret,
                callback_base_url=settings.public_base_url,
            )
        else:
            raise RuntimeError(f"Unknown payment gateway '{name}'")
    return gateways
