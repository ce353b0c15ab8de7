import enum
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Protocol

from coursepay.errors import GatewayError


class Outcome(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"


@dataclass(frozen=True)
class GatewayIds:
    payment_id: Optional[str] = None       # intent / preference id
    transaction_id: Optional[str] = None   # charge / gateway payment id


@dataclass(frozen=True)
class CheckoutRequest:
    sale_id: int
    buyer_id: int
    product_id: int
    product_title: str
    amount: Decimal
    currency: str
    idempotency_key: Optional[str] = None

    @property
    def metadata(self) -> Dict[str, str]:
        return {
            "sale_id": str(self.sale_id),
            "user_id": str(self.buyer_id),
            "webinar_id": str(self.product_id),
            "webinar_title": self.product_title,
        }


@dataclass(frozen=True)
class IntentHandle:
    payment_id: str
    client_secret: Optional[str] = None
    public_key: Optional[str] = None
    redirect_url: Optional[str] = None


@dataclass(frozen=True)
class PaymentSnapshot:
    reference: str
    transaction_ref: Optional[str]
    outcome: Optional[Outcome]
    raw_status: str
    ids: GatewayIds = field(default_factory=GatewayIds)


@dataclass(frozen=True)
class InboundEvent:
    event_id: Optional[str]
    event_type: str
    transaction_ref: Optional[str] = None
    outcome: Optional[Outcome] = None
    ids: GatewayIds = field(default_factory=GatewayIds)
    failure_reason: Optional[str] = None   # declined attempt, payment still open


@dataclass(frozen=True)
class RefundReceipt:
    refund_id: str
    status: str


class PaymentGateway(Protocol):
    name: str

    def payment_request(self, checkout: CheckoutRequest) -> IntentHandle:
        ...

    def verify_event(self, payload: bytes, headers: Mapping[str, str]) -> InboundEvent:
        ...

    def fetch_payment(self, reference: str) -> PaymentSnapshot:
        ...

    def refund(self, ids: GatewayIds, amount: Optional[Decimal] = None) -> RefundReceipt:
        ...


def plain(obj: Any) -> Dict[str, Any]:
    """Turn an SDK response object into a plain dict."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None) or getattr(obj, "to_dict_recursive", None)
    if to_dict is None:
        raise GatewayError(f"Unexpected gateway response type {type(obj).__name__}")
    return to_dict()
