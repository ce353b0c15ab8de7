from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class PaymentIntentRequest(BaseModel):
    webinar_id: int
    amount: Decimal
    currency: str = "usd"
    gateway: Optional[str] = None


class ConfirmPaymentRequest(BaseModel):
    sale_id: int
    payment_intent_id: str = Field(min_length=1)


class RefundRequest(BaseModel):
    sale_id: int
    reason: Optional[str] = Field(default=None, max_length=500)


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    gateway: str
    status: str
    gateway_payment_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    gateway_refund_id: Optional[str] = None


class SaleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    buyer_id: int
    seller_id: int
    webinar_id: int = Field(validation_alias=AliasChoices("product_id", "webinar_id"))
    amount: Decimal
    currency: str
    payment_method: str
    status: str
    reference_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class PurchaseOut(SaleOut):
    webinar_title: Optional[str] = None
    payment: Optional[PaymentOut] = None


class PurchaseHistoryResponse(BaseModel):
    success: bool = True
    purchases: List[PurchaseOut]
    page: int
    per_page: int
    total: int
