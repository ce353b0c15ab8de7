from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from coursepay.auth import get_current_user_id
from coursepay.database import get_db
from coursepay.errors import PaymentIncompleteError
from coursepay.reconciliation import ReconciliationEngine
from coursepay.schemas import (
    ConfirmPaymentRequest,
    PaymentIntentRequest,
    PurchaseHistoryResponse,
    PurchaseOut,
    RefundRequest,
    SaleOut,
)

router = APIRouter(prefix="/payments", tags=["payments"])


def get_engine(request: Request, db: Session = Depends(get_db)) -> ReconciliationEngine:
    state = request.app.state
    return ReconciliationEngine(db, state.gateways, state.settings, state.access_hook)


@router.post("/intent")
def create_payment_intent(
    body: PaymentIntentRequest,
    user_id: int = Depends(get_current_user_id),
    engine: ReconciliationEngine = Depends(get_engine),
):
    result = engine.checkout(user_id, body.webinar_id, body.amount, body.currency, body.gateway)

    response = {
        "success": True,
        "client_secret": result.intent.client_secret,
        "sale_id": result.sale.id,
        "payment_id": result.payment.id,
        "gateway": result.payment.gateway,
    }
    if result.intent.public_key or result.intent.redirect_url:
        response.update({
            "preference_id": result.intent.payment_id,
            "public_key": result.intent.public_key,
            "redirect_url": result.intent.redirect_url,
        })
    return response


@router.post("/confirm")
def confirm_payment(
    body: ConfirmPaymentRequest,
    user_id: int = Depends(get_current_user_id),
    engine: ReconciliationEngine = Depends(get_engine),
):
    result = engine.confirm_payment(body.sale_id, user_id, body.payment_intent_id)
    return {
        "success": True,
        "message": "Payment confirmed successfully",
        "sale": SaleOut.model_validate(result.sale).model_dump(mode="json"),
    }


@router.get("/verify/mercadopago")
def verify_mercadopago_return(
    external_reference: int = Query(...),
    payment_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    user_id: int = Depends(get_current_user_id),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Buyer landing back from the MercadoPago checkout.

    The query string only says which payment to look at; its state is read
    back from MercadoPago before anything is applied.
    """
    if not payment_id or payment_id == "null":
        # abandoned or still pending, MercadoPago sends the literal "null"
        raise PaymentIncompleteError(status or "pending")

    result = engine.confirm_payment(external_reference, user_id, payment_id)
    return {
        "success": True,
        "message": "Payment confirmed successfully",
        "sale": SaleOut.model_validate(result.sale).model_dump(mode="json"),
    }


@router.post("/refund")
def request_refund(
    body: RefundRequest,
    user_id: int = Depends(get_current_user_id),
    engine: ReconciliationEngine = Depends(get_engine),
):
    result = engine.request_refund(body.sale_id, user_id, body.reason)
    return {
        "success": True,
        "message": "Refund processed successfully",
        "refund_id": result.receipt.refund_id,
    }


@router.get("/history")
def purchase_history(
    page: int = Query(1),
    per_page: Optional[int] = Query(None),
    user_id: int = Depends(get_current_user_id),
    engine: ReconciliationEngine = Depends(get_engine),
):
    history = engine.purchase_history(user_id, page, per_page)
    purchases = []
    for sale in history.items:
        purchase = PurchaseOut.model_validate(sale)
        purchase.webinar_title = sale.product.title if sale.product else None
        purchases.append(purchase)

    return PurchaseHistoryResponse(
        purchases=purchases,
        page=history.page,
        per_page=history.per_page,
        total=history.total,
    ).model_dump(mode="json")
