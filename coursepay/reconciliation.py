"""
Reconciliation of gateway outcomes into the sales ledger.

Webhooks arrive at least once, possibly out of order, and race with the
buyer's own confirm call. Every status change here goes through a
conditional update on the status we expect to replace, so the first writer
wins and later deliveries of the same outcome become no-ops.
"""
import enum
import logging
import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coursepay import ledger
from coursepay.access import EntitlementGrant
from coursepay.config import Settings
from coursepay.errors import (
    AuthorizationError,
    NotFoundError,
    PaymentIncompleteError,
    ValidationError,
)
from coursepay.gateways import (
    CheckoutRequest,
    GatewayIds,
    IntentHandle,
    Outcome,
    PaymentGateway,
    RefundReceipt,
)
from coursepay.models import Payment, PaymentStatus, Product, Sale, SaleStatus

logger = logging.getLogger(__name__)

AccessHook = Callable[[Session, Sale], object]

SALE_TARGETS = {
    Outcome.SUCCESS: SaleStatus.SUCCESS,
    Outcome.FAILED: SaleStatus.CANCELED,
    Outcome.REFUNDED: SaleStatus.REFUNDED,
}

PAYMENT_TARGETS = {
    Outcome.SUCCESS: PaymentStatus.SUCCESS,
    Outcome.FAILED: PaymentStatus.FAILED,
    Outcome.REFUNDED: PaymentStatus.REFUNDED,
}

# the only status each outcome may replace
REQUIRED_PRIOR = {
    Outcome.SUCCESS: SaleStatus.PENDING,
    Outcome.FAILED: SaleStatus.PENDING,
    Outcome.REFUNDED: SaleStatus.SUCCESS,
}


class ApplyStatus(str, enum.Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    CONFLICT = "conflict"
    DEFERRED = "deferred"


@dataclass
class ApplyResult:
    status: ApplyStatus
    sale: Optional[Sale] = None

    @property
    def sale_status(self) -> Optional[str]:
        return self.sale.status if self.sale else None


@dataclass
class CheckoutResult:
    sale: Sale
    payment: Payment
    intent: IntentHandle


@dataclass
class RefundResult:
    sale: Sale
    receipt: RefundReceipt


@dataclass
class HistoryPage:
    items: List[Sale]
    page: int
    per_page: int
    total: int


def _blocked(current_status: str) -> ApplyStatus:
    # pending can still settle, anything else is final for this outcome
    if current_status == SaleStatus.PENDING.value:
        return ApplyStatus.DEFERRED
    return ApplyStatus.CONFLICT


class ReconciliationEngine:

    def __init__(self, db: Session, gateways: Dict[str, PaymentGateway], settings: Settings,
                 access_hook: Optional[AccessHook] = None):
        self.db = db
        self.gateways = gateways
        self.settings = settings
        self.access_hook = access_hook or EntitlementGrant()

    def _reload(self, sale_id: int) -> Sale:
        # conditional updates bypass the identity map
        self.db.expire_all()
        return ledger.get_sale(self.db, sale_id)

    def gateway(self, name: str) -> PaymentGateway:
        gateway = self.gateways.get(name)
        if gateway is None:
            raise ValidationError(f"Unsupported payment gateway '{name}'")
        return gateway

    # --- checkout ---------------------------------------------------------

    def _open(self, buyer_id: int, product_id: int, amount, currency: str,
              gateway: Optional[str]) -> Tuple[Sale, Payment, Product]:
        gateway_name = (gateway or self.settings.gateway).lower()
        self.gateway(gateway_name)

        try:
            amount = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        except (InvalidOperation, ValueError):
            raise ValidationError("Amount must be a number")
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")

        currency = (currency or "").lower()
        if currency not in self.settings.supported_currencies:
            raise ValidationError(f"Unsupported currency '{currency}'")

        product = self.db.get(Product, product_id)
        if product is None or not product.is_active:
            raise NotFoundError("Course not found")

        if ledger.find_completed_sale(self.db, buyer_id, product.id):
            raise ValidationError("You already have access to this course")

        sale = Sale(
            buyer_id=buyer_id,
            seller_id=product.seller_id,
            product_id=product.id,
            amount=amount,
            currency=currency,
            payment_method=gateway_name,
            status=SaleStatus.PENDING.value,
        )
        self.db.add(sale)
        self.db.flush()

        payment = Payment(
            sale_id=sale.id,
            user_id=buyer_id,
            gateway=gateway_name,
            amount=amount,
            currency=currency,
            status=PaymentStatus.PENDING.value,
            idempotency_key=uuid.uuid4().hex,
        )
        self.db.add(payment)
        self.db.flush()
        return sale, payment, product

    def begin_transaction(self, buyer_id: int, product_id: int, amount, currency: str,
                          gateway: Optional[str] = None) -> Tuple[Sale, Payment]:
        try:
            sale, payment, _ = self._open(buyer_id, product_id, amount, currency, gateway)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Opened sale {sale.id} for user {buyer_id} on product {product_id}")
        return sale, payment

    def _attach(self, payment: Payment, gateway_intent_id: str) -> None:
        if not gateway_intent_id:
            raise ValidationError("Gateway intent id is required")
        if payment.gateway_payment_id == gateway_intent_id:
            return
        if payment.gateway_payment_id:
            raise ValidationError("Sale already has a different gateway payment id")

        other = ledger.find_payment(self.db, payment.gateway, gateway_intent_id)
        if other is not None and other.id != payment.id:
            raise ValidationError("Gateway payment id already belongs to another sale")

        written = ledger.set_gateway_payment_id(self.db, payment.id, gateway_intent_id)
        self.db.refresh(payment)
        if not written and payment.gateway_payment_id != gateway_intent_id:
            raise ValidationError("Sale already has a different gateway payment id")

    def attach_gateway_intent(self, sale_id: int, gateway_intent_id: str) -> Payment:
        sale = ledger.get_sale(self.db, sale_id)
        if sale is None:
            raise NotFoundError("Sale not found")
        payment = ledger.get_payment_for_sale(self.db, sale.id)
        if payment is None:
            raise NotFoundError("Payment record not found")

        try:
            self._attach(payment, gateway_intent_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return payment

    def checkout(self, buyer_id: int, product_id: int, amount, currency: str,
                 gateway: Optional[str] = None) -> CheckoutResult:
        """Opens the sale, asks the gateway for an intent and links the two.

        Nothing is persisted unless the gateway answered.
        """
        try:
            sale, payment, product = self._open(buyer_id, product_id, amount, currency, gateway)
            handle = self.gateway(payment.gateway).payment_request(CheckoutRequest(
                sale_id=sale.id,
                buyer_id=buyer_id,
                product_id=product.id,
                product_title=product.title,
                amount=sale.amount,
                currency=sale.currency,
                idempotency_key=payment.idempotency_key,
            ))
            self._attach(payment, handle.payment_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Created {payment.gateway} intent {handle.payment_id} for sale {sale.id}")
        return CheckoutResult(sale=sale, payment=payment, intent=handle)

    # --- reconciliation ---------------------------------------------------

    def _resolve(self, transaction_ref, gateway: Optional[str], ids: GatewayIds) -> Optional[Sale]:
        sale = ledger.get_sale(self.db, transaction_ref)
        if sale is not None:
            return sale
        if gateway and ids.payment_id:
            payment = ledger.find_payment(self.db, gateway, ids.payment_id)
            if payment is not None:
                return ledger.get_sale(self.db, payment.sale_id)
        return None

    def apply_outcome(self, gateway_event_id: Optional[str], transaction_ref, outcome: Outcome,
                      gateway_ids: Optional[GatewayIds] = None, gateway: Optional[str] = None,
                      event_type: Optional[str] = None) -> ApplyResult:
        ids = gateway_ids or GatewayIds()
        gateway = gateway or self.settings.gateway

        if gateway_event_id and ledger.event_seen(self.db, gateway, gateway_event_id):
            logger.info(f"Duplicate {gateway} event {gateway_event_id} skipped")
            return ApplyResult(ApplyStatus.DUPLICATE)

        sale = self._resolve(transaction_ref, gateway, ids)
        if sale is None:
            logger.warning(
                f"No sale matches {gateway} event {gateway_event_id} "
                f"(ref={transaction_ref}, payment={ids.payment_id}), ignoring"
            )
            return ApplyResult(ApplyStatus.IGNORED)

        target = SALE_TARGETS[outcome]
        try:
            if sale.status == target.value:
                status = ApplyStatus.ALREADY_APPLIED
            elif sale.status != REQUIRED_PRIOR[outcome].value:
                status = _blocked(sale.status)
            else:
                status = self._transition(sale, outcome, ids)

            if status == ApplyStatus.DEFERRED:
                # left unrecorded so a redelivery can still apply it
                self.db.rollback()
                logger.info(
                    f"Outcome {outcome.value} for sale {sale.id} arrived while it is pending, deferring"
                )
                return ApplyResult(status, self._reload(sale.id))

            if gateway_event_id:
                ledger.record_event(self.db, gateway, gateway_event_id, event_type, sale.id, status.value)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Concurrent delivery of {gateway} event {gateway_event_id} already recorded")
            return ApplyResult(ApplyStatus.DUPLICATE, self._reload(sale.id))
        except Exception:
            self.db.rollback()
            raise

        sale = self._reload(sale.id)
        if status == ApplyStatus.APPLIED:
            logger.info(f"Sale {sale.id} moved to {sale.status} ({event_type or outcome.value})")
        elif status == ApplyStatus.CONFLICT:
            logger.warning(f"Outcome {outcome.value} rejected for sale {sale.id} in status {sale.status}")
        else:
            logger.info(f"Sale {sale.id} already {sale.status}, nothing to apply")
        return ApplyResult(status, sale)

    def _transition(self, sale: Sale, outcome: Outcome, ids: GatewayIds) -> ApplyStatus:
        target = SALE_TARGETS[outcome]
        won = ledger.transition_sale(
            self.db, sale.id, REQUIRED_PRIOR[outcome], target,
            reference_id=(ids.payment_id or ids.transaction_id) if outcome == Outcome.SUCCESS else None,
        )
        if not won:
            # the other path got there first
            current = ledger.get_sale(self.db, sale.id, refresh=True)
            return ApplyStatus.ALREADY_APPLIED if current.status == target.value else _blocked(current.status)

        ledger.transition_payment(
            self.db, sale.id, PAYMENT_TARGETS[outcome],
            gateway_payment_id=ids.payment_id,
            gateway_transaction_id=ids.transaction_id,
            failure_reason="Payment failed at gateway" if outcome == Outcome.FAILED else None,
        )
        if outcome == Outcome.SUCCESS:
            self.access_hook(self.db, sale)
        return ApplyStatus.APPLIED

    def note_failure(self, gateway_event_id: Optional[str], transaction_ref, reason: str,
                     gateway_ids: Optional[GatewayIds] = None, gateway: Optional[str] = None,
                     event_type: Optional[str] = None) -> ApplyResult:
        """Records a declined attempt on a payment the buyer can still retry.

        The sale stays pending; only a settled sale turns the note into a conflict.
        """
        ids = gateway_ids or GatewayIds()
        gateway = gateway or self.settings.gateway

        if gateway_event_id and ledger.event_seen(self.db, gateway, gateway_event_id):
            logger.info(f"Duplicate {gateway} event {gateway_event_id} skipped")
            return ApplyResult(ApplyStatus.DUPLICATE)

        sale = self._resolve(transaction_ref, gateway, ids)
        if sale is None:
            logger.warning(f"No sale matches declined {gateway} payment {ids.payment_id}, ignoring")
            return ApplyResult(ApplyStatus.IGNORED)

        try:
            noted = (
                sale.status == SaleStatus.PENDING.value
                and ledger.note_payment_failure(self.db, sale.id, reason)
            )
            status = ApplyStatus.APPLIED if noted else ApplyStatus.CONFLICT
            if gateway_event_id:
                ledger.record_event(self.db, gateway, gateway_event_id, event_type, sale.id, status.value)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return ApplyResult(ApplyStatus.DUPLICATE, self._reload(sale.id))
        except Exception:
            self.db.rollback()
            raise

        if noted:
            logger.info(f"Payment attempt declined for sale {sale.id}: {reason}")
        else:
            logger.warning(f"Decline for sale {sale.id} ignored, sale already {sale.status}")
        return ApplyResult(status, self._reload(sale.id))

    def confirm_payment(self, sale_id: int, requester_id: int, gateway_reference: str) -> ApplyResult:
        """Client-side confirmation: polls the gateway and applies what it reports."""
        sale = ledger.get_sale(self.db, sale_id)
        if sale is None or sale.buyer_id != requester_id:
            raise NotFoundError("Sale not found")
        payment = ledger.get_payment_for_sale(self.db, sale.id)
        if payment is None:
            raise NotFoundError("Payment record not found")

        snapshot = self.gateway(payment.gateway).fetch_payment(gateway_reference)
        belongs = snapshot.transaction_ref == str(sale.id) or (
            payment.gateway_payment_id is not None and snapshot.ids.payment_id == payment.gateway_payment_id
        )
        if not belongs:
            raise ValidationError("Payment does not belong to this sale")
        if snapshot.outcome is None:
            raise PaymentIncompleteError(snapshot.raw_status)

        result = self.apply_outcome(
            None, sale.id, snapshot.outcome, snapshot.ids,
            gateway=payment.gateway, event_type="client.confirm",
        )
        if result.sale_status != SaleStatus.SUCCESS.value:
            raise PaymentIncompleteError(snapshot.raw_status)
        return result

    # --- refunds ----------------------------------------------------------

    def request_refund(self, sale_id: int, requester_id: int, reason: Optional[str] = None) -> RefundResult:
        sale = ledger.get_sale(self.db, sale_id)
        if sale is None:
            raise NotFoundError("Sale not found")
        if sale.buyer_id != requester_id or sale.status != SaleStatus.SUCCESS.value:
            raise AuthorizationError("Sale not found or not eligible for refund")

        payment = ledger.get_payment_for_sale(self.db, sale.id)
        if payment is None or not payment.gateway_payment_id:
            raise NotFoundError("Payment not found")

        # the ledger only moves once the gateway has accepted the refund
        receipt = self.gateway(payment.gateway).refund(
            GatewayIds(payment_id=payment.gateway_payment_id, transaction_id=payment.gateway_transaction_id)
        )
        logger.info(f"Refund {receipt.refund_id} accepted for sale {sale.id} (reason: {reason or 'n/a'})")

        try:
            if ledger.transition_sale(self.db, sale.id, SaleStatus.SUCCESS, SaleStatus.REFUNDED):
                ledger.transition_payment(self.db, sale.id, PaymentStatus.REFUNDED, gateway_refund_id=receipt.refund_id)
            else:
                logger.info(f"Sale {sale.id} was already moved by a refund notification")
                ledger.set_refund_id(self.db, sale.id, receipt.refund_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        return RefundResult(sale=self._reload(sale.id), receipt=receipt)

    # --- history ----------------------------------------------------------

    def purchase_history(self, buyer_id: int, page: int = 1, per_page: Optional[int] = None) -> HistoryPage:
        per_page = per_page or self.settings.history_page_size
        if page < 1 or not 1 <= per_page <= 100:
            raise ValidationError("Invalid pagination parameters")

        total = self.db.execute(
            select(func.count(Sale.id)).where(Sale.buyer_id == buyer_id)
        ).scalar_one()
        items = self.db.execute(
            select(Sale)
            .where(Sale.buyer_id == buyer_id)
            .order_by(Sale.created_at.desc(), Sale.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        ).scalars().all()
        return HistoryPage(items=list(items), page=page, per_page=per_page, total=total)
