"""
Ledger store: lookups and compare-and-set writes over sales and payments.

Every status write is conditional on the status the caller observed. The
row count tells the caller whether it won; nothing here holds a lock.
Functions flush but never commit, so a reconciliation step commits the sale,
its payment and any side rows together.
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from coursepay.models import GatewayEvent, Payment, PaymentStatus, Sale, SaleStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_sale(db: Session, sale_id, refresh: bool = False) -> Optional[Sale]:
    try:
        sale_id = int(sale_id)
    except (TypeError, ValueError):
        return None
    if refresh:
        return db.get(Sale, sale_id, populate_existing=True)
    return db.get(Sale, sale_id)


def get_payment_for_sale(db: Session, sale_id: int) -> Optional[Payment]:
    return db.execute(select(Payment).where(Payment.sale_id == sale_id)).scalar_one_or_none()


def find_payment(db: Session, gateway: str, gateway_payment_id: str) -> Optional[Payment]:
    if not gateway_payment_id:
        return None
    return db.execute(
        select(Payment).where(Payment.gateway == gateway, Payment.gateway_payment_id == gateway_payment_id)
    ).scalar_one_or_none()


def find_completed_sale(db: Session, buyer_id: int, product_id: int) -> Optional[Sale]:
    return db.execute(
        select(Sale).where(
            Sale.buyer_id == buyer_id,
            Sale.product_id == product_id,
            Sale.status == SaleStatus.SUCCESS.value,
        )
    ).scalars().first()


def event_seen(db: Session, gateway: str, event_id: str) -> bool:
    return db.execute(
        select(GatewayEvent.id).where(GatewayEvent.gateway == gateway, GatewayEvent.event_id == event_id)
    ).first() is not None


def record_event(db: Session, gateway: str, event_id: str, event_type: Optional[str],
                 sale_id: Optional[int], result: str) -> None:
    db.add(GatewayEvent(gateway=gateway, event_id=event_id, event_type=event_type, sale_id=sale_id, result=result))
    db.flush()


def set_gateway_payment_id(db: Session, payment_id: int, gateway_payment_id: str) -> bool:
    """Writes the gateway payment id only while it is still empty."""
    result = db.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.gateway_payment_id.is_(None))
        .values(gateway_payment_id=gateway_payment_id, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def transition_sale(db: Session, sale_id: int, expected: SaleStatus, target: SaleStatus,
                    reference_id: Optional[str] = None) -> bool:
    now = utcnow()
    values = {"status": target.value, "updated_at": now}
    if reference_id:
        values["reference_id"] = func.coalesce(Sale.reference_id, reference_id)
    if target in (SaleStatus.SUCCESS, SaleStatus.CANCELED):
        values["completed_at"] = now
    elif target == SaleStatus.REFUNDED:
        values["refunded_at"] = now

    result = db.execute(
        update(Sale)
        .where(Sale.id == sale_id, Sale.status == expected.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def transition_payment(db: Session, sale_id: int, target: PaymentStatus,
                       gateway_payment_id: Optional[str] = None,
                       gateway_transaction_id: Optional[str] = None,
                       gateway_refund_id: Optional[str] = None,
                       failure_reason: Optional[str] = None) -> None:
    # Only called after the owning sale won its conditional update, so the
    # payment row needs no status guard of its own.
    values = {"status": target.value, "updated_at": utcnow()}
    if gateway_payment_id:
        values["gateway_payment_id"] = func.coalesce(Payment.gateway_payment_id, gateway_payment_id)
    if gateway_transaction_id:
        values["gateway_transaction_id"] = func.coalesce(Payment.gateway_transaction_id, gateway_transaction_id)
    if gateway_refund_id:
        values["gateway_refund_id"] = gateway_refund_id
    if failure_reason:
        values["failure_reason"] = failure_reason
    elif target == PaymentStatus.SUCCESS:
        values["failure_reason"] = None

    db.execute(
        update(Payment)
        .where(Payment.sale_id == sale_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


def set_refund_id(db: Session, sale_id: int, gateway_refund_id: str) -> None:
    db.execute(
        update(Payment)
        .where(Payment.sale_id == sale_id)
        .values(gateway_refund_id=func.coalesce(Payment.gateway_refund_id, gateway_refund_id), updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )


def note_payment_failure(db: Session, sale_id: int, reason: str) -> bool:
    """Keeps the last decline on a payment that is still open."""
    result = db.execute(
        update(Payment)
        .where(Payment.sale_id == sale_id, Payment.status == PaymentStatus.PENDING.value)
        .values(failure_reason=reason, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
