import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coursepay.models import Entitlement, Sale

logger = logging.getLogger(__name__)


class EntitlementGrant:
    """Gives the buyer of a completed sale access to the purchased course.

    Safe to call repeatedly: one entitlement exists per (buyer, product).
    Runs inside the caller's transaction and never commits.
    """

    def __call__(self, db: Session, sale: Sale) -> Entitlement:
        return self.grant(db, sale)

    def _existing(self, db: Session, sale: Sale):
        return db.execute(
            select(Entitlement).where(
                Entitlement.buyer_id == sale.buyer_id,
                Entitlement.product_id == sale.product_id,
            )
        ).scalar_one_or_none()

    def grant(self, db: Session, sale: Sale) -> Entitlement:
        entitlement = self._existing(db, sale)
        if entitlement:
            logger.info(f"Buyer {sale.buyer_id} already holds access to product {sale.product_id}")
            return entitlement

        try:
            with db.begin_nested():
                entitlement = Entitlement(buyer_id=sale.buyer_id, product_id=sale.product_id, sale_id=sale.id)
                db.add(entitlement)
        except IntegrityError:
            # another request granted the same access between our read and insert
            entitlement = self._existing(db, sale)
        else:
            logger.info(f"Granting access to product {sale.product_id} for user {sale.buyer_id} (sale {sale.id})")

        return entitlement
