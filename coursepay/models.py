import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from coursepay.database import Base


class SaleStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    CANCELED = "canceled"
    REFUNDED = "refunded"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    seller_id = Column(Integer, nullable=False)
    title = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class Sale(Base):
    __tablename__ = "sales"

    id = Column(Integer, primary_key=True, index=True)
    buyer_id = Column(Integer, nullable=False, index=True)
    seller_id = Column(Integer, nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    payment_method = Column(String, nullable=False)
    status = Column(String, nullable=False, default=SaleStatus.PENDING.value)  # pending | success | canceled | refunded
    reference_id = Column(String, nullable=True)                              # gateway reference, written once
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())
    completed_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    product = relationship("Product")
    payment = relationship("Payment", back_populates="sale", uselist=False)


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("gateway", "gateway_payment_id", name="uq_payments_gateway_payment"),
    )

    id = Column(Integer, primary_key=True, index=True)
    sale_id = Column(Integer, ForeignKey("sales.id"), unique=True, nullable=False)
    user_id = Column(Integer, nullable=False)
    gateway = Column(String, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    gateway_payment_id = Column(String, nullable=True, index=True)      # Stripe PaymentIntent / MercadoPago preference
    gateway_transaction_id = Column(String, nullable=True)              # Stripe charge / MercadoPago payment
    gateway_refund_id = Column(String, nullable=True)
    failure_reason = Column(Text, nullable=True)
    idempotency_key = Column(String(64), unique=True, nullable=True)   # sent with the gateway create call
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    sale = relationship("Sale", back_populates="payment")


class Entitlement(Base):
    __tablename__ = "entitlements"
    __table_args__ = (
        UniqueConstraint("buyer_id", "product_id", name="uq_entitlements_buyer_product"),
    )

    id = Column(Integer, primary_key=True, index=True)
    buyer_id = Column(Integer, nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    sale_id = Column(Integer, ForeignKey("sales.id"), nullable=False)
    granted_at = Column(DateTime, server_default=func.now())


class GatewayEvent(Base):
    __tablename__ = "gateway_events"
    __table_args__ = (
        UniqueConstraint("gateway", "event_id", name="uq_gateway_events_event"),
    )

    id = Column(Integer, primary_key=True, index=True)
    gateway = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    event_type = Column(String, nullable=True)
    sale_id = Column(Integer, ForeignKey("sales.id"), nullable=True)
    result = Column(String, nullable=False)
    received_at = Column(DateTime, server_default=func.now())
