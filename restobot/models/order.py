import sqlalchemy as sa
from sqlalchemy import Column, DateTime, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from restobot.core.database import Base

ORDER_PAYMENT_PENDING = "payment_pending"
ORDER_PAYMENT_VERIFIED = "payment_verified"
ORDER_CONFIRMED = "confirmed"
ORDER_PREPARING = "preparing"
ORDER_READY = "ready"
ORDER_OUT_FOR_DELIVERY = "out_for_delivery"
ORDER_DELIVERED = "delivered"
ORDER_CANCELLED = "cancelled"

ORDER_STATUSES = (
    ORDER_PAYMENT_PENDING,
    ORDER_PAYMENT_VERIFIED,
    ORDER_CONFIRMED,
    ORDER_PREPARING,
    ORDER_READY,
    ORDER_OUT_FOR_DELIVERY,
    ORDER_DELIVERED,
    ORDER_CANCELLED,
)

PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)

    customer_id = Column(String(30), index=True, nullable=False)
    customer_name = Column(String(120), default="", nullable=False)

    total_cents = Column(Integer, default=0, nullable=False)
    fulfillment_type = Column(String(20), default="delivery", nullable=False)
    # street, city, state, pincode; only for delivery
    delivery_address_json = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=True)
    special_instructions = Column(Text, nullable=True)

    status = Column(String(30), default=ORDER_PAYMENT_PENDING, nullable=False, index=True)
    payment_status = Column(String(20), default=PAYMENT_PENDING, nullable=False)
    # payment link id; written once after the link is created
    payment_provider_ref = Column(String(80), unique=True, nullable=True)
    payment_link_url = Column(String, nullable=True)
    payment_transaction_ref = Column(String(80), index=True, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    payment_verified_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)

    order_items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )
