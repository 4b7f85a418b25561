import sqlalchemy as sa
from sqlalchemy import Column, DateTime, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB

from restobot.core.database import Base


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True)
    phone = Column(String(30), unique=True, index=True, nullable=False)
    name = Column(String(120), nullable=True)
    address_json = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=True)
    total_orders = Column(Integer, default=0, nullable=False)
    total_spent_cents = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_order_at = Column(DateTime(timezone=True), nullable=True)
