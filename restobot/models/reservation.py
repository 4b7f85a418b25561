from sqlalchemy import Column, Date, DateTime, Integer, String, Text, func

from restobot.core.database import Base

RESERVATION_PENDING = "pending"
RESERVATION_CONFIRMED = "confirmed"
RESERVATION_CANCELLED = "cancelled"
RESERVATION_COMPLETED = "completed"

RESERVATION_STATUSES = (
    RESERVATION_PENDING,
    RESERVATION_CONFIRMED,
    RESERVATION_CANCELLED,
    RESERVATION_COMPLETED,
)


class Reservation(Base):
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True)
    customer_id = Column(String(30), index=True, nullable=False)
    customer_name = Column(String(120), default="Guest", nullable=False)

    date = Column(Date, nullable=False)
    time = Column(String(20), nullable=False)
    party_size = Column(Integer, nullable=False)
    special_requests = Column(Text, default="", nullable=False)

    status = Column(String(20), default=RESERVATION_PENDING, nullable=False, index=True)
    table_assignment = Column(String(20), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
