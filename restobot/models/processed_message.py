from sqlalchemy import Column, DateTime, String, func

from restobot.core.database import Base


class ProcessedMessage(Base):
    """Inbound WhatsApp message ids already handled; the transport retries deliveries."""

    __tablename__ = "processed_messages"

    message_id = Column(String, primary_key=True)
    customer_id = Column(String(30), nullable=True)
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
