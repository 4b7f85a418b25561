from sqlalchemy import JSON, Column, DateTime, Integer, String, func

from restobot.core.database import Base


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True)
    customer_id = Column(String(30), unique=True, index=True, nullable=False)

    step = Column(String(40), default="welcome", nullable=False)

    # [{item_id, name, quantity, unit_price_cents}] copied from the menu when added
    cart = Column(JSON, default=list, nullable=False)
    # name, address parts, order type, reservation fields
    scratch = Column(JSON, default=dict, nullable=False)

    active_order_id = Column(Integer, nullable=True)
    active_reservation_id = Column(Integer, nullable=True)

    last_activity_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}
