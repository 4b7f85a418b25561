from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text, func

from restobot.core.database import Base

MENU_CATEGORIES = ("Starters", "Main Course", "Desserts", "Beverages", "Specials")


class MenuItem(Base):
    __tablename__ = "menu_items"
    __table_args__ = (Index("ix_menu_items_category_available", "category", "is_available"),)

    id = Column(Integer, primary_key=True)
    name = Column(String(120), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(60), nullable=False)
    price_cents = Column(Integer, nullable=False)
    image_url = Column(String, nullable=True)
    is_available = Column(Boolean, default=True, nullable=False)
    is_veg = Column(Boolean, default=True, nullable=False)
    preparation_time_minutes = Column(Integer, default=20, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
