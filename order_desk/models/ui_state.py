"""
Presentation-only state per order (group order, confirmed checkmarks)
"""
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Integer, String, UniqueConstraint

from order_desk.models.base import Base


class OrderUIState(Base):
    __tablename__ = "order_ui_state"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), nullable=False)
    group_order = Column(JSON, nullable=True)   # ["Drinks", "Dairy", ...]
    checked_map = Column(JSON, nullable=True)   # {item_id: bool}
    updated_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('order_id', name='uq_order_ui_state_order'),
    )
