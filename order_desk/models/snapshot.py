"""
Named point-in-time copies of an order's item list
"""
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, String

from order_desk.models.base import Base
from order_desk.models.order import new_id


class OrderSnapshot(Base):
    """Immutable capture of every non-placeholder item at save time"""
    __tablename__ = "order_snapshots"

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), index=True, nullable=False)
    title = Column(String, nullable=False)
    snapshot = Column(JSON, nullable=False)  # {"items": [...]}
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
