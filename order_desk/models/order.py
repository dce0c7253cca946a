"""
Provider order models

One open order per (provider, tenant, branch); its line items; the
denormalized per-provider (and per-week) summaries that list views read.
"""
import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, Float, Integer, String, Text, UniqueConstraint

from order_desk.models.base import Base

GROUP_PLACEHOLDER = "__group__placeholder__"

STATUS_PENDING = "PENDING"
STATUS_CONFIRMED = "CONFIRMED"
STATUS_RECEIVED = "RECEIVED"
ORDER_STATUSES = (STATUS_PENDING, STATUS_CONFIRMED, STATUS_RECEIVED)


def new_id() -> str:
    return str(uuid.uuid4())


class Order(Base):
    """Order header for a single supplier"""
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    provider_id = Column(String, index=True, nullable=False)
    status = Column(String, nullable=False, default=STATUS_PENDING)
    notes = Column(Text, nullable=True)
    total = Column(Integer, nullable=True, default=0)

    tenant_id = Column(String, index=True, nullable=True)
    branch_id = Column(String, index=True, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class OrderItem(Base):
    """One product line within an order (or a group placeholder row)"""
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), index=True, nullable=False)

    product_name = Column(String, nullable=False)   # canonical key, joins sales history
    display_name = Column(String, nullable=True)    # user-editable alias

    qty = Column(Integer, nullable=False, default=0)
    unit_price = Column(Integer, nullable=False, default=0)
    price_updated_at = Column(DateTime, nullable=True)
    pack_size = Column(Integer, nullable=True)
    group_name = Column(String, index=True, nullable=True)

    stock_qty = Column(Float, nullable=True)
    stock_updated_at = Column(DateTime, nullable=True)

    previous_qty = Column(Integer, nullable=True)
    previous_qty_updated_at = Column(DateTime, nullable=True)

    tenant_id = Column(String, index=True, nullable=True)
    branch_id = Column(String, index=True, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)


class OrderSummary(Base):
    """Latest total per provider, for list views"""
    __tablename__ = "order_summaries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider_id = Column(String, nullable=False)
    total = Column(Integer, nullable=False, default=0)
    items = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('provider_id', name='uq_order_summary_provider'),
    )


class OrderSummaryWeek(Base):
    """Total per provider within a planning week"""
    __tablename__ = "order_summaries_week"

    id = Column(Integer, primary_key=True, autoincrement=True)
    week_id = Column(String, nullable=False)
    provider_id = Column(String, nullable=False)
    total = Column(Integer, nullable=False, default=0)
    items = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('week_id', 'provider_id', name='uq_order_summary_week_provider'),
    )


class StockLog(Base):
    """Audit row written every time counted stock is applied to an item"""
    __tablename__ = "stock_logs"

    id = Column(String(36), primary_key=True, default=new_id)
    order_item_id = Column(String(36), index=True, nullable=False)
    stock_prev = Column(Float, nullable=False, default=0)
    stock_in = Column(Float, nullable=False, default=0)
    stock_out = Column(Float, nullable=False, default=0)
    stock_applied = Column(Float, nullable=False, default=0)
    sales_since = Column(Float, nullable=False, default=0)
    applied_at = Column(DateTime, default=datetime.utcnow, index=True)
    tenant_id = Column(String, nullable=True)
    branch_id = Column(String, nullable=True)


UNGROUPED = "Ungrouped"


def group_key(name):
    """
    Stored group value for a visible group name (None = ungrouped).

    UNGROUPED is reserved: it is the label of the ungrouped bucket, and
    exported workbooks write it for items without a group, so it always
    maps back to None rather than naming a real group.
    """
    text = (name or "").strip()
    if not text or text == UNGROUPED:
        return None
    return text


def group_label(value) -> str:
    """Visible group name for a stored value"""
    return (value or "").strip() or UNGROUPED


def is_placeholder(row) -> bool:
    return (row or {}).get("product_name") == GROUP_PLACEHOLDER
