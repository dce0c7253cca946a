"""Data connectors for the Order Desk service"""

from order_desk.connectors.base import RemoteStore
from order_desk.connectors.realtime import RealtimeHub
from order_desk.connectors.sql_store import SqlStore
from order_desk.connectors.sales_feed import SalesFeed

__all__ = [
    "RemoteStore",
    "RealtimeHub",
    "SqlStore",
    "SalesFeed",
]
