"""Database models for Order Desk"""

from order_desk.models.order import (
    Order,
    OrderItem,
    OrderSummary,
    OrderSummaryWeek,
    StockLog,
)
from order_desk.models.snapshot import OrderSnapshot
from order_desk.models.ui_state import OrderUIState
from order_desk.models.app_setting import AppSetting, Provider
