"""
Configuration management for the Order Desk service
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List, Optional


ORDER_TABLE_FALLBACKS = ["orders", "provider_orders", "branch_orders"]
ITEM_TABLE_FALLBACKS = ["order_items", "provider_order_items", "branch_order_items"]


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "Order Desk"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_dir: str = "logs"
    log_to_file: bool = True

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database (the hosted relational store)
    database_url: str = "sqlite:///./order_desk.db"

    # Table names configured per deployment; tried before the fixed fallbacks
    orders_table: Optional[str] = None
    order_items_table: Optional[str] = None

    # Ordering behaviour
    margin_percent: float = 48.0
    require_scope: bool = True
    bulk_chunk_size: int = 25
    snapshot_list_limit: int = 200
    suggest_net_of_stock: bool = False

    # Historical sales feed
    sales_file_path: str = "data/sales.xlsx"
    sales_cache_seconds: int = 300
    sales_fetch_attempts: int = 3
    sales_fetch_timeout: float = 30.0

    class Config:
        env_file = ".env"
        case_sensitive = False

    def order_table_candidates(self) -> List[str]:
        """Configured orders table first, then the fixed fallbacks (deduplicated)."""
        return _candidates(self.orders_table, ORDER_TABLE_FALLBACKS)

    def item_table_candidates(self) -> List[str]:
        """Configured items table first, then the fixed fallbacks (deduplicated)."""
        return _candidates(self.order_items_table, ITEM_TABLE_FALLBACKS)


def _candidates(configured: Optional[str], fallbacks: List[str]) -> List[str]:
    names = []
    if configured and configured.strip():
        names.append(configured.strip())
    for name in fallbacks:
        if name not in names:
            names.append(name)
    return names


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
