"""
App-level configuration rows and the provider directory
"""
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, String

from order_desk.models.base import Base
from order_desk.models.order import new_id


class AppSetting(Base):
    """Key/value settings, e.g. sales_url:<tenant>:<branch> -> {"url": ...}"""
    __tablename__ = "app_settings"

    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow)


class Provider(Base):
    __tablename__ = "providers"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    tenant_id = Column(String, nullable=True)
    branch_id = Column(String, nullable=True)
