"""
QuickBooks Integration Models
Database models for storing QuickBooks OAuth tokens and sync audit data
"""
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class QuickBooksIntegration(Base):
    """Store QuickBooks OAuth tokens and company information (one per user)"""
    __tablename__ = "quickbooks_integrations"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)

    # OAuth tokens (encrypted)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)
    token_expires_at = Column(DateTime, nullable=False)
    # valid | invalid - invalid means the refresh token was rejected and the user must reconnect
    token_state = Column(String(20), nullable=False, default="valid")
    last_refreshed_at = Column(DateTime, nullable=True)

    # QuickBooks company info
    realm_id = Column(String(255), nullable=False, index=True)  # QuickBooks company ID
    company_name = Column(String(255), nullable=True)
    quickbooks_customer_id = Column(String(255), nullable=True)

    # Environment (sandbox or production)
    environment = Column(String(50), default="sandbox")

    last_sync_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User")


class QuickBooksSyncLog(Base):
    """Track QuickBooks remote mutations"""
    __tablename__ = "quickbooks_sync_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    integration_id = Column(Integer, ForeignKey("quickbooks_integrations.id", ondelete="CASCADE"), nullable=True)

    sync_type = Column(String(50), nullable=False)  # service, invoice, payment, invoice_status
    entity_type = Column(String(50), nullable=False)  # Service, WorkOrder
    entity_id = Column(Integer, nullable=False)

    quickbooks_id = Column(String(255), nullable=True)  # QuickBooks entity ID

    status = Column(String(50), nullable=False)  # success, failed
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())

    user = relationship("User")
