import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class OrderStatus(str, enum.Enum):
    """Lifecycle of a work order"""

    PENDING = "Pending"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    ARCHIVED = "Archived"


class PaymentStatus(str, enum.Enum):
    """Payment state of a work order, projected from the QuickBooks invoice"""

    UNPAID = "Unpaid"
    PENDING_INVOICE = "Pending Invoice"
    PAID = "Paid"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    auth_subject = Column(String(255), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    plan = Column(String(50), nullable=True)  # free, professional, enterprise
    created_at = Column(DateTime, server_default=func.now())

    clients = relationship("Client", back_populates="user", cascade="all, delete-orphan")
    services = relationship("Service", back_populates="user", cascade="all, delete-orphan")
    work_orders = relationship("WorkOrder", back_populates="user", cascade="all, delete-orphan")


class Client(Base):
    __tablename__ = "clients"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    address = Column(String(500), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    # QuickBooks Customer.Id once linked
    quickbooks_customer_id = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="clients")
    work_orders = relationship("WorkOrder", back_populates="client")


class Service(Base):
    __tablename__ = "services"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    # QuickBooks Item.Id once linked
    quickbooks_item_id = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="services")


class WorkOrder(Base):
    __tablename__ = "work_orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False)
    status = Column(String(50), nullable=False, default=OrderStatus.PENDING.value)
    schedule_date_time = Column(DateTime, nullable=False)
    order_amount = Column(Numeric(10, 2), nullable=False, default=0)
    order_payment_status = Column(
        String(50), nullable=False, default=PaymentStatus.UNPAID.value
    )
    notes = Column(Text, nullable=True)
    # QuickBooks Invoice.Id once linked
    quickbooks_invoice_id = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="work_orders")
    client = relationship("Client", back_populates="work_orders")
    service_lines = relationship(
        "WorkOrderService", back_populates="work_order", cascade="all, delete-orphan"
    )


class WorkOrderService(Base):
    __tablename__ = "work_order_services"

    id = Column(Integer, primary_key=True, index=True)
    work_order_id = Column(Integer, ForeignKey("work_orders.id"), nullable=False, index=True)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, server_default=func.now())

    work_order = relationship("WorkOrder", back_populates="service_lines")
    service = relationship("Service")
