"""Work order schemas - Pydantic models for validation"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field

from ...models import OrderStatus, PaymentStatus


class WorkOrderServiceLine(BaseModel):
    serviceId: int
    quantity: int = Field(default=1, ge=1)


class WorkOrderCreate(BaseModel):
    """Schema for creating a new work order"""

    clientId: int
    scheduleDateTime: datetime
    status: OrderStatus = OrderStatus.PENDING
    paymentStatus: PaymentStatus = PaymentStatus.UNPAID
    notes: Optional[str] = None
    services: list[WorkOrderServiceLine] = []


class WorkOrderStatusUpdate(BaseModel):
    status: OrderStatus


class WorkOrderServiceLineResponse(BaseModel):
    serviceId: int
    name: str
    quantity: int
    unitPrice: Decimal


class WorkOrderResponse(BaseModel):
    """Schema for work order response"""

    id: int
    clientId: int
    status: str
    scheduleDateTime: datetime
    orderAmount: Decimal
    paymentStatus: str
    notes: Optional[str] = None
    quickbooksInvoiceId: Optional[str] = None
    services: list[WorkOrderServiceLineResponse] = []


class StatusUpdateResponse(BaseModel):
    order: WorkOrderResponse
    quickbooks: Optional[dict[str, Any]] = None
