"""Work order router - FastAPI endpoints for work order operations"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...auth import get_current_user
from ...database import get_db
from ...models import User, WorkOrder
from ..integrations.quickbooks.dependencies import get_quickbooks_service
from ..integrations.quickbooks.invoice_mapper import to_money
from ..integrations.quickbooks.service import QuickBooksService
from .schemas import (
    StatusUpdateResponse,
    WorkOrderCreate,
    WorkOrderResponse,
    WorkOrderServiceLineResponse,
    WorkOrderStatusUpdate,
)
from .service import WorkOrderService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["Work Orders"])


def get_work_order_service(
    db: Session = Depends(get_db),
    quickbooks: QuickBooksService = Depends(get_quickbooks_service),
) -> WorkOrderService:
    """Dependency injection for WorkOrderService"""
    return WorkOrderService(db, quickbooks)


def _to_response(order: WorkOrder) -> WorkOrderResponse:
    return WorkOrderResponse(
        id=order.id,
        clientId=order.client_id,
        status=order.status,
        scheduleDateTime=order.schedule_date_time,
        orderAmount=to_money(order.order_amount),
        paymentStatus=order.order_payment_status,
        notes=order.notes,
        quickbooksInvoiceId=order.quickbooks_invoice_id,
        services=[
            WorkOrderServiceLineResponse(
                serviceId=line.service_id,
                name=line.service.name,
                quantity=line.quantity,
                unitPrice=to_money(line.service.price),
            )
            for line in order.service_lines
        ],
    )


@router.post("", response_model=WorkOrderResponse, status_code=201)
async def create_order(
    data: WorkOrderCreate,
    current_user: User = Depends(get_current_user),
    service: WorkOrderService = Depends(get_work_order_service),
):
    """Create a work order with its service lines"""
    order = service.create_order(data, current_user)
    return _to_response(order)


@router.patch("/{order_id}/status", response_model=StatusUpdateResponse)
async def update_order_status(
    order_id: int,
    data: WorkOrderStatusUpdate,
    current_user: User = Depends(get_current_user),
    service: WorkOrderService = Depends(get_work_order_service),
):
    """Update the order status; linked QuickBooks invoices follow"""
    order, quickbooks_result = await service.update_status(order_id, data.status.value, current_user)
    return StatusUpdateResponse(order=_to_response(order), quickbooks=quickbooks_result)
