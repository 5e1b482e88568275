"""Work order service - Business logic for work order creation and status changes"""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...models import User, WorkOrder
from ...plan_limits import has_exceeded_quota
from ..integrations.quickbooks.invoice_mapper import to_money
from ..integrations.quickbooks.service import QuickBooksService
from .repository import WorkOrderRepository
from .schemas import WorkOrderCreate

logger = logging.getLogger(__name__)


class WorkOrderService:
    """Service layer for work order business logic"""

    def __init__(self, db: Session, quickbooks: Optional[QuickBooksService] = None):
        self.db = db
        self.repo = WorkOrderRepository()
        self.quickbooks = quickbooks

    def get_order(self, order_id: int, user: User) -> WorkOrder:
        order = self.repo.get_order(self.db, order_id, user.id)
        if not order:
            raise HTTPException(status_code=404, detail="Order not found")
        return order

    def create_order(self, data: WorkOrderCreate, user: User) -> WorkOrder:
        """
        Create the order, then attach its service lines. If attaching fails the
        order is deleted again so no order is left without its services.
        """
        logger.info(f"📥 Creating work order for user_id: {user.id}")

        if has_exceeded_quota(user, self.db, "work_orders_per_month"):
            logger.warning(f"⚠️ User {user.id} reached the monthly work order limit")
            raise HTTPException(
                status_code=403,
                detail="Monthly work order limit reached. Please upgrade your plan.",
            )

        client = self.repo.get_client(self.db, data.clientId, user.id)
        if not client:
            raise HTTPException(status_code=404, detail="Client not found")

        services = self.repo.get_services(self.db, [line.serviceId for line in data.services], user.id)
        missing = sorted({line.serviceId for line in data.services} - set(services))
        if missing:
            raise HTTPException(status_code=400, detail=f"Unknown service ids: {missing}")

        order_amount = sum(
            (to_money(services[line.serviceId].price) * line.quantity for line in data.services),
            Decimal("0.00"),
        )

        order = self.repo.create_order(
            self.db,
            user.id,
            client_id=client.id,
            status=data.status.value,
            schedule_date_time=data.scheduleDateTime,
            order_amount=order_amount,
            order_payment_status=data.paymentStatus.value,
            notes=data.notes,
        )

        try:
            self.repo.add_service_lines(
                self.db, order, [(line.serviceId, line.quantity) for line in data.services]
            )
        except Exception as e:
            logger.error(f"❌ Failed to attach services to order {order.id}, rolling back: {str(e)}")
            self.db.rollback()
            self.repo.delete_order(self.db, order)
            raise HTTPException(status_code=500, detail="Failed to create order services") from e

        self.db.refresh(order)
        logger.info(f"✅ Work order {order.id} created")
        return order

    async def update_status(self, order_id: int, status: str, user: User) -> tuple[WorkOrder, Optional[dict]]:
        """
        Change the order status locally, then push it to QuickBooks when the order
        has a linked invoice. A failed push is reported, the local change stands.
        """
        order = self.get_order(order_id, user)
        order = self.repo.update_status(self.db, order, status)
        logger.info(f"✅ Work order {order.id} status -> {status}")

        if self.quickbooks is None:
            return order, None

        try:
            result = await self.quickbooks.push_status_if_linked(user, order)
        except Exception as e:
            logger.error(f"❌ Failed to push status of order {order.id} to QuickBooks: {str(e)}")
            return order, {"pushed": False, "error": str(e)}

        if result is None:
            return order, None
        return order, {"pushed": True, **result}
