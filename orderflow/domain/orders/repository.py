"""Work order repository - Database operations for work orders"""

from typing import Optional

from sqlalchemy.orm import Session

from ...models import Client, Service, WorkOrder, WorkOrderService


class WorkOrderRepository:
    """Repository for work order database operations"""

    @staticmethod
    def get_client(db: Session, client_id: int, user_id: int) -> Optional[Client]:
        return db.query(Client).filter(Client.id == client_id, Client.user_id == user_id).first()

    @staticmethod
    def get_services(db: Session, service_ids: list[int], user_id: int) -> dict[int, Service]:
        if not service_ids:
            return {}
        services = (
            db.query(Service)
            .filter(Service.id.in_(service_ids), Service.user_id == user_id)
            .all()
        )
        return {s.id: s for s in services}

    @staticmethod
    def get_order(db: Session, order_id: int, user_id: int) -> Optional[WorkOrder]:
        return (
            db.query(WorkOrder)
            .filter(WorkOrder.id == order_id, WorkOrder.user_id == user_id)
            .first()
        )

    @staticmethod
    def create_order(db: Session, user_id: int, **order_data) -> WorkOrder:
        """Create a work order without its service lines"""
        order = WorkOrder(user_id=user_id, **order_data)
        db.add(order)
        db.commit()
        db.refresh(order)
        return order

    @staticmethod
    def add_service_lines(db: Session, order: WorkOrder, lines: list[tuple[int, int]]) -> None:
        """Attach (service_id, quantity) lines to an existing order"""
        for service_id, quantity in lines:
            db.add(WorkOrderService(work_order_id=order.id, service_id=service_id, quantity=quantity))
        db.commit()

    @staticmethod
    def delete_order(db: Session, order: WorkOrder) -> None:
        db.delete(order)
        db.commit()

    @staticmethod
    def update_status(db: Session, order: WorkOrder, status: str) -> WorkOrder:
        order.status = status
        db.commit()
        db.refresh(order)
        return order
