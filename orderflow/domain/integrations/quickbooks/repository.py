"""QuickBooks repository - Database operations for credentials, links and sync logs"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session, selectinload

from ....models import Client, Service, WorkOrder, WorkOrderService
from ....models_quickbooks import QuickBooksIntegration, QuickBooksSyncLog
from .oauth import TokenSet, encrypt_token


class QuickBooksRepository:
    """Repository for QuickBooks integration database operations"""

    # Credentials
    @staticmethod
    def get_integration(db: Session, user_id: int) -> Optional[QuickBooksIntegration]:
        """Get the QuickBooks integration for a user"""
        return (
            db.query(QuickBooksIntegration)
            .filter(QuickBooksIntegration.user_id == user_id)
            .first()
        )

    @staticmethod
    def lock_integration(db: Session, integration_id: int) -> Optional[QuickBooksIntegration]:
        """
        Re-read an integration row with a row lock (SELECT ... FOR UPDATE).
        populate_existing discards any stale copy held by this session.
        """
        return (
            db.query(QuickBooksIntegration)
            .filter(QuickBooksIntegration.id == integration_id)
            .populate_existing()
            .with_for_update()
            .first()
        )

    @staticmethod
    def get_integrations_for_realm(db: Session, realm_id: str) -> list[QuickBooksIntegration]:
        return db.query(QuickBooksIntegration).filter(QuickBooksIntegration.realm_id == realm_id).all()

    @staticmethod
    def save_connection(
        db: Session,
        user_id: int,
        realm_id: str,
        tokens: TokenSet,
        company_name: Optional[str],
        environment: str,
    ) -> QuickBooksIntegration:
        """Create or overwrite the user's integration after an OAuth handshake"""
        integration = QuickBooksRepository.get_integration(db, user_id)
        now = datetime.utcnow()

        if integration is None:
            integration = QuickBooksIntegration(user_id=user_id)
            db.add(integration)

        integration.realm_id = realm_id
        integration.company_name = company_name
        integration.access_token = encrypt_token(tokens.access_token)
        integration.refresh_token = encrypt_token(tokens.refresh_token)
        integration.token_expires_at = tokens.expires_at
        integration.token_state = "valid"
        integration.last_refreshed_at = now
        integration.environment = environment
        integration.updated_at = now

        db.commit()
        db.refresh(integration)
        return integration

    @staticmethod
    def store_refreshed_tokens(
        db: Session, integration: QuickBooksIntegration, tokens: TokenSet
    ) -> QuickBooksIntegration:
        """Persist a rotated token pair and its expiry in a single commit"""
        now = datetime.utcnow()
        integration.access_token = encrypt_token(tokens.access_token)
        integration.refresh_token = encrypt_token(tokens.refresh_token)
        integration.token_expires_at = tokens.expires_at
        integration.token_state = "valid"
        integration.last_refreshed_at = now
        integration.updated_at = now
        db.commit()
        return integration

    @staticmethod
    def mark_invalid(db: Session, integration: QuickBooksIntegration) -> None:
        integration.token_state = "invalid"
        integration.updated_at = datetime.utcnow()
        db.commit()

    @staticmethod
    def delete_integration(db: Session, integration: QuickBooksIntegration) -> None:
        db.query(QuickBooksSyncLog).filter(
            QuickBooksSyncLog.integration_id == integration.id
        ).update({QuickBooksSyncLog.integration_id: None}, synchronize_session=False)
        db.delete(integration)
        db.commit()

    @staticmethod
    def touch_last_sync(db: Session, integration: QuickBooksIntegration) -> None:
        integration.last_sync_at = datetime.utcnow()
        db.commit()

    # Local entities
    @staticmethod
    def get_client_by_quickbooks_id(
        db: Session, user_id: int, quickbooks_customer_id: str
    ) -> Optional[Client]:
        return (
            db.query(Client)
            .filter(
                Client.user_id == user_id,
                Client.quickbooks_customer_id == quickbooks_customer_id,
            )
            .first()
        )

    @staticmethod
    def create_client_from_customer(db: Session, user_id: int, **client_data) -> Client:
        client = Client(user_id=user_id, **client_data)
        db.add(client)
        try:
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(client)
        return client

    @staticmethod
    def get_unlinked_services(db: Session, user_id: int) -> list[Service]:
        return (
            db.query(Service)
            .filter(Service.user_id == user_id, Service.quickbooks_item_id.is_(None))
            .order_by(Service.id.asc())
            .all()
        )

    @staticmethod
    def get_orders_awaiting_invoice(db: Session, user_id: int, payment_status: str) -> list[WorkOrder]:
        return (
            db.query(WorkOrder)
            .options(
                selectinload(WorkOrder.client),
                selectinload(WorkOrder.service_lines).selectinload(WorkOrderService.service),
            )
            .filter(
                WorkOrder.user_id == user_id,
                WorkOrder.quickbooks_invoice_id.is_(None),
                WorkOrder.order_payment_status == payment_status,
            )
            .order_by(WorkOrder.id.asc())
            .all()
        )

    @staticmethod
    def get_order(db: Session, order_id: int, user_id: int) -> Optional[WorkOrder]:
        return (
            db.query(WorkOrder)
            .filter(WorkOrder.id == order_id, WorkOrder.user_id == user_id)
            .first()
        )

    @staticmethod
    def get_orders_by_invoice_id(db: Session, user_id: int, quickbooks_invoice_id: str) -> list[WorkOrder]:
        return (
            db.query(WorkOrder)
            .filter(
                WorkOrder.user_id == user_id,
                WorkOrder.quickbooks_invoice_id == quickbooks_invoice_id,
            )
            .all()
        )

    @staticmethod
    def link_remote_id(db: Session, entity, column: str, remote_id: str) -> None:
        """Store a QuickBooks id on a local row; rolls the session back if the commit fails"""
        setattr(entity, column, remote_id)
        try:
            db.commit()
        except Exception:
            db.rollback()
            raise

    @staticmethod
    def set_payment_status(db: Session, order: WorkOrder, payment_status: str) -> None:
        order.order_payment_status = payment_status
        try:
            db.commit()
        except Exception:
            db.rollback()
            raise

    # Audit log
    @staticmethod
    def log_sync(
        db: Session,
        user_id: int,
        integration_id: Optional[int],
        sync_type: str,
        entity_type: str,
        entity_id: int,
        status: str,
        quickbooks_id: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        db.add(
            QuickBooksSyncLog(
                user_id=user_id,
                integration_id=integration_id,
                sync_type=sync_type,
                entity_type=entity_type,
                entity_id=entity_id,
                quickbooks_id=quickbooks_id,
                status=status,
                error_message=error_message,
            )
        )
        try:
            db.commit()
        except Exception:
            db.rollback()
            raise
