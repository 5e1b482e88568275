"""
Entity Reconciler
One sync pass between local records and QuickBooks, in a fixed order:

    customers (pull only) -> services (push) -> invoices (push, Pending Invoice orders)

Entities are processed one at a time with a pause after every remote mutation.
A failure on one entity is recorded in the batch and the pass moves on. Once
the time budget is spent no new entity is started.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Optional

from sqlalchemy.orm import Session

from ....config import (
    QUICKBOOKS_INCOME_ACCOUNT_ID,
    QUICKBOOKS_MUTATION_DELAY,
    QUICKBOOKS_SYNC_TIME_BUDGET,
)
from ....models import PaymentStatus, Service, User, WorkOrder
from ....models_quickbooks import QuickBooksIntegration
from ....shared.resilience import execute
from .client import CUSTOMER_PAGE_SIZE, QuickBooksClient
from .errors import QuickBooksError
from .invoice_mapper import build_invoice_payload, doc_number_for
from .repository import QuickBooksRepository

logger = logging.getLogger(__name__)

SYNC_TYPES = ("customers", "services", "invoices")


@dataclass
class EntityCounts:
    created: int = 0
    matched: int = 0


@dataclass
class SyncBatch:
    """Outcome of one sync pass"""

    customers: EntityCounts = field(default_factory=EntityCounts)
    services: EntityCounts = field(default_factory=EntityCounts)
    invoices: EntityCounts = field(default_factory=EntityCounts)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class EntityReconciler:
    """Runs customer, service and invoice reconciliation for one user"""

    def __init__(
        self,
        db: Session,
        user: User,
        client: QuickBooksClient,
        mutation_delay: float = QUICKBOOKS_MUTATION_DELAY,
        time_budget: float = QUICKBOOKS_SYNC_TIME_BUDGET,
        integration: Optional[QuickBooksIntegration] = None,
        income_account_id: Optional[str] = QUICKBOOKS_INCOME_ACCOUNT_ID,
    ):
        self.db = db
        self.user = user
        self.client = client
        self.mutation_delay = mutation_delay
        self.time_budget = time_budget
        self.integration = integration
        self.income_account_id = income_account_id
        self._deadline: Optional[float] = None

    # Pass control
    def _budget_exceeded(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def _record_skipped(self, batch: SyncBatch, count: int, entity_type: str) -> None:
        batch.errors.append(f"Sync time budget exceeded: skipped {count} {entity_type}")
        logger.warning(f"⚠️ Sync time budget exceeded for user {self.user.id}: skipped {count} {entity_type}")

    async def _pause(self) -> None:
        if self.mutation_delay > 0:
            await asyncio.sleep(self.mutation_delay)

    def _discard_failed_work(self) -> None:
        """Clear a failed entity's pending changes so the next entity starts on a clean session"""
        self.db.rollback()

    async def _store(self, operation, description: str):
        return await execute(operation, description=description)

    def _log(
        self,
        sync_type: str,
        entity_type: str,
        entity_id: int,
        status: str,
        quickbooks_id: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        try:
            QuickBooksRepository.log_sync(
                self.db,
                user_id=self.user.id,
                integration_id=self.integration.id if self.integration else None,
                sync_type=sync_type,
                entity_type=entity_type,
                entity_id=entity_id,
                status=status,
                quickbooks_id=quickbooks_id,
                error_message=error_message,
            )
        except Exception as e:
            logger.error(f"❌ Failed to write QuickBooks sync log for {entity_type} {entity_id}: {e}")

    async def run(self, sync_type: Optional[str] = None) -> SyncBatch:
        """
        Run one sync pass.

        Args:
            sync_type: "customers", "services", "invoices" or None for all three

        Returns:
            SyncBatch with per-type counts and per-entity error messages
        """
        if sync_type is not None and sync_type not in SYNC_TYPES:
            raise ValueError(f"Invalid sync type: {sync_type}")

        batch = SyncBatch()
        self._deadline = time.monotonic() + self.time_budget
        logger.info(f"🔄 QuickBooks sync started for user {self.user.id} (type={sync_type or 'all'})")

        if sync_type in (None, "customers"):
            await self.sync_customers(batch)
        if sync_type in (None, "services"):
            await self.sync_services(batch)
        if sync_type in (None, "invoices"):
            await self.sync_invoices(batch)

        if self.integration is not None:
            QuickBooksRepository.touch_last_sync(self.db, self.integration)

        logger.info(
            f"✅ QuickBooks sync finished for user {self.user.id}: "
            f"customers={batch.customers.created}/{batch.customers.matched} "
            f"services={batch.services.created}/{batch.services.matched} "
            f"invoices={batch.invoices.created}/{batch.invoices.matched} "
            f"errors={len(batch.errors)}"
        )
        return batch

    # Customers
    async def sync_customers(self, batch: SyncBatch) -> None:
        """Import remote customers that no local client is linked to yet"""
        start_position = 1
        while True:
            if self._budget_exceeded():
                batch.errors.append("Sync time budget exceeded: skipped remaining customer pages")
                logger.warning(f"⚠️ Sync time budget exceeded for user {self.user.id} while paging customers")
                return
            try:
                page = await self.client.list_customers(start_position, CUSTOMER_PAGE_SIZE)
            except Exception as e:
                logger.error(f"❌ Failed to pull customers from QuickBooks: {e}")
                batch.errors.append(f"Failed to pull customers from QuickBooks: {e}")
                return

            for index, customer in enumerate(page):
                if self._budget_exceeded():
                    self._record_skipped(batch, len(page) - index, "customers")
                    return
                try:
                    await self._import_customer(customer, batch)
                except Exception as e:
                    self._discard_failed_work()
                    logger.error(f"❌ Error importing customer {customer.get('Id')}: {e}")
                    batch.errors.append(f"Customer {customer.get('Id')}: {e}")

            if len(page) < CUSTOMER_PAGE_SIZE:
                return
            start_position += CUSTOMER_PAGE_SIZE

    async def _import_customer(self, customer: dict, batch: SyncBatch) -> None:
        remote_id = str(customer["Id"])
        existing = QuickBooksRepository.get_client_by_quickbooks_id(self.db, self.user.id, remote_id)
        if existing is not None:
            batch.customers.matched += 1
            return

        client_data = {
            "name": customer.get("DisplayName") or customer.get("Name") or "Unknown Customer",
            "email": (customer.get("PrimaryEmailAddr") or {}).get("Address") or customer.get("EmailAddress"),
            "phone": (customer.get("PrimaryPhone") or {}).get("FreeFormNumber") or customer.get("Phone"),
            "address": (customer.get("BillAddr") or {}).get("Line1"),
            "is_active": customer.get("Active") is not False,
            "quickbooks_customer_id": remote_id,
        }
        await self._store(
            lambda: QuickBooksRepository.create_client_from_customer(self.db, self.user.id, **client_data),
            description=f"import QuickBooks customer {remote_id}",
        )
        batch.customers.created += 1
        logger.info(f"Imported customer {client_data['name']} from QuickBooks")

    # Services
    async def sync_services(self, batch: SyncBatch) -> None:
        """Link or create a QuickBooks service item for every unlinked local service"""
        services = QuickBooksRepository.get_unlinked_services(self.db, self.user.id)
        for index, service in enumerate(services):
            if self._budget_exceeded():
                self._record_skipped(batch, len(services) - index, "services")
                return
            try:
                await self._sync_service(service, batch)
            except Exception as e:
                self._discard_failed_work()
                logger.error(f"❌ Error syncing service {service.id}: {e}")
                self._log("service", "Service", service.id, "failed", error_message=str(e))
                batch.errors.append(f"Service {service.name}: {e}")

    async def _sync_service(self, service: Service, batch: SyncBatch) -> None:
        existing = await self.client.find_service_by_name(service.name)
        if existing is not None:
            await self._link(service, "quickbooks_item_id", str(existing["Id"]), f"service {service.id}")
            batch.services.matched += 1
            return

        item = await self.client.create_service_item(service.name, self.income_account_id)
        await self._pause()
        remote_id = str(item["Id"])
        self._log("service", "Service", service.id, "success", quickbooks_id=remote_id)
        await self._link_after_create(service, "quickbooks_item_id", remote_id, f"service {service.id}")
        batch.services.created += 1
        logger.info(f"✅ Created QuickBooks service item {remote_id} for {service.name}")

    # Invoices
    async def sync_invoices(self, batch: SyncBatch) -> None:
        """Create (or recover) invoices for Pending Invoice orders without one"""
        orders = QuickBooksRepository.get_orders_awaiting_invoice(
            self.db, self.user.id, PaymentStatus.PENDING_INVOICE.value
        )
        for index, order in enumerate(orders):
            if self._budget_exceeded():
                self._record_skipped(batch, len(orders) - index, "invoices")
                return
            if not order.client or not order.client.quickbooks_customer_id:
                batch.errors.append(f"Order {order.id}: Customer not synced to QuickBooks")
                continue
            try:
                created = await self.create_invoice_for_order(order)
            except Exception as e:
                self._discard_failed_work()
                logger.error(f"❌ Error syncing order {order.id}: {e}")
                batch.errors.append(f"Order {order.id}: {e}")
                continue
            if created:
                batch.invoices.created += 1
            else:
                batch.invoices.matched += 1

    async def create_invoice_for_order(self, order: WorkOrder) -> bool:
        """
        Link the order to its QuickBooks invoice, creating it when none exists.

        Returns:
            True when a new invoice was created, False when an existing one was linked
        """
        if not order.client or not order.client.quickbooks_customer_id:
            raise QuickBooksError(f"Order {order.id}: Customer not synced to QuickBooks")

        doc_number = doc_number_for(order)
        existing = await self.client.find_invoice_by_doc_number(doc_number)
        if existing is not None:
            await self._link(order, "quickbooks_invoice_id", str(existing["Id"]), f"order {order.id}")
            logger.info(f"Linked order {order.id} to existing invoice {existing['Id']}")
            return False

        try:
            invoice = await self.client.create_invoice(build_invoice_payload(order))
        except Exception as e:
            self._log("invoice", "WorkOrder", order.id, "failed", error_message=str(e))
            raise
        await self._pause()
        remote_id = str(invoice["Id"])
        self._log("invoice", "WorkOrder", order.id, "success", quickbooks_id=remote_id)
        await self._link_after_create(order, "quickbooks_invoice_id", remote_id, f"order {order.id}")
        logger.info(f"✅ Created QuickBooks invoice {remote_id} for order {order.id}")
        return True

    # Links
    async def _link(self, entity, column: str, remote_id: str, label: str) -> None:
        await self._store(
            lambda: QuickBooksRepository.link_remote_id(self.db, entity, column, remote_id),
            description=f"link {label}",
        )

    async def _link_after_create(self, entity, column: str, remote_id: str, label: str) -> None:
        try:
            await self._link(entity, column, remote_id, label)
        except Exception as e:
            # The remote record exists but nothing local points at it
            logger.critical(
                f"❌ Created QuickBooks record {remote_id} but failed to link {label}: {e}"
            )
            raise QuickBooksError(
                f"Created QuickBooks record {remote_id} but failed to store the link: {e}"
            ) from e
