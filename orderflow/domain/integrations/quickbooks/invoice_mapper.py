"""
Invoice State Mapper
Maps work-order status onto a QuickBooks invoice state (push) and a QuickBooks
invoice back onto the work-order payment status (pull).

    Pending, In Progress  -> OpenInvoice(balance)
    Completed, Archived   -> SettledInvoice(payment_amount)  balance 0 + one payment
    Cancelled             -> VoidedInvoice()

After a push the local payment status is read back from the resulting invoice
with the same mapping the pull uses.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from sqlalchemy.orm import Session

from ....config import QUICKBOOKS_DEFAULT_ITEM_ID, QUICKBOOKS_MUTATION_DELAY
from ....models import OrderStatus, PaymentStatus, WorkOrder
from ....models_quickbooks import QuickBooksIntegration
from ....shared.resilience import execute
from .client import QuickBooksClient
from .errors import QuickBooksError
from .repository import QuickBooksRepository

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def to_money(value) -> Decimal:
    """Quantize any numeric value to cents"""
    if value is None:
        value = 0
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class OpenInvoice:
    balance: Decimal


@dataclass(frozen=True)
class SettledInvoice:
    payment_amount: Decimal


@dataclass(frozen=True)
class VoidedInvoice:
    pass


InvoiceState = Union[OpenInvoice, SettledInvoice, VoidedInvoice]

_STATE_BY_STATUS = {
    OrderStatus.PENDING: OpenInvoice,
    OrderStatus.IN_PROGRESS: OpenInvoice,
    OrderStatus.COMPLETED: SettledInvoice,
    OrderStatus.ARCHIVED: SettledInvoice,
    OrderStatus.CANCELLED: VoidedInvoice,
}

_unmapped = set(OrderStatus) - set(_STATE_BY_STATUS)
if _unmapped:
    raise RuntimeError(
        f"Order statuses without an invoice state: {sorted(s.value for s in _unmapped)}"
    )


def invoice_state_for(status: Union[OrderStatus, str], amount) -> InvoiceState:
    """Single mapping from an order status to the invoice state it implies"""
    kind = _STATE_BY_STATUS[OrderStatus(status)]
    if kind is OpenInvoice:
        return OpenInvoice(balance=to_money(amount))
    if kind is SettledInvoice:
        return SettledInvoice(payment_amount=to_money(amount))
    return VoidedInvoice()


def is_voided_invoice(invoice: dict) -> bool:
    """QuickBooks zeroes a voided invoice and prefixes its private note with 'Voided'"""
    if str(invoice.get("PrivateNote") or "").startswith("Voided"):
        return True
    return "TotalAmt" in invoice and to_money(invoice["TotalAmt"]) == 0 and to_money(invoice.get("Balance")) == 0


def payment_status_for_invoice(invoice: dict) -> PaymentStatus:
    """
    Reverse mapping from a QuickBooks invoice to the order's payment status.
    Used after every push and on every pull, so both directions agree.
    """
    if is_voided_invoice(invoice):
        return PaymentStatus.UNPAID
    if to_money(invoice.get("Balance")) == 0:
        return PaymentStatus.PAID
    if invoice.get("EmailStatus") == "EmailSent":
        return PaymentStatus.PENDING_INVOICE
    return PaymentStatus.UNPAID


def doc_number_for(order: WorkOrder) -> str:
    return f"WO-{order.id}"


def payment_note_for(order: WorkOrder) -> str:
    """Private note on payments posted for an order; marks them as ours"""
    return f"Payment for {doc_number_for(order)}"


def build_invoice_lines(order: WorkOrder, default_item_id: str = QUICKBOOKS_DEFAULT_ITEM_ID) -> list[dict]:
    """One SalesItemLineDetail line per service on the order, amount = qty x unit price"""
    lines = []
    for line in order.service_lines:
        service = line.service
        unit_price = to_money(service.price)
        amount = to_money(unit_price * line.quantity)
        lines.append(
            {
                "Amount": float(amount),
                "DetailType": "SalesItemLineDetail",
                "Description": service.name,
                "SalesItemLineDetail": {
                    "ItemRef": {
                        "value": service.quickbooks_item_id or default_item_id,
                        "name": service.name,
                    },
                    "Qty": line.quantity,
                    "UnitPrice": float(unit_price),
                },
            }
        )
    if not lines:
        # Orders without service lines still bill their total
        lines.append(
            {
                "Amount": float(to_money(order.order_amount)),
                "DetailType": "SalesItemLineDetail",
                "Description": f"Work order {doc_number_for(order)}",
                "SalesItemLineDetail": {
                    "ItemRef": {"value": default_item_id},
                    "Qty": 1,
                    "UnitPrice": float(to_money(order.order_amount)),
                },
            }
        )
    return lines


def build_invoice_payload(order: WorkOrder, default_item_id: str = QUICKBOOKS_DEFAULT_ITEM_ID) -> dict:
    payload = {
        "CustomerRef": {
            "value": order.client.quickbooks_customer_id,
            "name": order.client.name,
        },
        "Line": build_invoice_lines(order, default_item_id),
        "DocNumber": doc_number_for(order),
        "TxnDate": order.schedule_date_time.date().isoformat(),
    }
    if order.notes:
        payload["PrivateNote"] = order.notes
    return payload


class InvoiceStateMapper:
    """Pushes order status to a linked QuickBooks invoice and pulls payment status back"""

    def __init__(
        self,
        db: Session,
        client: QuickBooksClient,
        integration: Optional[QuickBooksIntegration] = None,
        mutation_delay: float = QUICKBOOKS_MUTATION_DELAY,
    ):
        self.db = db
        self.client = client
        self.integration = integration
        self.mutation_delay = mutation_delay

    async def _pause(self) -> None:
        if self.mutation_delay > 0:
            await asyncio.sleep(self.mutation_delay)

    def _log(self, order: WorkOrder, sync_type: str, status: str, error_message: Optional[str] = None) -> None:
        QuickBooksRepository.log_sync(
            self.db,
            user_id=order.user_id,
            integration_id=self.integration.id if self.integration else None,
            sync_type=sync_type,
            entity_type="WorkOrder",
            entity_id=order.id,
            status=status,
            quickbooks_id=order.quickbooks_invoice_id,
            error_message=error_message,
        )

    async def _write_payment_status(self, order: WorkOrder, payment_status: str) -> bool:
        if order.order_payment_status == payment_status:
            return False
        await execute(
            lambda: QuickBooksRepository.set_payment_status(self.db, order, payment_status),
            description=f"store payment status for order {order.id}",
        )
        return True

    async def _remove_posted_payments(self, order: WorkOrder, invoice: dict) -> list[str]:
        """
        Delete payments linked to the invoice that were posted for this order.
        Payments recorded directly in QuickBooks are left alone.
        """
        note = payment_note_for(order)
        removed = []
        for txn in invoice.get("LinkedTxn") or []:
            if txn.get("TxnType") != "Payment":
                continue
            payment = await self.client.get_payment(txn["TxnId"])
            if payment.get("PrivateNote") != note:
                continue
            await self.client.delete_payment(str(payment["Id"]), str(payment.get("SyncToken", "0")))
            await self._pause()
            removed.append(str(payment["Id"]))
            self._log(order, "payment_delete", "success")
            logger.info(f"✅ Removed QuickBooks payment {payment['Id']} from reopened order {order.id}")

        if not removed:
            logger.warning(
                f"⚠️ Invoice {invoice.get('Id')} for reopened order {order.id} carries payments "
                f"not posted by this integration; its balance is left as is"
            )
        return removed

    async def push_order_status(self, order: WorkOrder) -> dict:
        """
        Bring the linked invoice in line with the order's status.

        Returns:
            dict with invoiceId, state, paymentId (or None) and paymentStatus
        """
        invoice_id = order.quickbooks_invoice_id
        if not invoice_id:
            raise QuickBooksError(f"Order {order.id} has no QuickBooks invoice")

        state = invoice_state_for(order.status, order.order_amount)
        invoice = await self.client.get_invoice(invoice_id)
        sync_token = str(invoice.get("SyncToken", "0"))
        payment_id = None

        try:
            if isinstance(state, VoidedInvoice):
                final = await self.client.void_invoice(invoice_id, sync_token)
                await self._pause()
                self._log(order, "invoice_void", "success")
                state_name = "voided"
            else:
                updated = await self.client.update_invoice(
                    invoice_id,
                    sync_token,
                    {
                        "Line": build_invoice_lines(order),
                        "PrivateNote": f"Status: {order.status}",
                    },
                )
                await self._pause()
                self._log(order, "invoice_status", "success")
                final = updated
                balance = to_money(updated.get("Balance", invoice.get("Balance")))

                if isinstance(state, SettledInvoice):
                    state_name = "settled"
                    if balance > 0:
                        customer_id = (invoice.get("CustomerRef") or {}).get("value") or (
                            order.client.quickbooks_customer_id if order.client else None
                        )
                        payment = await self.client.create_payment(
                            customer_id,
                            min(state.payment_amount, balance),
                            invoice_id,
                            private_note=payment_note_for(order),
                        )
                        await self._pause()
                        payment_id = payment.get("Id")
                        self._log(order, "payment", "success")
                        logger.info(f"✅ Recorded QuickBooks payment {payment_id} for order {order.id}")
                        final = None
                    else:
                        logger.info(f"Invoice {invoice_id} already settled, no payment posted")
                else:
                    state_name = "open"
                    if balance < state.balance:
                        # Reopened after settling: take back the payments posted for this order
                        if await self._remove_posted_payments(order, updated or invoice):
                            final = None

            if not final:
                final = await self.client.get_invoice(invoice_id)
        except Exception as e:
            self._log(order, "invoice_status", "failed", str(e))
            raise

        payment_status = payment_status_for_invoice(final).value
        await self._write_payment_status(order, payment_status)

        logger.info(f"✅ Pushed status '{order.status}' of order {order.id} to invoice {invoice_id}")
        return {
            "invoiceId": invoice_id,
            "state": state_name,
            "paymentId": payment_id,
            "paymentStatus": order.order_payment_status,
        }

    async def pull_invoice(self, order: WorkOrder) -> bool:
        """Refresh the order's payment status from its invoice; True when a write happened"""
        invoice = await self.client.get_invoice(order.quickbooks_invoice_id)
        payment_status = payment_status_for_invoice(invoice).value
        written = await self._write_payment_status(order, payment_status)
        if written:
            logger.info(f"✅ Order {order.id} payment status -> {payment_status}")
        return written
