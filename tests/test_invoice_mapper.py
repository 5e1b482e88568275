import json
from decimal import Decimal

import pytest

from orderflow.domain.integrations.quickbooks.invoice_mapper import (
    InvoiceStateMapper,
    OpenInvoice,
    SettledInvoice,
    VoidedInvoice,
    invoice_state_for,
    payment_status_for_invoice,
)
from orderflow.models import OrderStatus, PaymentStatus, Service


@pytest.fixture
def oil_change(db, user):
    service = Service(user_id=user.id, name="Oil Change", price=Decimal("75.00"), quickbooks_item_id="7")
    db.add(service)
    db.commit()
    return service


@pytest.mark.parametrize(
    "status, expected",
    [
        (OrderStatus.PENDING, OpenInvoice(Decimal("150.00"))),
        (OrderStatus.IN_PROGRESS, OpenInvoice(Decimal("150.00"))),
        (OrderStatus.COMPLETED, SettledInvoice(Decimal("150.00"))),
        (OrderStatus.ARCHIVED, SettledInvoice(Decimal("150.00"))),
        (OrderStatus.CANCELLED, VoidedInvoice()),
    ],
)
def test_invoice_state_for_every_status(status, expected):
    assert invoice_state_for(status, Decimal("150")) == expected
    assert invoice_state_for(status.value, "150.00") == expected


@pytest.mark.parametrize(
    "invoice, expected",
    [
        ({"Balance": 0}, PaymentStatus.PAID),
        ({"Balance": 0.0, "EmailStatus": "EmailSent"}, PaymentStatus.PAID),
        ({"Balance": 150.0, "EmailStatus": "EmailSent"}, PaymentStatus.PENDING_INVOICE),
        ({"Balance": 150.0, "EmailStatus": "NotSet"}, PaymentStatus.UNPAID),
        ({"Balance": 20.5}, PaymentStatus.UNPAID),
        ({"Balance": 0.0, "TotalAmt": 0.0, "PrivateNote": "Voided"}, PaymentStatus.UNPAID),
        ({"Balance": 0.0, "TotalAmt": 0.0}, PaymentStatus.UNPAID),
    ],
)
def test_payment_status_for_invoice(invoice, expected):
    assert payment_status_for_invoice(invoice) == expected


async def test_completing_an_order_settles_the_invoice_once(
    db, user, fake_qbo, qbo_client, make_order, linked_client, oil_change
):
    remote = fake_qbo.add_invoice("150.00")
    order = make_order(user, linked_client, [(oil_change, 2)], quickbooks_invoice_id=remote["Id"])
    order.status = OrderStatus.COMPLETED.value
    db.commit()

    mapper = InvoiceStateMapper(db, qbo_client, mutation_delay=0)
    result = await mapper.push_order_status(order)

    assert result["state"] == "settled"
    assert len(fake_qbo.payments) == 1
    payment = fake_qbo.payments[0]
    assert Decimal(str(payment["TotalAmt"])) == Decimal("150.00")
    assert payment["Line"][0]["LinkedTxn"] == [{"TxnId": remote["Id"], "TxnType": "Invoice"}]
    assert fake_qbo.invoices[remote["Id"]]["Balance"] == 0
    db.refresh(order)
    assert order.order_payment_status == PaymentStatus.PAID.value

    # Redelivery of the same status leaves the remote balance and payments alone
    again = await mapper.push_order_status(order)
    assert again["paymentId"] is None
    assert len(fake_qbo.payments) == 1


async def test_open_status_updates_invoice_with_sync_token(
    db, user, fake_qbo, qbo_client, make_order, linked_client, oil_change
):
    remote = fake_qbo.add_invoice("75.00", SyncToken="3")
    order = make_order(user, linked_client, [(oil_change, 1)], quickbooks_invoice_id=remote["Id"])
    order.status = OrderStatus.IN_PROGRESS.value
    db.commit()

    result = await InvoiceStateMapper(db, qbo_client, mutation_delay=0).push_order_status(order)

    assert result["state"] == "open"
    [update] = fake_qbo.api_requests("POST", "invoice")
    body = json.loads(update.content)
    assert body["sparse"] is True
    assert body["SyncToken"] == "3"
    assert body["PrivateNote"] == "Status: In Progress"
    assert fake_qbo.payments == []
    db.refresh(order)
    assert order.order_payment_status == PaymentStatus.UNPAID.value


async def test_cancelling_voids_the_invoice(db, user, fake_qbo, qbo_client, make_order, linked_client, oil_change):
    remote = fake_qbo.add_invoice("75.00")
    order = make_order(user, linked_client, [(oil_change, 1)], quickbooks_invoice_id=remote["Id"])
    order.status = OrderStatus.CANCELLED.value
    db.commit()

    result = await InvoiceStateMapper(db, qbo_client, mutation_delay=0).push_order_status(order)

    assert result["state"] == "voided"
    [void] = fake_qbo.api_requests("POST", "invoice")
    assert void.url.params["operation"] == "void"
    assert fake_qbo.invoices[remote["Id"]]["PrivateNote"] == "Voided"
    db.refresh(order)
    assert order.order_payment_status == PaymentStatus.UNPAID.value


async def test_pull_writes_only_on_change(db, user, fake_qbo, qbo_client, make_order, linked_client, oil_change):
    remote = fake_qbo.add_invoice("75.00")
    remote["Balance"] = 0.0
    order = make_order(user, linked_client, [(oil_change, 1)], quickbooks_invoice_id=remote["Id"])

    mapper = InvoiceStateMapper(db, qbo_client, mutation_delay=0)
    assert await mapper.pull_invoice(order) is True
    db.refresh(order)
    assert order.order_payment_status == PaymentStatus.PAID.value

    assert await mapper.pull_invoice(order) is False
    # Pulling never writes to QuickBooks
    assert fake_qbo.api_requests("POST") == []


async def test_reopening_a_settled_order_takes_back_its_payment(
    db, user, fake_qbo, qbo_client, make_order, linked_client, oil_change
):
    remote = fake_qbo.add_invoice("150.00")
    order = make_order(user, linked_client, [(oil_change, 2)], quickbooks_invoice_id=remote["Id"])
    mapper = InvoiceStateMapper(db, qbo_client, mutation_delay=0)

    order.status = OrderStatus.COMPLETED.value
    db.commit()
    await mapper.push_order_status(order)
    assert fake_qbo.invoices[remote["Id"]]["Balance"] == 0

    order.status = OrderStatus.PENDING.value
    db.commit()
    result = await mapper.push_order_status(order)

    invoice = fake_qbo.invoices[remote["Id"]]
    assert result["state"] == "open"
    assert Decimal(str(invoice["Balance"])) == Decimal("150.00")
    assert fake_qbo.payments == []
    assert len(fake_qbo.deleted_payments) == 1
    db.refresh(order)
    assert order.order_payment_status == PaymentStatus.UNPAID.value
    assert order.order_payment_status == payment_status_for_invoice(invoice).value

    # A pull of the same invoice agrees with the push
    assert await mapper.pull_invoice(order) is False


async def test_reopening_keeps_payments_recorded_in_quickbooks(
    db, user, fake_qbo, qbo_client, make_order, linked_client, oil_change
):
    remote = fake_qbo.add_invoice("75.00")
    order = make_order(user, linked_client, [(oil_change, 1)], quickbooks_invoice_id=remote["Id"])
    fake_qbo.payments.append(
        {
            "Id": "900",
            "SyncToken": "0",
            "TotalAmt": 75.0,
            "PrivateNote": "Paid at the counter",
            "Line": [{"Amount": 75.0, "LinkedTxn": [{"TxnId": remote["Id"], "TxnType": "Invoice"}]}],
        }
    )
    remote["Balance"] = 0.0
    remote["LinkedTxn"] = [{"TxnId": "900", "TxnType": "Payment"}]
    order.status = OrderStatus.IN_PROGRESS.value
    db.commit()

    result = await InvoiceStateMapper(db, qbo_client, mutation_delay=0).push_order_status(order)

    assert result["state"] == "open"
    assert [p["Id"] for p in fake_qbo.payments] == ["900"]
    assert fake_qbo.deleted_payments == []
    db.refresh(order)
    # Local status follows the remote balance
    assert order.order_payment_status == PaymentStatus.PAID.value
