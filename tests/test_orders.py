from decimal import Decimal

import pytest

from orderflow import plan_limits
from orderflow.domain.orders.repository import WorkOrderRepository
from orderflow.models import PaymentStatus, Service, WorkOrder


@pytest.fixture
def services(db, user):
    oil = Service(user_id=user.id, name="Oil Change", price=Decimal("49.99"), quickbooks_item_id="7")
    wash = Service(user_id=user.id, name="Car Wash", price=Decimal("0.10"))
    db.add_all([oil, wash])
    db.commit()
    return oil, wash


def order_body(client, services, /, **overrides):
    oil, wash = services
    body = {
        "clientId": client.id,
        "scheduleDateTime": "2024-03-15T09:30:00",
        "notes": "Customer waits on site",
        "services": [
            {"serviceId": oil.id, "quantity": 2},
            {"serviceId": wash.id, "quantity": 3},
        ],
    }
    body.update(overrides)
    return body


def test_create_order_totals_its_services(api, db, linked_client, services):
    response = api.post("/orders", json=order_body(linked_client, services))

    assert response.status_code == 201
    data = response.json()
    assert Decimal(str(data["orderAmount"])) == Decimal("100.28")
    assert data["status"] == "Pending"
    assert data["paymentStatus"] == "Unpaid"
    assert [line["quantity"] for line in data["services"]] == [2, 3]


def test_failed_service_lines_roll_back_the_order(api, db, linked_client, services, monkeypatch):
    def broken(db, order, lines):
        raise RuntimeError("connection lost")

    monkeypatch.setattr(WorkOrderRepository, "add_service_lines", staticmethod(broken))

    response = api.post("/orders", json=order_body(linked_client, services))

    assert response.status_code == 500
    assert db.query(WorkOrder).count() == 0


def test_unknown_service_is_rejected_before_insert(api, db, linked_client, services):
    body = order_body(linked_client, services, services=[{"serviceId": 9999, "quantity": 1}])

    response = api.post("/orders", json=body)

    assert response.status_code == 400
    assert db.query(WorkOrder).count() == 0


def test_unknown_client(api, services):
    response = api.post(
        "/orders",
        json={"clientId": 9999, "scheduleDateTime": "2024-03-15T09:30:00", "services": []},
    )

    assert response.status_code == 404


def test_monthly_quota(api, db, user, linked_client, services, monkeypatch):
    user.plan = "free"
    db.commit()
    monkeypatch.setitem(plan_limits.PLAN_QUOTAS["free"], "work_orders_per_month", 1)

    assert api.post("/orders", json=order_body(linked_client, services)).status_code == 201
    response = api.post("/orders", json=order_body(linked_client, services))

    assert response.status_code == 403
    assert db.query(WorkOrder).count() == 1


def test_status_change_without_invoice_stays_local(api, db, user, make_order, linked_client, services, fake_qbo):
    order = make_order(user, linked_client, [(services[0], 1)])

    response = api.patch(f"/orders/{order.id}/status", json={"status": "In Progress"})

    assert response.status_code == 200
    assert response.json()["order"]["status"] == "In Progress"
    assert response.json()["quickbooks"] is None
    assert fake_qbo.requests == []


def test_status_change_pushes_to_linked_invoice(
    api, db, user, make_order, make_integration, linked_client, services, fake_qbo
):
    make_integration(user)
    remote = fake_qbo.add_invoice("49.99")
    order = make_order(user, linked_client, [(services[0], 1)], quickbooks_invoice_id=remote["Id"])

    response = api.patch(f"/orders/{order.id}/status", json={"status": "Completed"})

    assert response.status_code == 200
    data = response.json()
    assert data["quickbooks"]["pushed"] is True
    assert data["quickbooks"]["state"] == "settled"
    assert data["order"]["paymentStatus"] == PaymentStatus.PAID.value
    assert len(fake_qbo.payments) == 1


def test_remote_failure_keeps_local_status(
    api, db, user, make_order, make_integration, linked_client, services, fake_qbo
):
    make_integration(user)
    remote = fake_qbo.add_invoice("49.99")
    order = make_order(user, linked_client, [(services[0], 1)], quickbooks_invoice_id=remote["Id"])
    fake_qbo.fail_next("GET", "invoice", 500, 500, 500)

    response = api.patch(f"/orders/{order.id}/status", json={"status": "Cancelled"})

    assert response.status_code == 200
    assert response.json()["quickbooks"]["pushed"] is False
    db.refresh(order)
    assert order.status == "Cancelled"


def test_invalid_status(api, user, make_order, linked_client, services):
    order = make_order(user, linked_client, [(services[0], 1)])

    response = api.patch(f"/orders/{order.id}/status", json={"status": "Lost"})

    assert response.status_code == 422
