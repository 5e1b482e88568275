import os

# Configure before any orderflow import reads the environment
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["QUICKBOOKS_CLIENT_ID"] = "test-client-id"
os.environ["QUICKBOOKS_CLIENT_SECRET"] = "test-client-secret"
os.environ["QUICKBOOKS_WEBHOOK_VERIFIER_TOKEN"] = "test-verifier-token"
os.environ["QUICKBOOKS_RETRY_DELAY"] = "0"
os.environ["QUICKBOOKS_MUTATION_DELAY"] = "0"
os.environ["DB_LOG_SLOW_QUERIES"] = "false"

import json
import re
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional
from urllib.parse import parse_qs

import httpx
import pytest
from fastapi.testclient import TestClient

from orderflow.auth import get_current_user
from orderflow.database import Base, SessionLocal, engine, get_db
from orderflow.domain.integrations.quickbooks.client import QuickBooksClient
from orderflow.domain.integrations.quickbooks.dependencies import (
    get_quickbooks_http_client,
    get_token_manager,
)
from orderflow.domain.integrations.quickbooks.oauth import encrypt_token
from orderflow.domain.integrations.quickbooks.tokens import TokenManager
from orderflow.main import app
from orderflow.models import Client, PaymentStatus, Service, User, WorkOrder, WorkOrderService
from orderflow.models_quickbooks import QuickBooksIntegration
from orderflow.shared.resilience import RetryOptions

REALM_ID = "realm-1"
FAST_RETRIES = RetryOptions(timeout=5, max_retries=3, retry_delay=0)


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


class FakeQuickBooks:
    """In-memory stand-in for the Intuit token endpoint and the QuickBooks v3 API"""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.customers: list[dict] = []
        self.items: list[dict] = []
        self.invoices: dict[str, dict] = {}
        self.payments: list[dict] = []
        self.deleted_payments: list[dict] = []
        self.token_calls = 0
        self.token_status = 200
        self.failures: dict[tuple[str, str], list[int]] = {}
        self._next_id = 100

    # Helpers for tests
    def next_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    def add_item(self, name: str) -> dict:
        item = {"Id": self.next_id(), "Name": name, "Type": "Service"}
        self.items.append(item)
        return item

    def add_invoice(self, total, doc_number: Optional[str] = None, **fields) -> dict:
        invoice = {
            "Id": self.next_id(),
            "SyncToken": "0",
            "TotalAmt": float(_money(total)),
            "Balance": float(_money(total)),
            "CustomerRef": {"value": "cust-1"},
            **fields,
        }
        if doc_number:
            invoice["DocNumber"] = doc_number
        self.invoices[invoice["Id"]] = invoice
        return invoice

    def fail_next(self, method: str, resource: str, *status_codes: int) -> None:
        self.failures.setdefault((method, resource), []).extend(status_codes)

    def api_requests(self, method: Optional[str] = None, resource: Optional[str] = None) -> list[httpx.Request]:
        matched = []
        for request in self.requests:
            if request.url.host not in ("sandbox-quickbooks.api.intuit.com", "quickbooks.api.intuit.com"):
                continue
            if method and request.method != method:
                continue
            if resource and self._resource(request) != resource:
                continue
            matched.append(request)
        return matched

    def async_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handle))

    # Transport
    @staticmethod
    def _resource(request: httpx.Request) -> str:
        parts = request.url.path.split("/")
        # /v3/company/{realm}/{resource}[/{id}]
        return parts[4] if len(parts) > 4 else ""

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host

        if host == "oauth.platform.intuit.com":
            return self._token(request)
        if host == "developer.api.intuit.com":
            return httpx.Response(200, json={})

        resource = self._resource(request)
        pending = self.failures.get((request.method, resource))
        if pending:
            status = pending.pop(0)
            return httpx.Response(
                status, json={"Fault": {"Error": [{"Message": "Injected failure", "Detail": str(status)}]}}
            )

        parts = request.url.path.split("/")
        if request.method == "GET" and resource == "query":
            return self._query(request.url.params["query"])
        if request.method == "GET" and resource == "companyinfo":
            return httpx.Response(200, json={"CompanyInfo": {"CompanyName": "Test Garage LLC"}})
        if request.method == "GET" and resource == "payment":
            payment = next((p for p in self.payments if p["Id"] == parts[5]), None)
            if payment is None:
                return httpx.Response(400, json={"Fault": {"Error": [{"Message": "Object Not Found"}]}})
            return httpx.Response(200, json={"Payment": payment})
        if request.method == "GET" and resource == "invoice":
            invoice = self.invoices.get(parts[5])
            if invoice is None:
                return httpx.Response(400, json={"Fault": {"Error": [{"Message": "Object Not Found"}]}})
            return httpx.Response(200, json={"Invoice": invoice})

        body = json.loads(request.content) if request.content else {}
        if request.method == "POST" and resource == "item":
            item = {"Id": self.next_id(), **body}
            self.items.append(item)
            return httpx.Response(200, json={"Item": item})
        if request.method == "POST" and resource == "invoice":
            return self._write_invoice(request, body)
        if request.method == "POST" and resource == "payment":
            return self._payment(request, body)
        return httpx.Response(404, text="Not Found")

    def _token(self, request: httpx.Request) -> httpx.Response:
        self.token_calls += 1
        if self.token_status != 200:
            return httpx.Response(self.token_status, json={"error": "invalid_grant"})
        form = parse_qs(request.content.decode())
        assert request.headers["Authorization"].startswith("Basic ")
        assert form["grant_type"][0] in ("authorization_code", "refresh_token")
        return httpx.Response(
            200,
            json={
                "access_token": f"access-{self.token_calls}",
                "refresh_token": f"refresh-{self.token_calls}",
                "expires_in": 3600,
            },
        )

    def _query(self, statement: str) -> httpx.Response:
        if "from Customer" in statement:
            start = int(re.search(r"startposition (\d+)", statement).group(1))
            size = int(re.search(r"maxresults (\d+)", statement).group(1))
            page = self.customers[start - 1 : start - 1 + size]
            return httpx.Response(200, json={"QueryResponse": {"Customer": page} if page else {}})
        if "from Item" in statement:
            name = re.search(r"Name = '(.*?)'", statement).group(1)
            found = [i for i in self.items if i["Name"] == name]
            return httpx.Response(200, json={"QueryResponse": {"Item": found} if found else {}})
        if "from Invoice" in statement:
            doc_number = re.search(r"DocNumber = '(.*?)'", statement).group(1)
            found = [i for i in self.invoices.values() if i.get("DocNumber") == doc_number]
            return httpx.Response(200, json={"QueryResponse": {"Invoice": found} if found else {}})
        return httpx.Response(400, text="unsupported query")

    def _write_invoice(self, request: httpx.Request, body: dict) -> httpx.Response:
        if request.url.params.get("operation") == "void":
            invoice = self.invoices[body["Id"]]
            invoice.update({"Balance": 0.0, "TotalAmt": 0.0, "PrivateNote": "Voided"})
            invoice["SyncToken"] = str(int(invoice["SyncToken"]) + 1)
            return httpx.Response(200, json={"Invoice": invoice})

        if body.get("sparse"):
            invoice = self.invoices[body["Id"]]
            if body["SyncToken"] != invoice["SyncToken"]:
                return httpx.Response(400, json={"Fault": {"Error": [{"Message": "Stale Object Error"}]}})
            paid = _money(invoice["TotalAmt"]) - _money(invoice["Balance"])
            if "Line" in body:
                total = sum((_money(line["Amount"]) for line in body["Line"]), Decimal("0.00"))
                invoice["Line"] = body["Line"]
                invoice["TotalAmt"] = float(total)
                invoice["Balance"] = float(total - paid)
            if "PrivateNote" in body:
                invoice["PrivateNote"] = body["PrivateNote"]
            invoice["SyncToken"] = str(int(invoice["SyncToken"]) + 1)
            return httpx.Response(200, json={"Invoice": invoice})

        total = sum((_money(line["Amount"]) for line in body["Line"]), Decimal("0.00"))
        invoice = {
            **body,
            "Id": self.next_id(),
            "SyncToken": "0",
            "TotalAmt": float(total),
            "Balance": float(total),
        }
        self.invoices[invoice["Id"]] = invoice
        return httpx.Response(200, json={"Invoice": invoice})

    def _payment(self, request: httpx.Request, body: dict) -> httpx.Response:
        if request.url.params.get("operation") == "delete":
            payment = next(p for p in self.payments if p["Id"] == body["Id"])
            self.payments.remove(payment)
            self.deleted_payments.append(payment)
            invoice = self.invoices[payment["Line"][0]["LinkedTxn"][0]["TxnId"]]
            invoice["Balance"] = float(_money(invoice["Balance"]) + _money(payment["TotalAmt"]))
            invoice["LinkedTxn"] = [t for t in invoice.get("LinkedTxn", []) if t["TxnId"] != payment["Id"]]
            invoice["SyncToken"] = str(int(invoice["SyncToken"]) + 1)
            return httpx.Response(200, json={"Payment": {"Id": payment["Id"], "status": "Deleted"}})

        invoice_id = body["Line"][0]["LinkedTxn"][0]["TxnId"]
        invoice = self.invoices[invoice_id]
        invoice["Balance"] = float(_money(invoice["Balance"]) - _money(body["TotalAmt"]))
        invoice["SyncToken"] = str(int(invoice["SyncToken"]) + 1)
        payment = {**body, "Id": self.next_id(), "SyncToken": "0"}
        invoice.setdefault("LinkedTxn", []).append({"TxnId": payment["Id"], "TxnType": "Payment"})
        self.payments.append(payment)
        return httpx.Response(200, json={"Payment": payment})


# Database
@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def user(db):
    user = User(auth_subject="user-1", email="owner@example.com", full_name="Owner", plan="professional")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def make_integration(db):
    def _make(user: User, expires_in: int = 3600, token_state: str = "valid") -> QuickBooksIntegration:
        integration = QuickBooksIntegration(
            user_id=user.id,
            access_token=encrypt_token("access-initial"),
            refresh_token=encrypt_token("refresh-initial"),
            token_expires_at=datetime.utcnow() + timedelta(seconds=expires_in),
            token_state=token_state,
            realm_id=REALM_ID,
            company_name="Test Garage LLC",
            environment="sandbox",
        )
        db.add(integration)
        db.commit()
        db.refresh(integration)
        return integration

    return _make


@pytest.fixture
def make_order(db):
    def _make(
        user: User,
        client: Client,
        lines: list[tuple[Service, int]],
        status: str = "Pending",
        payment_status: str = PaymentStatus.PENDING_INVOICE.value,
        quickbooks_invoice_id: Optional[str] = None,
    ) -> WorkOrder:
        amount = sum((_money(service.price) * qty for service, qty in lines), Decimal("0.00"))
        order = WorkOrder(
            user_id=user.id,
            client_id=client.id,
            status=status,
            schedule_date_time=datetime(2024, 3, 15, 9, 30),
            order_amount=amount,
            order_payment_status=payment_status,
            notes="Front brakes squeak",
            quickbooks_invoice_id=quickbooks_invoice_id,
        )
        db.add(order)
        db.commit()
        for service, qty in lines:
            db.add(WorkOrderService(work_order_id=order.id, service_id=service.id, quantity=qty))
        db.commit()
        db.refresh(order)
        return order

    return _make


@pytest.fixture
def linked_client(db, user):
    client = Client(user_id=user.id, name="Jane Driver", email="jane@example.com", quickbooks_customer_id="cust-1")
    db.add(client)
    db.commit()
    db.refresh(client)
    return client


# Remote API
@pytest.fixture
def fake_qbo():
    return FakeQuickBooks()


@pytest.fixture
async def qbo_client(fake_qbo):
    async with fake_qbo.async_client() as http_client:
        yield QuickBooksClient(REALM_ID, "access-initial", "sandbox", http_client=http_client, retry_options=FAST_RETRIES)


# HTTP app
@pytest.fixture
def api(db, user, fake_qbo):
    http_client = fake_qbo.async_client()
    manager = TokenManager(http_client=http_client)

    def override_get_db():
        yield db

    async def override_http_client():
        yield http_client

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: user
    app.dependency_overrides[get_quickbooks_http_client] = override_http_client
    app.dependency_overrides[get_token_manager] = lambda: manager
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
