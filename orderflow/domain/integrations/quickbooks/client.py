"""
QuickBooks Online API client
Typed operations against the v3 accounting API; every call goes through the
resilient executor
"""

import json
import logging
from decimal import Decimal
from typing import Any, Optional
from urllib.parse import quote

import httpx

from ....config import QUICKBOOKS_ENVIRONMENT
from ....shared.resilience import DEFAULT_RETRY_OPTIONS, RetryOptions, execute
from .errors import QuickBooksAPIError

logger = logging.getLogger(__name__)

QUICKBOOKS_MINOR_VERSION = "65"
CUSTOMER_PAGE_SIZE = 100


def api_base_url(environment: str = QUICKBOOKS_ENVIRONMENT) -> str:
    if environment == "production":
        return "https://quickbooks.api.intuit.com/v3"
    return "https://sandbox-quickbooks.api.intuit.com/v3"


def escape_query_value(value: str) -> str:
    """Escape a literal for the QuickBooks query language"""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _fault_message(body: str) -> str:
    """Pull the first Fault error out of a QuickBooks error body, if it is JSON"""
    try:
        data = json.loads(body)
    except (ValueError, TypeError):
        return body
    fault = data.get("Fault") or data.get("fault") or {}
    errors = fault.get("Error") or fault.get("error") or []
    if errors:
        first = errors[0]
        message = first.get("Message") or first.get("message") or ""
        detail = first.get("Detail") or first.get("detail") or ""
        return f"{message}: {detail}" if detail else message
    return body


class QuickBooksClient:
    """Thin typed wrapper over the QuickBooks accounting API for one company"""

    def __init__(
        self,
        realm_id: str,
        access_token: str,
        environment: str = QUICKBOOKS_ENVIRONMENT,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_options: RetryOptions = DEFAULT_RETRY_OPTIONS,
    ):
        self.realm_id = realm_id
        self.access_token = access_token
        self.base_url = f"{api_base_url(environment)}/company/{realm_id}"
        self.retry_options = retry_options
        self._http_client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self) -> "QuickBooksClient":
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.retry_options.timeout)
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _headers(self, with_body: bool) -> dict:
        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.access_token}",
        }
        if with_body:
            headers["Content-Type"] = "application/json"
        return headers

    async def _send(
        self,
        method: str,
        endpoint: str,
        body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.retry_options.timeout)
            self._owns_client = True

        query = {"minorversion": QUICKBOOKS_MINOR_VERSION}
        if params:
            query.update(params)

        response = await self._http_client.request(
            method,
            f"{self.base_url}{endpoint}",
            headers=self._headers(body is not None),
            params=query,
            json=body,
        )

        # Read as text first: error bodies may be XML or plain text
        text = response.text
        if not 200 <= response.status_code < 300:
            message = _fault_message(text) if text else response.reason_phrase
            raise QuickBooksAPIError(response.status_code, message, text)

        if not text or not text.strip():
            raise QuickBooksAPIError(response.status_code, "Empty response body from QuickBooks API")
        try:
            return json.loads(text)
        except ValueError as e:
            # 200 with garbage is a transient upstream problem
            raise QuickBooksAPIError(502, f"Failed to parse JSON response: {e}", text) from e

    async def request(
        self,
        method: str,
        endpoint: str,
        body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        async def call() -> dict:
            return await self._send(method, endpoint, body, params)

        return await execute(call, self.retry_options, description=f"QuickBooks {method} {endpoint}")

    async def query(self, statement: str) -> dict:
        """Run a QuickBooks query-language statement and return QueryResponse"""
        data = await self.request("GET", "/query", params={"query": statement})
        return data.get("QueryResponse", {}) or {}

    # Customers (read only)
    async def list_customers(
        self, start_position: int = 1, max_results: int = CUSTOMER_PAGE_SIZE
    ) -> list[dict]:
        response = await self.query(
            f"select * from Customer startposition {start_position} maxresults {max_results}"
        )
        return response.get("Customer", [])

    # Service items
    async def find_service_by_name(self, name: str) -> Optional[dict]:
        response = await self.query(
            f"select * from Item where Name = '{escape_query_value(name)}' and Type = 'Service'"
        )
        items = response.get("Item", [])
        return items[0] if items else None

    async def create_service_item(
        self, name: str, income_account_id: Optional[str] = None
    ) -> dict:
        payload: dict[str, Any] = {"Name": name, "Type": "Service"}
        if income_account_id:
            payload["IncomeAccountRef"] = {"value": income_account_id}
        data = await self.request("POST", "/item", body=payload)
        return data.get("Item", {})

    # Invoices
    async def get_invoice(self, invoice_id: str) -> dict:
        data = await self.request("GET", f"/invoice/{quote(str(invoice_id))}")
        return data.get("Invoice", {})

    async def find_invoice_by_doc_number(self, doc_number: str) -> Optional[dict]:
        response = await self.query(
            f"select * from Invoice where DocNumber = '{escape_query_value(doc_number)}'"
        )
        invoices = response.get("Invoice", [])
        return invoices[0] if invoices else None

    async def create_invoice(self, invoice: dict) -> dict:
        data = await self.request("POST", "/invoice", body=invoice)
        return data.get("Invoice", {})

    async def update_invoice(self, invoice_id: str, sync_token: str, changes: dict) -> dict:
        """Sparse update; QuickBooks rejects updates without the current SyncToken"""
        body = {**changes, "Id": invoice_id, "SyncToken": sync_token, "sparse": True}
        data = await self.request("POST", "/invoice", body=body)
        return data.get("Invoice", {})

    async def void_invoice(self, invoice_id: str, sync_token: str) -> dict:
        data = await self.request(
            "POST",
            "/invoice",
            body={"Id": invoice_id, "SyncToken": sync_token},
            params={"operation": "void"},
        )
        return data.get("Invoice", {})

    # Payments
    async def create_payment(
        self,
        customer_id: str,
        amount: Decimal,
        invoice_id: str,
        private_note: Optional[str] = None,
    ) -> dict:
        payload: dict[str, Any] = {
            "CustomerRef": {"value": customer_id},
            "TotalAmt": float(amount),
            "Line": [
                {
                    "Amount": float(amount),
                    "LinkedTxn": [{"TxnId": invoice_id, "TxnType": "Invoice"}],
                }
            ],
        }
        if private_note:
            payload["PrivateNote"] = private_note
        data = await self.request("POST", "/payment", body=payload)
        return data.get("Payment", {})

    async def get_payment(self, payment_id: str) -> dict:
        data = await self.request("GET", f"/payment/{quote(str(payment_id))}")
        return data.get("Payment", {})

    async def delete_payment(self, payment_id: str, sync_token: str) -> dict:
        """Deleting a payment unapplies it, restoring the linked invoices' balance"""
        data = await self.request(
            "POST",
            "/payment",
            body={"Id": payment_id, "SyncToken": sync_token},
            params={"operation": "delete"},
        )
        return data.get("Payment", {})

    # Company
    async def get_company_info(self) -> dict:
        data = await self.request("GET", f"/companyinfo/{quote(self.realm_id)}")
        return data.get("CompanyInfo", {})
