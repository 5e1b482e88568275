"""QuickBooks integration schemas - Pydantic models for requests, responses and webhook payloads"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel


class ConnectionStatus(BaseModel):
    """QuickBooks connection status"""

    connected: bool
    company_name: Optional[str] = None
    realm_id: Optional[str] = None
    environment: Optional[str] = None
    token_state: Optional[str] = None
    expires_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None


class SyncRequest(BaseModel):
    syncType: Optional[Literal["customers", "services", "invoices"]] = None


class EntityCountsResponse(BaseModel):
    created: int
    matched: int


class SyncResults(BaseModel):
    customers: EntityCountsResponse
    services: EntityCountsResponse
    invoices: EntityCountsResponse
    errors: list[str]


class SyncResponse(BaseModel):
    success: bool
    message: str
    results: SyncResults


class SyncOrderStatusRequest(BaseModel):
    orderId: int


class SyncOrderStatusResponse(BaseModel):
    success: bool
    orderId: int
    invoiceId: str
    invoiceCreated: bool
    state: str
    paymentId: Optional[str] = None
    paymentStatus: str


# Intuit webhook payload
class WebhookEntity(BaseModel):
    name: str
    id: str
    operation: Optional[str] = None
    lastUpdated: Optional[str] = None


class DataChangeEvent(BaseModel):
    entities: list[WebhookEntity] = []


class EventNotification(BaseModel):
    realmId: str
    dataChangeEvent: Optional[DataChangeEvent] = None


class WebhookPayload(BaseModel):
    eventNotifications: list[EventNotification] = []


class WebhookResult(BaseModel):
    success: bool = True
    processed: int = 0
    updated: int = 0
    unmatched: int = 0
    failed: int = 0
