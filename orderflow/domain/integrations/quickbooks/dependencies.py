"""FastAPI dependencies for the QuickBooks integration"""

from collections.abc import AsyncIterator

import httpx
from fastapi import Depends
from sqlalchemy.orm import Session

from ....config import QUICKBOOKS_HTTP_TIMEOUT
from ....database import get_db
from .service import QuickBooksService
from .tokens import TokenManager

# Process-wide: holds the per-account refresh locks
token_manager = TokenManager()


def get_token_manager() -> TokenManager:
    return token_manager


async def get_quickbooks_http_client() -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(timeout=QUICKBOOKS_HTTP_TIMEOUT) as client:
        yield client


def get_quickbooks_service(
    db: Session = Depends(get_db),
    manager: TokenManager = Depends(get_token_manager),
    http_client: httpx.AsyncClient = Depends(get_quickbooks_http_client),
) -> QuickBooksService:
    """Dependency injection for QuickBooksService"""
    return QuickBooksService(db, manager, http_client)
