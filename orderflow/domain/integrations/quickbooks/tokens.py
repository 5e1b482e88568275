"""
QuickBooks token lifecycle

Valid -> (now >= expires_at - margin) -> Refreshing -> Valid | Invalid

Intuit rotates the refresh token on every refresh and invalidates the old one
immediately, so refreshes are serialized per account: a second request that
observed the same expired token waits on the account lock, re-reads the row and
reuses the token the first request stored.
"""

import asyncio
import enum
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Union

import httpx
from sqlalchemy.orm import Session

from ....config import QUICKBOOKS_TOKEN_REFRESH_MARGIN
from ....models_quickbooks import QuickBooksIntegration
from ....shared.resilience import NO_RETRY, execute
from .errors import ReconnectRequiredError
from .oauth import TokenSet, decrypt_token, refresh_token_pair
from .repository import QuickBooksRepository

logger = logging.getLogger(__name__)

RefreshFunc = Callable[[str], Awaitable[TokenSet]]


class TokenState(str, enum.Enum):
    VALID = "valid"
    REFRESHING = "refreshing"
    INVALID = "invalid"


class TokenManager:
    """Hands out valid access tokens, refreshing them at most once per expiry per account"""

    def __init__(
        self,
        refresh_func: Optional[RefreshFunc] = None,
        refresh_margin: timedelta = timedelta(seconds=QUICKBOOKS_TOKEN_REFRESH_MARGIN),
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._refresh_func = refresh_func
        self._http_client = http_client
        self.refresh_margin = refresh_margin
        self._locks: dict[int, asyncio.Lock] = {}

    def _lock_for(self, user_id: int) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    def state_of(self, integration: QuickBooksIntegration, now: Optional[datetime] = None) -> TokenState:
        """Current state as stored; 'refreshing' means a refresh is due"""
        if integration.token_state == TokenState.INVALID.value:
            return TokenState.INVALID
        now = now or datetime.utcnow()
        if now >= integration.token_expires_at - self.refresh_margin:
            return TokenState.REFRESHING
        return TokenState.VALID

    async def _exchange(self, refresh_token: str) -> TokenSet:
        if self._refresh_func is not None:
            return await self._refresh_func(refresh_token)
        return await refresh_token_pair(refresh_token, http_client=self._http_client)

    async def get_access_token(
        self, integration: Union[int, QuickBooksIntegration], db: Session
    ) -> str:
        """
        Return a usable access token for the integration, refreshing it first if needed.
        Accepts the integration row or its id.

        Raises:
            ReconnectRequiredError: the credential is missing, invalid or the refresh failed
        """
        if isinstance(integration, int):
            integration = db.get(QuickBooksIntegration, integration)
            if integration is None:
                raise ReconnectRequiredError("QuickBooks integration not found")
        state = self.state_of(integration)
        if state == TokenState.INVALID:
            raise ReconnectRequiredError()
        if state == TokenState.VALID:
            return decrypt_token(integration.access_token)
        return await self._refresh(integration, db, force=False)

    async def force_refresh(self, integration: QuickBooksIntegration, db: Session) -> str:
        """Refresh now regardless of expiry (manual refresh endpoint)"""
        if integration.token_state == TokenState.INVALID.value:
            raise ReconnectRequiredError()
        return await self._refresh(integration, db, force=True)

    async def _refresh(self, integration: QuickBooksIntegration, db: Session, force: bool) -> str:
        user_id = integration.user_id
        observed_refresh_token = integration.refresh_token

        async with self._lock_for(user_id):
            current = QuickBooksRepository.lock_integration(db, integration.id)
            if current is None:
                raise ReconnectRequiredError("QuickBooks integration was disconnected")

            state = self.state_of(current)
            if state == TokenState.INVALID:
                db.rollback()
                raise ReconnectRequiredError()
            if state == TokenState.VALID and not (force and current.refresh_token == observed_refresh_token):
                # Another request refreshed while we waited
                logger.debug(f"Reusing token refreshed by a concurrent request for user {user_id}")
                db.commit()  # release the row lock
                return decrypt_token(current.access_token)

            logger.info(f"🔄 Refreshing QuickBooks token for user {user_id}")
            refresh_token = decrypt_token(current.refresh_token)

            async def exchange() -> TokenSet:
                return await self._exchange(refresh_token)

            try:
                # Never retried: a lost response may already have rotated the refresh token
                tokens = await execute(
                    exchange,
                    NO_RETRY,
                    description="QuickBooks token refresh",
                )
            except Exception as e:
                logger.error(f"❌ QuickBooks token refresh failed for user {user_id}: {e}")
                QuickBooksRepository.mark_invalid(db, current)
                raise ReconnectRequiredError() from e

            QuickBooksRepository.store_refreshed_tokens(db, current, tokens)
            logger.info(f"✅ QuickBooks token refreshed for user {user_id}")
            return tokens.access_token
