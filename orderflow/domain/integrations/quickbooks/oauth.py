"""
QuickBooks OAuth 2.0 helpers
Token endpoint calls (code exchange, refresh, revoke) and token encryption at rest
"""

import base64
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import quote

import httpx
from cryptography.fernet import Fernet

from ....config import (
    QUICKBOOKS_CLIENT_ID,
    QUICKBOOKS_CLIENT_SECRET,
    QUICKBOOKS_ENCRYPTION_KEY,
    QUICKBOOKS_HTTP_TIMEOUT,
    QUICKBOOKS_REDIRECT_URI,
    SECRET_KEY,
)
from .errors import QuickBooksAPIError

logger = logging.getLogger(__name__)

# QuickBooks OAuth URLs (same for sandbox and production)
QUICKBOOKS_AUTH_URL = "https://appcenter.intuit.com/connect/oauth2"
QUICKBOOKS_TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
QUICKBOOKS_REVOKE_URL = "https://developer.api.intuit.com/v2/oauth2/tokens/revoke"
QUICKBOOKS_SCOPE = "com.intuit.quickbooks.accounting"


def _fernet_key() -> bytes:
    if QUICKBOOKS_ENCRYPTION_KEY:
        return QUICKBOOKS_ENCRYPTION_KEY.encode()
    # Derive a valid 32-byte urlsafe key from SECRET_KEY
    return base64.urlsafe_b64encode(hashlib.sha256(SECRET_KEY.encode()).digest())


# Encryption for tokens
cipher_suite = Fernet(_fernet_key())


def encrypt_token(token: str) -> str:
    """Encrypt a token for storage"""
    return cipher_suite.encrypt(token.encode()).decode()


def decrypt_token(encrypted_token: str) -> str:
    """Decrypt a stored token"""
    return cipher_suite.decrypt(encrypted_token.encode()).decode()


def get_basic_auth_header(
    client_id: Optional[str] = None, client_secret: Optional[str] = None
) -> str:
    """Generate Basic Auth header value for the Intuit token endpoint"""
    credentials = f"{client_id or QUICKBOOKS_CLIENT_ID}:{client_secret or QUICKBOOKS_CLIENT_SECRET}"
    return base64.b64encode(credentials.encode()).decode()


@dataclass
class TokenSet:
    access_token: str
    refresh_token: str
    expires_at: datetime


def build_authorization_url(state: str) -> str:
    """Build the Intuit consent URL"""
    return (
        f"{QUICKBOOKS_AUTH_URL}"
        f"?client_id={QUICKBOOKS_CLIENT_ID}"
        f"&response_type=code"
        f"&scope={quote(QUICKBOOKS_SCOPE)}"
        f"&redirect_uri={quote(QUICKBOOKS_REDIRECT_URI)}"
        f"&state={state}"
    )


def _parse_token_response(response: httpx.Response) -> TokenSet:
    # Error bodies are not always JSON; read as text first
    if response.status_code != 200:
        raise QuickBooksAPIError(response.status_code, response.text or response.reason_phrase, response.text)

    token_data = response.json()
    access_token = token_data.get("access_token")
    refresh_token = token_data.get("refresh_token")
    expires_in = int(token_data.get("expires_in", 3600))

    if not access_token or not refresh_token:
        raise QuickBooksAPIError(response.status_code, "Invalid token response from QuickBooks")

    return TokenSet(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=datetime.utcnow() + timedelta(seconds=expires_in),
    )


async def _post_token_endpoint(data: dict, http_client: Optional[httpx.AsyncClient]) -> TokenSet:
    headers = {
        "Accept": "application/json",
        "Content-Type": "application/x-www-form-urlencoded",
        "Authorization": f"Basic {get_basic_auth_header()}",
    }
    if http_client is not None:
        response = await http_client.post(QUICKBOOKS_TOKEN_URL, headers=headers, data=data)
        return _parse_token_response(response)

    async with httpx.AsyncClient(timeout=QUICKBOOKS_HTTP_TIMEOUT) as client:
        response = await client.post(QUICKBOOKS_TOKEN_URL, headers=headers, data=data)
        return _parse_token_response(response)


async def exchange_authorization_code(
    code: str, http_client: Optional[httpx.AsyncClient] = None
) -> TokenSet:
    """Exchange the OAuth callback code for the first token pair"""
    return await _post_token_endpoint(
        {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": QUICKBOOKS_REDIRECT_URI,
        },
        http_client,
    )


async def refresh_token_pair(
    refresh_token: str, http_client: Optional[httpx.AsyncClient] = None
) -> TokenSet:
    """
    Exchange a refresh token for a new access + refresh token pair.
    Intuit invalidates the old refresh token as soon as the new one is issued.
    """
    return await _post_token_endpoint(
        {"grant_type": "refresh_token", "refresh_token": refresh_token}, http_client
    )


async def revoke_token(token: str, http_client: Optional[httpx.AsyncClient] = None) -> bool:
    """Revoke a token with Intuit; best effort, returns whether Intuit accepted it"""
    headers = {
        "Accept": "application/json",
        "Content-Type": "application/json",
        "Authorization": f"Basic {get_basic_auth_header()}",
    }
    try:
        if http_client is not None:
            response = await http_client.post(QUICKBOOKS_REVOKE_URL, headers=headers, json={"token": token})
        else:
            async with httpx.AsyncClient(timeout=QUICKBOOKS_HTTP_TIMEOUT) as client:
                response = await client.post(QUICKBOOKS_REVOKE_URL, headers=headers, json={"token": token})
    except httpx.HTTPError as e:
        logger.warning(f"⚠️ QuickBooks token revoke request failed: {e}")
        return False

    if response.status_code != 200:
        logger.warning(f"⚠️ QuickBooks token revoke returned {response.status_code}: {response.text}")
        return False
    return True
