import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./orderflow.db")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Frontend base URL for redirects
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

# QuickBooks OAuth Configuration
QUICKBOOKS_ENVIRONMENT = os.getenv("QUICKBOOKS_ENVIRONMENT", "sandbox")  # sandbox or production
QUICKBOOKS_CLIENT_ID = os.getenv("QUICKBOOKS_CLIENT_ID")
QUICKBOOKS_CLIENT_SECRET = os.getenv("QUICKBOOKS_CLIENT_SECRET")
QUICKBOOKS_REDIRECT_URI = os.getenv(
    "QUICKBOOKS_REDIRECT_URI", f"{FRONTEND_URL}/auth/quickbooks/callback"
)
# Verifier token from the Intuit developer dashboard (Webhooks section)
QUICKBOOKS_WEBHOOK_VERIFIER_TOKEN = os.getenv("QUICKBOOKS_WEBHOOK_VERIFIER_TOKEN")
# Fernet key for OAuth tokens at rest. Generate with:
# python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
# Falls back to a key derived from SECRET_KEY when unset.
QUICKBOOKS_ENCRYPTION_KEY = os.getenv("QUICKBOOKS_ENCRYPTION_KEY")

# Item used for invoice lines whose service has not been synced yet
QUICKBOOKS_DEFAULT_ITEM_ID = os.getenv("QUICKBOOKS_DEFAULT_ITEM_ID", "1")
# Optional income account attached to newly created service items
QUICKBOOKS_INCOME_ACCOUNT_ID = os.getenv("QUICKBOOKS_INCOME_ACCOUNT_ID")

# Remote call policy
QUICKBOOKS_HTTP_TIMEOUT = float(os.getenv("QUICKBOOKS_HTTP_TIMEOUT", "10"))
QUICKBOOKS_MAX_RETRIES = int(os.getenv("QUICKBOOKS_MAX_RETRIES", "3"))
QUICKBOOKS_RETRY_DELAY = float(os.getenv("QUICKBOOKS_RETRY_DELAY", "1.0"))
# Pause after each remote-mutating call to stay under Intuit's rate limiter
QUICKBOOKS_MUTATION_DELAY = float(os.getenv("QUICKBOOKS_MUTATION_DELAY", "0.25"))
# Wall-clock budget for one sync pass, in seconds
QUICKBOOKS_SYNC_TIME_BUDGET = float(os.getenv("QUICKBOOKS_SYNC_TIME_BUDGET", "60"))
# Refresh access tokens this many seconds before they expire
QUICKBOOKS_TOKEN_REFRESH_MARGIN = int(os.getenv("QUICKBOOKS_TOKEN_REFRESH_MARGIN", "300"))
