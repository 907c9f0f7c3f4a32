"""Runtime configuration for the accounts core.

Values come from the environment, with ``backend/.env`` as a fallback source.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parent.parent
load_dotenv(ROOT_DIR / ".env")

# Record store
RECORD_STORE_BACKEND = os.getenv("RECORD_STORE_BACKEND", "mongo").strip().lower()
MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.getenv("DB_NAME", "blacklink_accounts")
MONGO_TIMEOUT_MS = int(os.getenv("MONGO_TIMEOUT_MS", "10000"))
TRANSACTION_MAX_ATTEMPTS = int(os.getenv("TRANSACTION_MAX_ATTEMPTS", "5"))

# Entitlement cache: one entry keyed by the caller's own uid unless raised
ENTITLEMENT_CACHE_TTL_SECONDS = float(os.getenv("ENTITLEMENT_CACHE_TTL_SECONDS", "300"))
ENTITLEMENT_CACHE_MAX_ENTRIES = int(os.getenv("ENTITLEMENT_CACHE_MAX_ENTRIES", "1"))

# Session bootstrap bounds
ORG_QUERY_LIMIT = int(os.getenv("ORG_QUERY_LIMIT", "6"))
SHORTCUT_QUERY_LIMIT = int(os.getenv("SHORTCUT_QUERY_LIMIT", "100"))

# Username suffixing for managed (district) accounts
COHORT_MARKER = os.getenv("COHORT_MARKER", "district").strip().lower()
COHORT_SUFFIX = os.getenv("COHORT_SUFFIX", "wsdr4").strip()

# Billing links
SUBSCRIBE_BASE_URL = os.getenv("SUBSCRIBE_BASE_URL", "https://coff.ee/blacklink")
