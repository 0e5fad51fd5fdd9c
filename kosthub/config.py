# kosthub/config.py
# Environment-aware configuration for the KostHub backend

import os
from typing import Literal

# Environment detection
ENV: Literal["dev", "staging", "prod"] = os.environ.get("ENV", "dev")  # type: ignore
IS_DEV = (ENV == "dev")
IS_STAGING = (ENV == "staging")
IS_PROD = (ENV == "prod")

# JWT and session configuration
SECRET_KEY = os.environ.get("SECRET_KEY", "kosthub-dev-secret-key-change-me-in-prod")
ALGORITHM = "HS256"

# Token lifetimes
ACCESS_TOKEN_MINUTES = int(os.environ.get("ACCESS_TOKEN_MINUTES", "15"))
REFRESH_TOKEN_DAYS = int(os.environ.get("REFRESH_TOKEN_DAYS", "7"))

# Upper bound on a single authentication check before the caller gives up
# and treats the visitor as signed out (destination is preserved).
AUTH_CHECK_TIMEOUT_SECONDS = float(os.environ.get("AUTH_CHECK_TIMEOUT_SECONDS", "5"))

# Database configuration
DATABASE_PATH = os.environ.get("DATABASE_PATH", "kosthub.db")

# Marketplace derivation
CATALOG_READ_CONCURRENCY = max(1, int(os.environ.get("CATALOG_READ_CONCURRENCY", "4")))
MARKETPLACE_INCLUDE_FULLY_BOOKED = os.environ.get(
    "MARKETPLACE_INCLUDE_FULLY_BOOKED", "true"
).strip().lower() in ("1", "true", "yes", "on")

# CORS origins (expand for staging/prod)
CORS_ORIGINS = [
    "http://localhost:8501",  # Streamlit default
    "http://127.0.0.1:8501",
]

if IS_STAGING:
    staging_url = os.environ.get("CORS_ORIGINS", "")
    if staging_url:
        CORS_ORIGINS.extend(staging_url.split(","))
    else:
        CORS_ORIGINS.append("https://staging.kosthub.id")

if IS_PROD:
    prod_origins = os.environ.get("CORS_ORIGINS", "")
    if prod_origins:
        CORS_ORIGINS.extend(prod_origins.split(","))
    else:
        CORS_ORIGINS.append("https://app.kosthub.id")

print(f"[CONFIG] Environment: {ENV}")
print(f"[CONFIG] Database: {DATABASE_PATH}")
print(f"[CONFIG] Access token: {ACCESS_TOKEN_MINUTES} minutes")
print(f"[CONFIG] Auth check timeout: {AUTH_CHECK_TIMEOUT_SECONDS}s")
print(f"[CONFIG] Catalog read concurrency: {CATALOG_READ_CONCURRENCY}")
print(f"[CONFIG] Include fully booked listings: {MARKETPLACE_INCLUDE_FULLY_BOOKED}")
