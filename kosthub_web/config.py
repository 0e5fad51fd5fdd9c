# kosthub_web/config.py
# Environment-aware configuration for the KostHub web surface

import os
from typing import Literal

# Environment detection - normalize to lowercase
_raw_env = os.environ.get("ENV", "production").lower()
ENV: Literal["local", "staging", "production"] = _raw_env if _raw_env in ("local", "staging", "production") else "production"  # type: ignore

IS_LOCAL = (ENV == "local")
IS_STAGING = (ENV == "staging")
IS_PROD = (ENV == "production")
IS_DEV = IS_LOCAL

LOCAL_BACKEND_URL = "http://127.0.0.1:8000"


def validate_api_url(url: str, env: str) -> None:
    """
    Validate the backend URL for the environment.

    Raises:
        ValueError: empty URL, or plain HTTP / localhost outside local
    """
    if not url:
        raise ValueError("API base URL cannot be empty")

    if env in ("staging", "production"):
        if not url.startswith("https://"):
            raise ValueError(f"Production/staging must use HTTPS. Got: {url}")
        if "127.0.0.1" in url or "localhost" in url:
            raise ValueError(f"Production/staging cannot use localhost URLs. Got: {url}")


def get_api_base_url() -> str:
    """
    Backend URL with trailing slash removed.

    Priority: BACKEND_URL env var, then the local default (ENV=local only).

    Raises:
        RuntimeError: staging/production without BACKEND_URL
    """
    backend_url = os.environ.get("BACKEND_URL", "").strip()
    if backend_url:
        url = backend_url.rstrip("/")
        validate_api_url(url, ENV)
        return url

    if ENV == "local":
        return LOCAL_BACKEND_URL

    raise RuntimeError(
        f"Backend URL not configured for {ENV.upper()} environment. "
        f"Set BACKEND_URL; production/staging must use HTTPS and cannot fall back to localhost."
    )


# Bounded wait for identity checks; on expiry the visitor is treated as signed out
SESSION_CHECK_TIMEOUT_SECONDS = float(os.environ.get("SESSION_CHECK_TIMEOUT_SECONDS", "5"))
REQUEST_TIMEOUT_SECONDS = float(os.environ.get("REQUEST_TIMEOUT_SECONDS", "20"))

ENABLE_DEBUG_UI = IS_DEV

print(f"[CONFIG] Environment: {ENV}")
print(f"[CONFIG] Debug UI: {'enabled' if ENABLE_DEBUG_UI else 'disabled'}")
