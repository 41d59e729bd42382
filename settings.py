"""App settings.

Flask loads this module on startup via ``app.config.from_pyfile(...)``; the
registry client and sync job read ``SETTINGS`` directly.

Sudreg (court register open-data API) credentials come from the environment
and are never logged.
"""

import os

from config import env_float, env_int

# Single source of truth for app configuration.
SETTINGS: dict[str, object] = {
    # Flask
    "SECRET_KEY": os.getenv("SECRET_KEY", "dev-not-secret"),
    # Logging
    "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO").upper(),
    # Sudreg OAuth2 client-credentials pair issued by the register.
    "SUDREG_CLIENT_ID": os.getenv("SUDREG_CLIENT_ID", ""),
    "SUDREG_CLIENT_SECRET": os.getenv("SUDREG_CLIENT_SECRET", ""),
    "SUDREG_TOKEN_URL": os.getenv(
        "SUDREG_TOKEN_URL", "https://sudreg-data.gov.hr/api/oauth/token"
    ),
    "SUDREG_API_BASE_URL": os.getenv(
        "SUDREG_API_BASE_URL", "https://sudreg-data.gov.hr/api/javni"
    ),
    # Listing page size used by the sync job (clamped to [1, 9999]).
    "SUDREG_PAGE_SIZE": env_int("SUDREG_PAGE_SIZE", 1000),
    "SUDREG_TIMEOUT_SECONDS": env_float("SUDREG_TIMEOUT_SECONDS", 30.0),
    "SUDREG_MAX_REQUESTS_PER_SECOND": env_int("SUDREG_MAX_REQUESTS_PER_SECOND", 5),
}

# Optional convenience exports (Flask only picks up uppercase module names).
SECRET_KEY = SETTINGS["SECRET_KEY"]
LOG_LEVEL = SETTINGS["LOG_LEVEL"]
