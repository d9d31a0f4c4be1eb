"""
Shared credential loader for headless scripts.

Priority: environment variables (including .env) → config/secrets.toml.
"""

import os
import tomllib
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def load_credentials(require_backend: bool = True) -> dict:
    """Load credentials from env vars, falling back to secrets.toml.

    Returns:
        Dict with all credential keys. The access token and functions URL
        may be None if not configured.
    """
    load_dotenv()

    # Try secrets.toml as fallback source
    secrets = {}
    secrets_path = PROJECT_ROOT / "config" / "secrets.toml"
    if secrets_path.exists():
        with open(secrets_path, "rb") as f:
            secrets = tomllib.load(f)

    def _get(key: str, required: bool = False) -> str | None:
        val = os.environ.get(key) or secrets.get(key)
        if required and not val:
            raise ValueError(f"Missing required credential: {key}. "
                             f"Set via environment or config/secrets.toml")
        return val

    return {
        # Required for any backend call
        "FIELDOPS_BACKEND_URL": _get("FIELDOPS_BACKEND_URL", required=require_backend),
        "FIELDOPS_BACKEND_KEY": _get("FIELDOPS_BACKEND_KEY", required=require_backend),
        # Optional: anonymous key access without a signed-in user
        "FIELDOPS_ACCESS_TOKEN": _get("FIELDOPS_ACCESS_TOKEN"),
        # Optional: only the plan parser needs it
        "FIELDOPS_FUNCTIONS_URL": _get("FIELDOPS_FUNCTIONS_URL"),
    }
