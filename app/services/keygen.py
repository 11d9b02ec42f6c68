# app/services/keygen.py
"""Access-key derivation for upstream provider APIs."""
import hashlib
import hmac
from typing import Optional

from app.core.config import settings

API_KEY_PREFIX = "flux_"


def generate_api_key_from_uuid(identifier: Optional[str], secret: Optional[str] = None) -> Optional[str]:
    """
    Derive the access key the gateway presents to a provider's API.

    The key is an HMAC-SHA256 of the provider-issued identifier under the
    gateway secret, so it is stable per identifier and never reveals it.

    Returns:
        The derived key, or None when the metadata carries no identifier
    """
    if not identifier:
        return None
    key = (secret if secret is not None else settings.ACCESS_KEY_SECRET).encode("utf-8")
    digest = hmac.new(key, identifier.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"{API_KEY_PREFIX}{digest}"
