"""
Signed, expiring OAuth state tokens.

The state round-trips through the provider's consent screen, so it is
HMAC-signed with SECRET_KEY instead of being kept server side.
"""

import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Optional

from skillsync.core.config import settings
from skillsync.core.errors import ValidationError


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def _b64decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _sign(payload: str) -> str:
    digest = hmac.new(settings.SECRET_KEY.encode(), payload.encode(), hashlib.sha256).digest()
    return _b64encode(digest)


def create_oauth_state(
    owner_id: str,
    provider: str,
    owner_type: str = "employee",
    ttl_seconds: Optional[int] = None,
) -> str:
    """Build a state token binding the consent flow to an owner and provider."""
    payload = {
        "owner_id": owner_id,
        "owner_type": owner_type,
        "provider": provider,
        "nonce": secrets.token_urlsafe(16),
        "exp": int(time.time()) + (ttl_seconds or settings.OAUTH_STATE_TTL_SECONDS),
    }
    body = _b64encode(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode())
    return f"{body}.{_sign(body)}"


def verify_oauth_state(token: str, provider: Optional[str] = None) -> dict[str, Any]:
    """
    Validate a state token and return its payload.

    Raises:
        ValidationError: If the token is malformed, tampered with, expired,
            or was issued for another provider
    """
    try:
        body, signature = token.split(".", 1)
    except (AttributeError, ValueError):
        raise ValidationError("Malformed OAuth state")

    if not hmac.compare_digest(signature, _sign(body)):
        raise ValidationError("OAuth state signature mismatch")

    try:
        payload = json.loads(_b64decode(body))
    except ValueError:
        raise ValidationError("Malformed OAuth state")

    if payload.get("exp", 0) < time.time():
        raise ValidationError("OAuth state expired")
    if provider is not None and payload.get("provider") != provider:
        raise ValidationError("OAuth state was issued for a different provider", provider=provider)
    return payload


def tokens_match(provided: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison that treats a missing value as a mismatch."""
    if not provided or not expected:
        return False
    return secrets.compare_digest(provided.encode(), expected.encode())
