"""Shared-secret verification for inbound webhooks.

- Constant-time comparison (hmac.compare_digest)
- No secret configured -> every request fails (fail-closed)
"""

from __future__ import annotations

import hmac
import logging

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-api-key"


def verify_shared_secret(provided: str | None, expected: str) -> bool:
    """True only if a secret is configured and ``provided`` matches it."""
    if not expected:
        logger.warning("DEALHOOK_API_KEY not set — rejecting webhook")
        return False
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
