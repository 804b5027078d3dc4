"""
Webhook Security Module

Verification helpers for inbound Google Calendar push notifications.
Google echoes the channel token set at registration in X-Goog-Channel-Token;
it is compared in constant time against the stored value.
"""

import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class WebhookSignatureError(Exception):
    """Raised when webhook verification fails"""

    pass


def constant_time_compare(a: Optional[str], b: Optional[str]) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def verify_channel_token(received: Optional[str], expected: str, channel_id: str) -> None:
    """
    Verify the channel token of a Google push notification.

    Raises:
        WebhookSignatureError: if the token is missing or does not match
    """
    if not constant_time_compare(received, expected):
        logger.warning(f"🚨 Channel token mismatch for Google Calendar channel {channel_id}")
        raise WebhookSignatureError("Invalid channel token")
