"""Payment webhook signature verification.

The gateway signs each delivery with HMAC-SHA256 over the notification URL
it was configured with followed by the raw request body, base64 encoded in
the ``x-square-hmacsha256-signature`` header.
"""

import base64
import hashlib
import hmac

from django.conf import settings

from .exceptions import WebhookSignatureError

SIGNATURE_HEADER = "HTTP_X_SQUARE_HMACSHA256_SIGNATURE"


def compute_signature(body: bytes, key: str, notification_url: str) -> str:
    payload = notification_url.encode("utf-8") + body
    digest = hmac.new(key.encode("utf-8"), payload, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(body: bytes, signature: str | None, key: str | None = None,
                     notification_url: str | None = None) -> None:
    """Raise ``WebhookSignatureError`` unless ``signature`` matches ``body``.

    Key and URL default to ``PAYMENT_WEBHOOK_SIGNATURE_KEY`` and
    ``PAYMENT_WEBHOOK_URL``. A missing key rejects every delivery.
    """
    key = key if key is not None else settings.PAYMENT_WEBHOOK_SIGNATURE_KEY
    notification_url = notification_url if notification_url is not None else settings.PAYMENT_WEBHOOK_URL
    if not key:
        raise WebhookSignatureError("Webhook signature key is not configured")
    if not signature:
        raise WebhookSignatureError("Missing webhook signature")
    expected = compute_signature(body, key, notification_url)
    if not hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("ascii", "ignore")):
        raise WebhookSignatureError("Webhook signature mismatch")
