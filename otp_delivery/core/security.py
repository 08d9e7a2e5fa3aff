import hashlib
import hmac
from typing import Optional

from otp_delivery.core.config import settings


def sign_payload(payload: bytes, secret: Optional[str] = None) -> str:
    """
    Sign a status callback body using HMAC-SHA256.

    Args:
        payload: The raw request body
        secret: Signing secret, defaults to STATUS_WEBHOOK_SECRET

    Returns:
        str: Hex digest to send in the X-Signature header
    """
    key = (secret or settings.STATUS_WEBHOOK_SECRET or "").encode()
    return hmac.new(key, payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """
    Verify a status callback signature.

    Without a configured secret every payload is accepted.
    """
    secret = secret if secret is not None else settings.STATUS_WEBHOOK_SECRET
    if not secret:
        return True
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(payload, secret), signature)
