"""
HMAC-SHA256 verification for payment signals.

Two schemes are in use and they are not interchangeable:

- checkout callback: HMAC over ``"<gateway_order_id>|<gateway_payment_id>"``
  keyed by the gateway key secret
- webhook: HMAC over the raw request body keyed by the webhook secret

Both produce lowercase hex digests and are compared in constant time.
"""

import hashlib
import hmac
from typing import Optional, Union


def compute_signature(message: Union[bytes, str], secret: str) -> str:
    """
    Compute a hex HMAC-SHA256 digest.

    Args:
        message: Payload to sign, encoded as UTF-8 when given as text
        secret: Shared secret

    Returns:
        Lowercase hex digest
    """
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def checkout_message(gateway_order_id: str, gateway_payment_id: str) -> str:
    return f"{gateway_order_id}|{gateway_payment_id}"


def verify_checkout_signature(
    gateway_order_id: str,
    gateway_payment_id: str,
    signature: Optional[str],
    secret: str,
) -> bool:
    """
    Verify the signature returned to the browser after checkout.

    Args:
        gateway_order_id: Order id the client claims to have paid
        gateway_payment_id: Payment id the client claims to have produced
        signature: Hex signature supplied by the client
        secret: Gateway key secret

    Returns:
        True only if every input is present and the digest matches
    """
    if not (gateway_order_id and gateway_payment_id and signature and secret):
        return False
    expected = compute_signature(checkout_message(gateway_order_id, gateway_payment_id), secret)
    return hmac.compare_digest(expected, signature.strip().lower())


def verify_webhook_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Verify a webhook delivery against its raw body.

    The body must be the exact bytes received; re-serialized JSON will not
    match.

    Args:
        raw_body: Request body as received
        signature: Value of the signature header
        secret: Webhook secret

    Returns:
        True if the digest matches
    """
    if not (signature and secret):
        return False
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected, signature.strip().lower())
