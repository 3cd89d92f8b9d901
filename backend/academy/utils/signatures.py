import hashlib
import hmac

# Legacy manual-payment flow posts this literal instead of a gateway signature.
MANUAL_PAYMENT_SENTINEL = "direct_payment"


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _matches(expected: str, signature: str) -> bool:
    # Bytes, not str: compare_digest raises TypeError on non-ASCII text.
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8", "surrogateescape"))


def verify_payment_signature(*, order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    """Client checkout signature: HMAC_SHA256(secret, "<order_id>|<payment_id>")."""
    if not secret or not signature:
        return False
    expected = hmac_sha256_hex(secret, f"{order_id}|{payment_id}".encode("utf-8"))
    return _matches(expected, signature)


def verify_webhook_signature(*, body: bytes, signature: str | None, secret: str) -> bool:
    """Webhook signature is computed over the raw request body."""
    if not secret or not signature:
        return False
    expected = hmac_sha256_hex(secret, body)
    return _matches(expected, signature)
