import hashlib
import hmac
from typing import Optional

from errors import InvalidSignatureError

SIGNATURE_HEADER = "X-Webhook-Signature"


def compute_signature(payload: bytes, secret: str) -> str:
    """hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: Optional[str], secret: str) -> None:
    """
    raise InvalidSignatureError unless `signature` matches the body.
    accepts an optional "sha256=" prefix on the header value.
    """
    if not signature:
        raise InvalidSignatureError("missing webhook signature")

    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]

    expected = compute_signature(payload, secret)
    if not hmac.compare_digest(expected, provided.lower()):
        raise InvalidSignatureError("webhook signature mismatch")
