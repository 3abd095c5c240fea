"""
HMAC signing for outgoing webhook payloads.

The signature is the hex HMAC-SHA256 digest of the exact body bytes sent on
the wire, keyed by the webhook secret.
"""

import hmac
import hashlib
from typing import Union

SIGNATURE_PREFIX = "sha256="


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def sign_payload(secret: str, body: Union[str, bytes]) -> str:
    """Return the hex HMAC-SHA256 digest of ``body``."""
    return hmac.new(_to_bytes(secret), _to_bytes(body), hashlib.sha256).hexdigest()


def signature_header(secret: str, body: Union[str, bytes]) -> str:
    """Return the ``X-Signature`` header value for ``body``."""
    return SIGNATURE_PREFIX + sign_payload(secret, body)


def verify_signature(secret: str, body: Union[str, bytes], header_value: str) -> bool:
    """Constant-time check of a received ``X-Signature`` header."""
    if not header_value:
        return False
    digest = header_value[len(SIGNATURE_PREFIX):] if header_value.startswith(SIGNATURE_PREFIX) else header_value
    return hmac.compare_digest(digest, sign_payload(secret, body))
