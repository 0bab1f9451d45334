"""PayPlus webhook signature verification (HMAC-SHA256 over the raw body)."""

import base64
import binascii
import hashlib
import hmac
import re

from edupay.common.errors import WebhookSignatureError


SIGNATURE_HEADERS = (
    "x-payplus-signature",
    "payplus-signature",
    "x-signature",
    "signature",
    "hash",
)
_HEX_RE = re.compile(r"^[a-fA-F0-9]{64}$")
_B64_RE = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")


def sign(body: bytes, secret: str, encoding: str = "base64") -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    if encoding == "hex":
        return digest.hex()
    return base64.b64encode(digest).decode("ascii")


def _decode(signature: str) -> bytes | None:
    if _HEX_RE.match(signature):
        return bytes.fromhex(signature)
    if _B64_RE.match(signature) and len(signature) > 32:
        try:
            return base64.b64decode(signature, validate=True)
        except (binascii.Error, ValueError):
            return None
    return None


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Return True when `signature` is a valid hex or base64 HMAC of `body`."""

    if not signature or not secret:
        return False
    provided = _decode(signature.strip().removeprefix("sha256="))
    if provided is None:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return hmac.compare_digest(provided, expected)


def signature_from_headers(headers) -> str | None:
    for name in SIGNATURE_HEADERS:
        value = headers.get(name)
        if value:
            return value
    return None


def require_valid_signature(body: bytes, headers, secret: str) -> None:
    if not verify_signature(body, signature_from_headers(headers), secret):
        raise WebhookSignatureError("invalid webhook signature")
