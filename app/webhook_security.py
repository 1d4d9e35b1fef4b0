"""
Webhook Security Module

Signing and verification for the payment gateway's XML API:
- Parameter signing (MD5 or HMAC-SHA256 over the sorted k=v string)
- Constant-time signature comparison (prevents timing attacks)
- XML body encoding/decoding for requests and asynchronous notifications
- Decryption of the encrypted refund notification payload
"""

import base64
import hashlib
import hmac
import logging
import xml.etree.ElementTree as ET
from typing import Mapping, Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

logger = logging.getLogger(__name__)

SIGN_TYPE_MD5 = "MD5"
SIGN_TYPE_HMAC_SHA256 = "HMAC-SHA256"


class WebhookSignatureError(Exception):
    """Raised when a notification body cannot be parsed or decrypted"""

    pass


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def build_sign_string(params: Mapping[str, object], key: str) -> str:
    """
    Canonical string the gateway signs: non-empty fields except ``sign``, keys sorted
    bytewise, ``k=v`` joined by ``&``, then ``&key=<secret>``.
    """
    pairs = []
    for name in sorted(params):
        if name == "sign":
            continue
        value = params[name]
        if value is None or str(value) == "":
            continue
        pairs.append(f"{name}={value}")
    pairs.append(f"key={key}")
    return "&".join(pairs)


def compute_signature(
    params: Mapping[str, object], key: str, sign_type: str = SIGN_TYPE_MD5
) -> str:
    """Uppercase hex signature of params under the merchant API key"""
    payload = build_sign_string(params, key).encode("utf-8")
    if sign_type == SIGN_TYPE_HMAC_SHA256:
        digest = hmac.new(key.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    elif sign_type == SIGN_TYPE_MD5:
        digest = hashlib.md5(payload).hexdigest()  # noqa: S324 - gateway-mandated algorithm
    else:
        raise ValueError(f"Unsupported sign type: {sign_type}")
    return digest.upper()


def verify_signature(
    params: Mapping[str, object], key: str, sign_type: Optional[str] = None
) -> bool:
    """
    Verify the ``sign`` field of a gateway payload.

    The payload's own ``sign_type`` wins over the configured default so HMAC-SHA256
    notifications verify even when requests are signed with MD5.
    """
    received = str(params.get("sign") or "")
    if not received:
        logger.warning("🚫 Gateway payload missing sign field")
        return False

    effective_type = str(params.get("sign_type") or sign_type or SIGN_TYPE_MD5)
    try:
        expected = compute_signature(params, key, effective_type)
    except ValueError:
        logger.warning(f"🚫 Gateway payload uses unsupported sign_type {effective_type}")
        return False

    if constant_time_compare(expected, received.upper()):
        return True

    logger.warning("🚫 Gateway signature mismatch")
    return False


# ============================================================================
# XML ENCODING
# ============================================================================


def to_xml(params: Mapping[str, object]) -> str:
    """Flat ``<xml><k>v</k>...</xml>`` document the gateway expects"""
    root = ET.Element("xml")
    for name, value in params.items():
        if value is None:
            continue
        child = ET.SubElement(root, name)
        child.text = str(value)
    return ET.tostring(root, encoding="unicode")


def parse_xml(body) -> dict[str, str]:
    """Flatten a gateway XML document into a dict of child tag -> text"""
    if isinstance(body, bytes):
        try:
            body = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise WebhookSignatureError("XML body is not valid UTF-8") from e
    if not body or not body.strip():
        raise WebhookSignatureError("Empty XML body")
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise WebhookSignatureError(f"Malformed XML body: {e}") from e
    return {child.tag: (child.text or "").strip() for child in root}


# ============================================================================
# REFUND NOTIFICATION DECRYPTION
# ============================================================================


def refund_info_key(api_key: str) -> bytes:
    """AES-256 key for req_info: lowercase hex MD5 of the merchant API key"""
    return hashlib.md5(api_key.encode("utf-8")).hexdigest().lower().encode("utf-8")  # noqa: S324


def decrypt_refund_info(req_info: str, api_key: str) -> dict[str, str]:
    """Decrypt the base64 AES-256-ECB ``req_info`` field of a refund notification"""
    try:
        ciphertext = base64.b64decode(req_info)
        decryptor = Cipher(algorithms.AES(refund_info_key(api_key)), modes.ECB()).decryptor()  # noqa: S305
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        plaintext = unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        logger.error(f"❌ Failed to decrypt refund notification: {e}")
        raise WebhookSignatureError("Could not decrypt refund notification") from e

    return parse_xml(plaintext)
