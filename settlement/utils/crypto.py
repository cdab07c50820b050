"""Hashing and Ed25519 signature utilities using PyNaCl.

Covers deterministic idempotency keys, content hashes for uploaded files,
and the provider webhook signature scheme:

    X-Webhook-Signature: t=<unix-ms>,v0=<base64 signature>

where the signature is Ed25519 over sha256(f"{t}.{raw_body}").
"""

import base64
import hashlib
import time

from nacl.encoding import HexEncoder
from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import SigningKey, VerifyKey


def idempotency_key(scope: str, entity_id: object, action: str) -> str:
    """Deterministic, collision-resistant idempotency key.

    Components are length-prefixed before hashing so ("a:b", "c") and
    ("a", "b:c") cannot produce the same key.
    """
    parts = [scope, str(entity_id), action]
    material = "|".join(f"{len(p)}:{p}" for p in parts)
    digest = hashlib.sha256(material.encode()).hexdigest()
    return f"{scope}-{digest[:40]}"


def content_hash(data: bytes) -> str:
    """SHA-256 hex digest of raw file content, stored for tamper detection."""
    return hashlib.sha256(data).hexdigest()


def generate_keypair() -> tuple[str, str]:
    """Generate an Ed25519 keypair. Returns (private_key_hex, public_key_hex)."""
    private_hex = SigningKey.generate().encode(encoder=HexEncoder).decode()
    return private_hex, public_key_for(private_hex)


def public_key_for(private_key_hex: str) -> str:
    """Hex public key for a hex Ed25519 private key (32-byte seed)."""
    signing_key = SigningKey(private_key_hex.encode(), encoder=HexEncoder)
    return signing_key.verify_key.encode(encoder=HexEncoder).decode()


def build_webhook_message(timestamp: str, body: bytes) -> bytes:
    """Build the digest to sign: sha256(timestamp + "." + body)."""
    return hashlib.sha256(timestamp.encode() + b"." + body).digest()


def sign_webhook_payload(private_key_hex: str, timestamp: str, body: bytes) -> str:
    """Sign a webhook body and return the base64-encoded signature."""
    signing_key = SigningKey(private_key_hex.encode(), encoder=HexEncoder)
    signed = signing_key.sign(build_webhook_message(timestamp, body))
    return base64.b64encode(signed.signature).decode()


def build_signature_header(private_key_hex: str, body: bytes, timestamp: str | None = None) -> str:
    """Produce a complete X-Webhook-Signature header value."""
    if timestamp is None:
        timestamp = str(int(time.time() * 1000))
    signature = sign_webhook_payload(private_key_hex, timestamp, body)
    return f"t={timestamp},v0={signature}"


def parse_signature_header(header: str) -> tuple[str, str] | None:
    """Split ``t=<ts>,v0=<sig>`` into (timestamp, signature). None if malformed."""
    fields: dict[str, str] = {}
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            return None
        fields[key] = value
    timestamp = fields.get("t")
    signature = fields.get("v0")
    if not timestamp or not signature:
        return None
    return timestamp, signature


def verify_webhook_signature(
    public_key_hex: str,
    signature_b64: str,
    timestamp: str,
    body: bytes,
) -> bool:
    """Verify a provider webhook signature. Returns True if valid, False otherwise."""
    try:
        verify_key = VerifyKey(public_key_hex.encode(), encoder=HexEncoder)
        verify_key.verify(build_webhook_message(timestamp, body), base64.b64decode(signature_b64))
        return True
    except (BadSignatureError, CryptoError, ValueError, TypeError):
        return False


def is_timestamp_fresh(timestamp_ms: str, max_age_seconds: int = 600) -> bool:
    """Check a unix-millisecond timestamp is within the allowed window."""
    try:
        ts = int(timestamp_ms)
    except (ValueError, TypeError):
        return False
    age_ms = abs(int(time.time() * 1000) - ts)
    return age_ms <= max_age_seconds * 1000
