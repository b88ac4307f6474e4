# apnode/activitypub/signatures.py
"""
HTTP Signatures for outbound inbox deliveries.

Uses RSA-SHA256 over a four-line signing string:

    (request-target): post <path>
    host: <host>
    date: <RFC 1123 date>
    digest: SHA-256=<base64 body hash>

The same date and digest values must also be sent as headers, so callers
capture them once and pass them to both places.
"""

import base64
import hashlib
import json
import re
from email.utils import formatdate
from typing import Any, Dict, Optional

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.exceptions import InvalidSignature

from ..errors import ValidationError

SIGNED_HEADERS = "(request-target) host date digest"
ALGORITHM = "rsa-sha256"

_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


def serialize_activity(activity: Dict[str, Any]) -> bytes:
    """Serialize an activity exactly as it goes on the wire."""
    return json.dumps(activity, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_digest(body: bytes) -> str:
    """Digest header value for a request body."""
    digest = hashlib.sha256(body).digest()
    return "SHA-256=" + base64.b64encode(digest).decode("ascii")


def http_date(timestamp: Optional[float] = None) -> str:
    """RFC 1123 date in GMT, e.g. 'Sun, 06 Nov 1994 08:49:37 GMT'."""
    return formatdate(timeval=timestamp, usegmt=True)


def build_signing_string(target_path: str, host: str, date: str, digest: str) -> str:
    """Canonical string covered by the signature."""
    return "\n".join([
        f"(request-target): post {target_path}",
        f"host: {host}",
        f"date: {date}",
        f"digest: {digest}",
    ])


def sign_request(
    private_key_pem: bytes,
    key_id: str,
    target_path: str,
    date: str,
    digest: str,
    host: str,
) -> str:
    """
    Sign a POST request and return the Signature header value.

    RSA PKCS#1 v1.5 signatures are deterministic, so identical inputs
    always produce an identical header.

    Args:
        private_key_pem: Sender's PKCS8 PEM private key
        key_id: Sender's public key id (actor id + "#main-key")
        target_path: Path of the recipient inbox URL
        date: Value of the Date header
        digest: Value of the Digest header
        host: Value of the Host header
    """
    private_key = serialization.load_pem_private_key(
        private_key_pem,
        password=None,
    )
    signing_string = build_signing_string(target_path, host, date, digest)
    signature_bytes = private_key.sign(
        signing_string.encode("utf-8"),
        padding.PKCS1v15(),
        hashes.SHA256(),
    )
    signature = base64.b64encode(signature_bytes).decode("ascii")
    return (
        f'keyId="{key_id}",'
        f'algorithm="{ALGORITHM}",'
        f'headers="{SIGNED_HEADERS}",'
        f'signature="{signature}"'
    )


def parse_signature_header(header: str) -> Dict[str, str]:
    """Parse a Signature header back into its fields."""
    if not header:
        raise ValidationError("Empty Signature header")
    params = dict(_PARAM_RE.findall(header))
    missing = {"keyId", "algorithm", "headers", "signature"} - set(params)
    if missing:
        raise ValidationError(f"Signature header missing fields: {sorted(missing)}")
    return params


def verify_request(
    public_key_pem: bytes,
    header: str,
    target_path: str,
    date: str,
    digest: str,
    host: str,
) -> bool:
    """
    Verify a Signature header against the request it claims to cover.

    Optional inbound check; the node accepts unsigned activities unless
    configured otherwise.
    """
    try:
        params = parse_signature_header(header)
        if params["algorithm"] != ALGORITHM or params["headers"] != SIGNED_HEADERS:
            return False
        public_key = serialization.load_pem_public_key(public_key_pem)
        public_key.verify(
            base64.b64decode(params["signature"]),
            build_signing_string(target_path, host, date, digest).encode("utf-8"),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
        return True

    except (InvalidSignature, ValidationError, ValueError):
        return False
