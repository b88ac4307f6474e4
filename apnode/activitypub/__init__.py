# apnode/activitypub/__init__.py
"""
ActivityPub building blocks for the node.

Core concepts:
- Actor: A local identity with an RSA key pair
- Activity: An action (Create, Follow, Like)
- Signature: HTTP Signature proving who sent a delivery
- Envelope: A message body only the recipient can decrypt
"""

from .actor import Actor, ActorStore, normalize_username
from .activity import Activity, ActivityStore
from .cipher import EncryptedEnvelope, encrypt, decrypt, encrypt_direct, decrypt_direct
from .signatures import (
    build_signing_string,
    compute_digest,
    http_date,
    parse_signature_header,
    serialize_activity,
    sign_request,
    verify_request,
)

__all__ = [
    "Actor",
    "ActorStore",
    "normalize_username",
    "Activity",
    "ActivityStore",
    "EncryptedEnvelope",
    "encrypt",
    "decrypt",
    "encrypt_direct",
    "decrypt_direct",
    "build_signing_string",
    "compute_digest",
    "http_date",
    "parse_signature_header",
    "serialize_activity",
    "sign_request",
    "verify_request",
]
