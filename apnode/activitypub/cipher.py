# apnode/activitypub/cipher.py
"""
Hybrid public-key encryption of message bodies.

Each message gets a fresh AES-256 key and IV. The body is encrypted with
AES-256-CBC (PKCS#7 padding) and the AES key is wrapped with RSA-OAEP
(SHA-256) under the recipient's public key. Only the recipient's private
key can unwrap it.

A direct RSA-OAEP mode is kept for short payloads. Its ceiling is
key_bytes - 2 * 32 - 2 bytes: 190 bytes for a 2048-bit key.
"""

import base64
import binascii
import os
from dataclasses import dataclass
from typing import Any, Dict, Union

from cryptography.hazmat.primitives import hashes, padding as sym_padding, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ..errors import CryptoError, ValidationError

ALGORITHM = "RSA-OAEP-256+A256CBC"
AES_KEY_SIZE = 32
IV_SIZE = 16
BLOCK_BITS = 128
OAEP_HASH_SIZE = 32


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def _to_bytes(data: Union[bytes, str]) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else data


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(value: str, name: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, TypeError, ValueError) as e:
        raise CryptoError(f"Envelope field {name} is not valid base64") from e


def _load_private(private_key_pem: Union[bytes, str]):
    try:
        return serialization.load_pem_private_key(_to_bytes(private_key_pem), password=None)
    except (ValueError, TypeError) as e:
        raise CryptoError(f"Unusable private key: {e}") from e


def _load_public(public_key_pem: Union[bytes, str]):
    try:
        return serialization.load_pem_public_key(_to_bytes(public_key_pem))
    except (ValueError, TypeError) as e:
        raise CryptoError(f"Unusable public key: {e}") from e


@dataclass(frozen=True)
class EncryptedEnvelope:
    """
    An encrypted message body.

    Attributes:
        encrypted_key: RSA-OAEP wrapped AES key (base64)
        encrypted_body: AES-256-CBC ciphertext (base64)
        iv: Initialization vector (base64), unique per encryption
    """
    encrypted_key: str
    encrypted_body: str
    iv: str
    algorithm: str = ALGORITHM

    def to_dict(self) -> Dict[str, str]:
        return {
            "algorithm": self.algorithm,
            "encryptedKey": self.encrypted_key,
            "encryptedBody": self.encrypted_body,
            "iv": self.iv,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptedEnvelope":
        if not isinstance(data, dict):
            raise CryptoError("Entry is not an encrypted envelope")
        try:
            return cls(
                encrypted_key=data["encryptedKey"],
                encrypted_body=data["encryptedBody"],
                iv=data["iv"],
                algorithm=data.get("algorithm", ALGORITHM),
            )
        except KeyError as e:
            raise CryptoError(f"Envelope is missing {e.args[0]}") from e


def encrypt(recipient_public_key_pem: Union[bytes, str], plaintext: Union[bytes, str]) -> EncryptedEnvelope:
    """Encrypt plaintext of any length for the holder of the private key."""
    public_key = _load_public(recipient_public_key_pem)
    data = _to_bytes(plaintext)

    key = os.urandom(AES_KEY_SIZE)
    iv = os.urandom(IV_SIZE)

    padder = sym_padding.PKCS7(BLOCK_BITS).padder()
    padded = padder.update(data) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    body = encryptor.update(padded) + encryptor.finalize()

    wrapped_key = public_key.encrypt(key, _oaep())

    return EncryptedEnvelope(
        encrypted_key=_b64(wrapped_key),
        encrypted_body=_b64(body),
        iv=_b64(iv),
    )


def decrypt(recipient_private_key_pem: Union[bytes, str], envelope: Union[EncryptedEnvelope, Dict[str, Any]]) -> bytes:
    """
    Reverse encrypt().

    Raises:
        CryptoError: wrong key, corrupted ciphertext or bad padding
    """
    if not isinstance(envelope, EncryptedEnvelope):
        envelope = EncryptedEnvelope.from_dict(envelope)
    if envelope.algorithm != ALGORITHM:
        raise CryptoError(f"Unsupported envelope algorithm: {envelope.algorithm}")

    private_key = _load_private(recipient_private_key_pem)
    wrapped_key = _unb64(envelope.encrypted_key, "encryptedKey")
    body = _unb64(envelope.encrypted_body, "encryptedBody")
    iv = _unb64(envelope.iv, "iv")

    try:
        key = private_key.decrypt(wrapped_key, _oaep())
    except ValueError as e:
        raise CryptoError("Could not unwrap message key (wrong recipient key?)") from e

    if len(key) != AES_KEY_SIZE or len(iv) != IV_SIZE:
        raise CryptoError("Envelope has wrong key or IV length")

    try:
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(body) + decryptor.finalize()
        unpadder = sym_padding.PKCS7(BLOCK_BITS).unpadder()
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise CryptoError("Message body is corrupted") from e


def direct_capacity(public_key_pem: Union[bytes, str]) -> int:
    """Largest plaintext direct mode can carry for this key."""
    public_key = _load_public(public_key_pem)
    return public_key.key_size // 8 - 2 * OAEP_HASH_SIZE - 2


def encrypt_direct(recipient_public_key_pem: Union[bytes, str], plaintext: Union[bytes, str]) -> str:
    """RSA-OAEP the whole payload. Only for payloads within direct_capacity()."""
    data = _to_bytes(plaintext)
    capacity = direct_capacity(recipient_public_key_pem)
    if len(data) > capacity:
        raise ValidationError(
            f"Payload of {len(data)} bytes exceeds direct RSA capacity of {capacity} bytes"
        )
    public_key = _load_public(recipient_public_key_pem)
    return _b64(public_key.encrypt(data, _oaep()))


def decrypt_direct(recipient_private_key_pem: Union[bytes, str], ciphertext: str) -> bytes:
    private_key = _load_private(recipient_private_key_pem)
    try:
        return private_key.decrypt(_unb64(ciphertext, "ciphertext"), _oaep())
    except ValueError as e:
        raise CryptoError("Direct decryption failed") from e
