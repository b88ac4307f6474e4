# apnode/errors.py
"""
Error taxonomy for the messaging core.

Every failure the core reports is one of these. The HTTP layer maps them
to status codes; nothing inside the core retries on any of them.
"""

from typing import Optional


class NodeError(Exception):
    """Base class for all core errors."""


class ValidationError(NodeError, ValueError):
    """Missing or malformed input. Always local and immediate."""


class ConflictError(NodeError):
    """An actor with this username already exists."""


class NotFoundError(NodeError, LookupError):
    """Unknown actor, missing key material or missing mailbox entry."""


class CryptoError(NodeError):
    """Key unwrap or body decryption failed."""


class DeliveryError(NodeError):
    """
    The remote hop failed or timed out.

    Local persistence has already completed when this is raised; the
    attached result says which local writes happened.
    """

    def __init__(self, message: str, result: Optional["DeliveryResult"] = None):
        super().__init__(message)
        self.result = result
