# apnode - Minimal federated messaging node
#
# Each local actor has an RSA keypair, a public ActivityStreams profile, an
# ordered inbox and an ordered outbox. Messages are wrapped in Create
# activities, pushed with an HTTP Signature and end-to-end encrypted for the
# recipient.
#
# Core concepts:
# - ActorStore: Actors and their key material
# - MailboxStore: Append-only, ordered inbox/outbox logs
# - DeliveryEngine: encrypt -> sign -> push -> store
# - Node: The operations a routing layer calls

from .config import NodeConfig
from .errors import (
    NodeError,
    ValidationError,
    ConflictError,
    NotFoundError,
    CryptoError,
    DeliveryError,
)
from .mailbox import MailboxStore, MailboxEntry
from .followers import FollowerStore
from .client import InboxClient, PushResponse
from .delivery import DeliveryEngine, DeliveryResult, DeliveryStatus
from .node import Node

__all__ = [
    "NodeConfig",
    "NodeError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "CryptoError",
    "DeliveryError",
    "MailboxStore",
    "MailboxEntry",
    "FollowerStore",
    "InboxClient",
    "PushResponse",
    "DeliveryEngine",
    "DeliveryResult",
    "DeliveryStatus",
    "Node",
]

__version__ = "0.1.0"
