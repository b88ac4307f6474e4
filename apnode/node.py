# apnode/node.py
"""
The node: every operation the routing layer may call.

Wires the stores and the delivery engine together under one data
directory:

    data_dir/
        users/        # ActorStore
        mailboxes/    # MailboxStore
        follows/      # FollowerStore
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .activitypub.activity import ActivityStore
from .activitypub.actor import ActorStore
from .client import InboxClient
from .config import NodeConfig
from .delivery import DeliveryEngine, DeliveryResult
from .followers import FollowerStore, ordered_collection
from .mailbox import INBOX, OUTBOX, MailboxStore

logger = logging.getLogger(__name__)


class Node:
    """
    A federated messaging node.

    Private keys never cross this boundary: every method returns public
    data only.
    """

    def __init__(self, config: Optional[NodeConfig] = None, client: Optional[InboxClient] = None):
        self.config = config or NodeConfig()
        base_dir = Path(self.config.data_dir)
        base_dir.mkdir(parents=True, exist_ok=True)

        self.actors = ActorStore(
            base_dir / "users",
            base_url=self.config.base_url,
            key_size=self.config.key_size,
        )
        self.mailbox = MailboxStore(base_dir / "mailboxes")
        self.activities = ActivityStore(self.mailbox)
        self.follows = FollowerStore(base_dir / "follows", mode=self.config.follower_mode)

        if client is None and self.config.network_delivery:
            client = InboxClient(timeout=self.config.delivery_timeout)
        self.engine = DeliveryEngine(
            actors=self.actors,
            mailbox=self.mailbox,
            activities=self.activities,
            follows=self.follows,
            client=client if self.config.network_delivery else None,
            host=self.config.host,
        )
        logger.debug(f"Node {self.config.base_url} using {base_dir}")

    def create_actor(self, username: str) -> Dict[str, Any]:
        """Register an actor and return its public profile."""
        return self.actors.create(username).to_activitypub()

    def get_public_key(self, username: str) -> str:
        return self.actors.get_public_key(username).decode("utf-8")

    def get_profile(self, username: str) -> Dict[str, Any]:
        return self.actors.get(username).to_activitypub()

    def send(self, sender: str, recipient: str, content: str) -> DeliveryResult:
        return self.engine.send(sender, recipient, content)

    def receive(self, username: str, body: Any) -> str:
        return self.engine.receive(username, body)

    def decrypt_inbox(self, username: str) -> List[Dict[str, Any]]:
        return self.engine.decrypt_inbox(username)

    def follow(self, actor_uri: str, target_uri: str) -> None:
        self.engine.follow(actor_uri, target_uri)

    def like(self, actor_uri: str, object_uri: str) -> None:
        self.engine.like(actor_uri, object_uri)

    def list_inbox(self, username: str) -> List[Dict[str, Any]]:
        actor = self.actors.get(username)
        return [
            {"entryId": e.sequence_key, **e.payload}
            for e in self.mailbox.list(actor.username, INBOX)
        ]

    def list_outbox(self, username: str) -> List[Dict[str, Any]]:
        actor = self.actors.get(username)
        return [a.to_activitypub() for a in self.activities.list_for(actor.username)]

    def inbox_collection(self, username: str) -> Dict[str, Any]:
        actor = self.actors.get(username)
        return ordered_collection(actor.inbox, self.list_inbox(username))

    def outbox_collection(self, username: str) -> Dict[str, Any]:
        actor = self.actors.get(username)
        return ordered_collection(actor.outbox, self.list_outbox(username))

    def followers_collection(self, username: str) -> Dict[str, Any]:
        actor = self.actors.get(username)
        return ordered_collection(actor.followers, self.follows.followers(actor.username))

    def following_collection(self, username: str) -> Dict[str, Any]:
        actor = self.actors.get(username)
        return ordered_collection(actor.following, self.follows.following(actor.username))
