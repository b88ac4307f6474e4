# apnode/activitypub/activity.py
"""
ActivityPub Activity types.

Activities represent actions taken by actors on objects.
Key activity types for the node:
- Create: Actor sends a Note to a recipient
- Follow: Actor follows another actor
- Like: Actor endorses an object
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..errors import ValidationError
from ..mailbox import MailboxStore, OUTBOX, utc_iso
from .actor import AS_CONTEXT

logger = logging.getLogger(__name__)

ACTIVITY_TYPES = ("Create", "Follow", "Like")


@dataclass
class Activity:
    """
    An ActivityStreams Activity.

    Attributes:
        activity_type: Create, Follow or Like
        actor_id: URI of the actor performing the activity
        object_data: The object (a Note dict, or a target URI)
        published: ISO timestamp
    """
    activity_type: str
    actor_id: str
    object_data: Any
    published: str = field(default_factory=utc_iso)

    def __post_init__(self):
        if self.activity_type not in ACTIVITY_TYPES:
            raise ValidationError(f"Unsupported activity type: {self.activity_type}")

    def to_activitypub(self) -> Dict[str, Any]:
        """Return ActivityPub JSON-LD representation."""
        return {
            "@context": AS_CONTEXT,
            "type": self.activity_type,
            "actor": self.actor_id,
            "published": self.published,
            "object": self.object_data,
        }

    @classmethod
    def from_activitypub(cls, data: Dict[str, Any]) -> "Activity":
        try:
            return cls(
                activity_type=data["type"],
                actor_id=data["actor"],
                object_data=data["object"],
                published=data.get("published", ""),
            )
        except (KeyError, TypeError) as e:
            raise ValidationError(f"Malformed activity: {e}") from e

    @classmethod
    def create_note(
        cls,
        actor_id: str,
        recipient_id: str,
        content: str,
        published: Optional[str] = None,
    ) -> "Activity":
        """Create activity wrapping a Note addressed to one recipient."""
        return cls(
            activity_type="Create",
            actor_id=actor_id,
            object_data={
                "type": "Note",
                "content": content,
                "to": [recipient_id],
            },
            published=published or utc_iso(),
        )

    @classmethod
    def follow(cls, actor_id: str, target_id: str) -> "Activity":
        return cls(activity_type="Follow", actor_id=actor_id, object_data=target_id)


class ActivityStore:
    """
    Per-actor index of outbox activities.

    The outbox in MailboxStore is the source of truth. This is a
    read-through cache over it: an actor's list is loaded from the outbox
    on first access and kept current by writing through record().
    """

    def __init__(self, mailbox: MailboxStore):
        self.mailbox = mailbox
        self._activities: Dict[str, List[Activity]] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def _lock_for(self, username: str) -> threading.Lock:
        with self._lock:
            return self._locks.setdefault(username, threading.Lock())

    def _load(self, username: str) -> List[Activity]:
        # Caller holds the actor lock
        cached = self._activities.get(username)
        if cached is None:
            cached = [
                Activity.from_activitypub(entry.payload["activity"])
                for entry in self.mailbox.list(username, OUTBOX)
                if "activity" in entry.payload
            ]
            self._activities[username] = cached
            logger.debug(f"Loaded {len(cached)} outbox activities for {username}")
        return cached

    def record(self, username: str, activity: Activity) -> str:
        """Append an activity to the actor's outbox. Returns the sequence key."""
        with self._lock_for(username):
            activities = self._load(username)
            key = self.mailbox.append(username, OUTBOX, {
                "activity": activity.to_activitypub(),
                "sentAt": activity.published,
            })
            activities.append(activity)
        return key

    def list_for(self, username: str) -> List[Activity]:
        """Activities the actor has sent, oldest first."""
        with self._lock_for(username):
            return list(self._load(username))
