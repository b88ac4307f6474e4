# apnode/delivery.py
"""
Message delivery between actors.

send() runs a fixed sequence:
  1. validate input
  2. build the Create activity
  3. record it in the sender's outbox
  4. resolve the recipient's public key
  5. encrypt the content for the recipient
  6. digest and sign the serialized activity
  7. POST it to the recipient's inbox URL (bounded timeout)
  8. store the encrypted envelope in the recipient's inbox, whatever step 7 did
  9. report the result

The local inbox write is the source of truth for the recipient. A failed or
timed-out remote hop is reported in the result, never raised, and nothing
is retried.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlparse

from .activitypub import cipher
from .activitypub.activity import Activity, ActivityStore
from .activitypub.actor import ActorStore, normalize_username
from .activitypub.signatures import compute_digest, http_date, serialize_activity, sign_request
from .client import InboxClient
from .errors import CryptoError, DeliveryError, NotFoundError, ValidationError
from .followers import FollowerStore
from .mailbox import INBOX, MailboxStore

logger = logging.getLogger(__name__)


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    REMOTE_FAILURE = "remote_failure"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


@dataclass
class DeliveryResult:
    """
    Outcome of send().

    local_committed is True whenever a result is returned: both the outbox
    and inbox writes happened. Only the remote hop can fail here.
    """
    status: DeliveryStatus
    sent_at: str
    outbox_key: str
    inbox_key: str
    http_status: Optional[int] = None
    detail: Optional[str] = None
    local_committed: bool = True

    @property
    def ok(self) -> bool:
        return self.status in (DeliveryStatus.DELIVERED, DeliveryStatus.SKIPPED)

    def raise_for_status(self) -> None:
        if not self.ok:
            raise DeliveryError(
                f"Remote delivery {self.status.value}: {self.detail or self.http_status}",
                result=self,
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "ok": self.ok,
            "sentAt": self.sent_at,
            "outboxKey": self.outbox_key,
            "inboxKey": self.inbox_key,
            "httpStatus": self.http_status,
            "detail": self.detail,
            "localCommitted": self.local_committed,
        }


def _require(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Missing {name}")
    return value


class DeliveryEngine:
    """
    Orchestrates key lookup, encryption, signing, transport and storage.

    Args:
        actors: Key store
        mailbox: Inbox/outbox storage
        activities: Outbox activity index
        follows: Follower/following sets
        client: Transport for the remote hop, or None to skip it
        host: Host name signed into every delivery
    """

    def __init__(
        self,
        actors: ActorStore,
        mailbox: MailboxStore,
        activities: ActivityStore,
        follows: FollowerStore,
        client: Optional[InboxClient],
        host: str,
    ):
        self.actors = actors
        self.mailbox = mailbox
        self.activities = activities
        self.follows = follows
        self.client = client
        self.host = host

    def send(self, sender: str, recipient: str, content: str) -> DeliveryResult:
        _require(sender, "sender")
        _require(recipient, "recipient")
        _require(content, "content")

        sender_actor = self.actors.get(sender)
        recipient_id = f"{self.actors.base_url}/user/{normalize_username(recipient)}"

        activity = Activity.create_note(sender_actor.id, recipient_id, content)
        outbox_key = self.activities.record(sender_actor.username, activity)

        # Not queued for retry: an unknown recipient fails the whole send
        recipient_actor = self.actors.get(recipient)

        envelope = cipher.encrypt(recipient_actor.public_key, content)

        body = serialize_activity(activity.to_activitypub())
        digest = compute_digest(body)
        date = http_date()
        target_path = urlparse(recipient_actor.inbox).path
        signature = sign_request(
            self.actors.get_private_key(sender_actor.username),
            sender_actor.key_id,
            target_path,
            date,
            digest,
            self.host,
        )
        headers = {
            "Host": self.host,
            "Date": date,
            "Digest": digest,
            "Content-Type": "application/json",
            "Signature": signature,
        }

        try:
            status, http_status, detail = self._push(recipient_actor.inbox, body, headers)
        finally:
            inbox_key = self.mailbox.append(recipient_actor.username, INBOX, {
                "encrypted": envelope.to_dict(),
                "from": sender_actor.id,
                "to": recipient_actor.id,
                "receivedAt": activity.published,
            })

        result = DeliveryResult(
            status=status,
            sent_at=activity.published,
            outbox_key=outbox_key,
            inbox_key=inbox_key,
            http_status=http_status,
            detail=detail,
        )
        if result.ok:
            logger.info(f"Message {sender_actor.username} -> {recipient_actor.username} {status.value}")
        else:
            logger.warning(
                f"Message {sender_actor.username} -> {recipient_actor.username} stored locally, "
                f"remote hop {status.value}: {detail}"
            )
        return result

    def _push(self, url: str, body: bytes, headers: Dict[str, str]):
        """Run the remote hop and classify its outcome."""
        if self.client is None:
            return DeliveryStatus.SKIPPED, None, "network delivery disabled"
        try:
            response = self.client.post(url, body, headers)
        except TimeoutError as e:
            return DeliveryStatus.TIMEOUT, None, str(e)
        except OSError as e:
            return DeliveryStatus.REMOTE_FAILURE, None, str(e)

        if response.ok:
            return DeliveryStatus.DELIVERED, response.status, None
        return DeliveryStatus.REMOTE_FAILURE, response.status, response.body or None

    def receive(self, username: str, body: Union[Dict[str, Any], bytes, str]) -> str:
        """
        Store an inbound body in the actor's inbox.

        No signature or schema check beyond being a JSON object.
        """
        actor = self.actors.get(_require(username, "username"))
        if isinstance(body, (bytes, str)):
            try:
                body = json.loads(body)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise ValidationError(f"Body is not valid JSON: {e}") from e
        if not isinstance(body, dict):
            raise ValidationError("Body must be a JSON object")

        key = self.mailbox.append(actor.username, INBOX, body)
        logger.info(f"Received {body.get('type', 'object')} for {actor.username}")
        return key

    def decrypt_inbox(self, username: str) -> List[Dict[str, Any]]:
        """
        Decrypt every inbox entry with the owner's key.

        Each entry succeeds or fails on its own; a failure is reported in
        place as {"entryId", "error"}.
        """
        actor = self.actors.get(_require(username, "username"))
        private_key = self.actors.get_private_key(actor.username)

        results = []
        for entry in self.mailbox.list(actor.username, INBOX):
            try:
                if "encrypted" not in entry.payload:
                    raise CryptoError("Entry is not encrypted")
                plaintext = cipher.decrypt(private_key, entry.payload["encrypted"])
                try:
                    text = plaintext.decode("utf-8")
                except UnicodeDecodeError as e:
                    raise CryptoError("Decrypted body is not UTF-8 text") from e
                results.append({"entryId": entry.sequence_key, "decrypted": text})
            except CryptoError as e:
                logger.debug(f"Could not decrypt {username} inbox entry {entry.sequence_key}: {e}")
                results.append({"entryId": entry.sequence_key, "error": str(e)})
        return results

    def follow(self, actor_uri: str, target_uri: str) -> None:
        """
        Add actor_uri to the target's followers.

        A local follower also gets the target in its following list and a
        Follow activity in its outbox.
        """
        _require(actor_uri, "actor")
        _require(target_uri, "target")
        target = self.actors.resolve_uri(target_uri)
        if target is None:
            raise NotFoundError(f"Follow target {target_uri} is not a local actor")

        added = self.follows.add_follower(target.username, actor_uri)

        follower = self.actors.resolve_uri(actor_uri)
        if follower is not None and added:
            self.follows.add_following(follower.username, target.id)
            self.activities.record(follower.username, Activity.follow(follower.id, target.id))

        logger.info(f"{actor_uri} follows {target.id}")

    def like(self, actor_uri: str, object_uri: str) -> None:
        """Acknowledge a like. Nothing is stored."""
        _require(actor_uri, "actor")
        _require(object_uri, "object")
        logger.info(f"{actor_uri} likes {object_uri}")
