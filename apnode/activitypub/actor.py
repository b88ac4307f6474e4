# apnode/activitypub/actor.py
"""
ActivityPub Actor management.

An Actor is a local identity with:
- A case-insensitive username
- An RSA key pair for signing deliveries and decrypting its inbox
- An ActivityPub-compliant Person profile

ActorStore is the key store: the only place key material is created or read.
"""

import json
import logging
import os
import re
import shutil
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from ..errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:3000"
USERNAME_RE = re.compile(r"^[a-z0-9_][a-z0-9_.-]{0,63}$")

AS_CONTEXT = "https://www.w3.org/ns/activitystreams"
SECURITY_CONTEXT = "https://w3id.org/security/v1"


def normalize_username(username: str) -> str:
    """Lower-case and validate a username."""
    if not isinstance(username, str) or not username.strip():
        raise ValidationError("Username is required")
    normalized = username.strip().lower()
    if not USERNAME_RE.match(normalized):
        raise ValidationError(f"Invalid username: {username!r}")
    return normalized


def _generate_keypair(key_size: int = 2048) -> tuple[bytes, bytes]:
    """Generate RSA key pair (PKCS8 private, SPKI public)."""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=key_size,
    )
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem, public_pem


@dataclass
class Actor:
    """
    An ActivityPub Actor (identity).

    Attributes:
        username: Unique lower-case username (e.g., "alice")
        public_key: PEM-encoded public key
        private_key: PEM-encoded private key (never leaves the core)
        created_at: Timestamp of creation
        base_url: Origin of the node hosting this actor
    """
    username: str
    public_key: bytes
    private_key: bytes = field(repr=False)
    created_at: float = field(default_factory=time.time)
    base_url: str = DEFAULT_BASE_URL

    @property
    def id(self) -> str:
        """ActivityPub actor ID (URL)."""
        return f"{self.base_url}/user/{self.username}"

    @property
    def inbox(self) -> str:
        return f"{self.base_url}/inbox/{self.username}"

    @property
    def outbox(self) -> str:
        return f"{self.base_url}/outbox/{self.username}"

    @property
    def followers(self) -> str:
        return f"{self.id}/followers"

    @property
    def following(self) -> str:
        return f"{self.id}/following"

    @property
    def key_id(self) -> str:
        """Key ID for HTTP Signatures."""
        return f"{self.id}#main-key"

    def to_activitypub(self) -> Dict[str, Any]:
        """Return the public Person document. Contains no private material."""
        return {
            "@context": [AS_CONTEXT, SECURITY_CONTEXT],
            "id": self.id,
            "type": "Person",
            "preferredUsername": self.username,
            "inbox": self.inbox,
            "outbox": self.outbox,
            "followers": self.followers,
            "following": self.following,
            "publicKey": {
                "id": self.key_id,
                "owner": self.id,
                "publicKeyPem": self.public_key.decode("utf-8"),
            },
        }

    @classmethod
    def create(cls, username: str, base_url: str = DEFAULT_BASE_URL, key_size: int = 2048) -> "Actor":
        """Create a new actor with generated keys."""
        private_pem, public_pem = _generate_keypair(key_size)
        return cls(
            username=normalize_username(username),
            public_key=public_pem,
            private_key=private_pem,
            base_url=base_url.rstrip("/"),
        )


class ActorStore:
    """
    Persistent storage for actors and their keys.

    Structure:
        store_dir/
            <username>/
                public-key.pem
                private-key.pem   # mode 600
                index.json        # Person profile
    """

    def __init__(self, store_dir: Path | str, base_url: str = DEFAULT_BASE_URL, key_size: int = 2048):
        self.store_dir = Path(store_dir)
        self.store_dir.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")
        self.key_size = key_size
        self._actors: Dict[str, Actor] = {}
        self._lock = threading.Lock()
        self._load()

    def _actor_dir(self, username: str) -> Path:
        return self.store_dir / username

    def _load(self):
        """Load actors from disk."""
        for actor_dir in sorted(self.store_dir.iterdir()):
            public_path = actor_dir / "public-key.pem"
            private_path = actor_dir / "private-key.pem"
            if not (public_path.exists() and private_path.exists()):
                if actor_dir.is_dir():
                    logger.warning(f"Skipping incomplete actor directory: {actor_dir}")
                continue
            self._actors[actor_dir.name] = Actor(
                username=actor_dir.name,
                public_key=public_path.read_bytes(),
                private_key=private_path.read_bytes(),
                created_at=public_path.stat().st_mtime,
                base_url=self.base_url,
            )
        logger.debug(f"Loaded {len(self._actors)} actors from {self.store_dir}")

    def _save(self, actor: Actor):
        """Write key material and profile for a freshly created actor."""
        actor_dir = self._actor_dir(actor.username)
        private_path = actor_dir / "private-key.pem"
        # Create with 0600 from the start so the key is never world-readable
        fd = os.open(private_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(actor.private_key)
        (actor_dir / "public-key.pem").write_bytes(actor.public_key)
        with open(actor_dir / "index.json", "w") as f:
            json.dump(actor.to_activitypub(), f, indent=2)

    def create(self, username: str) -> Actor:
        """Create and store a new actor. Raises ConflictError if taken."""
        username = normalize_username(username)

        with self._lock:
            if username in self._actors:
                raise ConflictError(f"User '{username}' already exists.")
            try:
                # mkdir without exist_ok also guards against other processes
                self._actor_dir(username).mkdir()
            except FileExistsError:
                raise ConflictError(f"User '{username}' already exists.")

        # The directory is our reservation; key generation runs unlocked
        try:
            actor = Actor.create(username, base_url=self.base_url, key_size=self.key_size)
            self._save(actor)
        except Exception:
            shutil.rmtree(self._actor_dir(username), ignore_errors=True)
            raise
        with self._lock:
            self._actors[username] = actor

        logger.info(f"Created actor {actor.id}")
        return actor

    def get(self, username: str) -> Actor:
        """Get an actor by username. Raises NotFoundError if unknown."""
        try:
            key = normalize_username(username)
        except ValidationError:
            raise NotFoundError(f"Actor '{username}' not found")
        actor = self._actors.get(key)
        if actor is None:
            raise NotFoundError(f"Actor '{username}' not found")
        return actor

    def find(self, username: str) -> Optional[Actor]:
        try:
            return self.get(username)
        except NotFoundError:
            return None

    def get_public_key(self, username: str) -> bytes:
        return self.get(username).public_key

    def get_private_key(self, username: str) -> bytes:
        """
        Privileged: the owning actor's private key.

        Only signing and inbox decryption inside the core may call this.
        """
        return self.get(username).private_key

    def resolve_uri(self, actor_uri: str) -> Optional[Actor]:
        """Map a local actor URI (or key id) back to its Actor."""
        prefix = f"{self.base_url}/user/"
        if not isinstance(actor_uri, str) or not actor_uri.startswith(prefix):
            return None
        rest = actor_uri[len(prefix):].split("#", 1)[0].split("/", 1)[0]
        return self.find(rest) if rest else None

    def list(self) -> List[Actor]:
        """List all actors."""
        return list(self._actors.values())

    def exists(self, username: str) -> bool:
        return self.find(username) is not None

    def __contains__(self, username: str) -> bool:
        return self.exists(username)

    def __len__(self) -> int:
        return len(self._actors)
