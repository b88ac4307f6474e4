# apnode/followers.py
"""
Follower and following sets.

Structure:
    store_dir/
        followers/<username>.json   # URIs following <username>
        following/<username>.json   # URIs <username> follows

Whether a repeated follow is recorded again is a configuration choice:
mode "set" keeps each URI once, mode "log" appends every follow.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List

from .errors import ValidationError

logger = logging.getLogger(__name__)

FOLLOWERS = "followers"
FOLLOWING = "following"
KINDS = (FOLLOWERS, FOLLOWING)


class FollowerStore:
    """Persistent per-actor follower/following lists."""

    def __init__(self, store_dir: Path | str, mode: str = "set"):
        if mode not in ("set", "log"):
            raise ValidationError(f"Unknown follower mode: {mode!r}")
        self.store_dir = Path(store_dir)
        for kind in KINDS:
            (self.store_dir / kind).mkdir(parents=True, exist_ok=True)
        self.mode = mode
        self._lock = threading.Lock()

    def _path(self, kind: str, username: str) -> Path:
        if kind not in KINDS:
            raise ValidationError(f"Unknown collection: {kind!r}")
        return self.store_dir / kind / f"{username}.json"

    def _read(self, kind: str, username: str) -> List[str]:
        path = self._path(kind, username)
        if not path.exists():
            return []
        with open(path) as f:
            return json.load(f).get("items", [])

    def _write(self, kind: str, username: str, items: List[str]):
        path = self._path(kind, username)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump({"version": "1.0", "items": items}, f, indent=2)
        tmp_path.replace(path)

    def add(self, kind: str, username: str, uri: str) -> bool:
        """
        Record uri in username's followers or following list.

        Returns False when mode is "set" and the uri was already present.
        """
        with self._lock:
            items = self._read(kind, username)
            if self.mode == "set" and uri in items:
                logger.debug(f"{uri} already in {kind} of {username}")
                return False
            items.append(uri)
            self._write(kind, username, items)
        return True

    def add_follower(self, username: str, follower_uri: str) -> bool:
        return self.add(FOLLOWERS, username, follower_uri)

    def add_following(self, username: str, target_uri: str) -> bool:
        return self.add(FOLLOWING, username, target_uri)

    def followers(self, username: str) -> List[str]:
        with self._lock:
            return self._read(FOLLOWERS, username)

    def following(self, username: str) -> List[str]:
        with self._lock:
            return self._read(FOLLOWING, username)


def ordered_collection(collection_id: str, items: List[Any]) -> Dict[str, Any]:
    """Wrap items as an unpaged ActivityStreams OrderedCollection."""
    return {
        "@context": "https://www.w3.org/ns/activitystreams",
        "id": collection_id,
        "type": "OrderedCollection",
        "totalItems": len(items),
        "orderedItems": items,
    }
