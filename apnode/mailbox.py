# apnode/mailbox.py
"""
Append-only per-actor inbox and outbox logs.

Each entry is one JSON file named by its sequence key:

    mailbox_dir/
        inbox/<owner>/<sequence_key>.json
        outbox/<owner>/<sequence_key>.json

Sequence keys are "<epoch ms, 13 digits>-<counter, 6 digits>". The counter
restarts at zero whenever the millisecond advances and increments while it
doesn't, so keys are unique and sort in creation order even under rapid
writes or a clock that steps backwards.
"""

import json
import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

INBOX = "inbox"
OUTBOX = "outbox"
DIRECTIONS = (INBOX, OUTBOX)
SEQUENCE_KEY_RE = re.compile(r"^\d{13}-\d{6}$")


def utc_iso(timestamp: Optional[float] = None) -> str:
    """ISO-8601 UTC with milliseconds, e.g. 2024-05-01T12:00:00.123Z."""
    if timestamp is None:
        timestamp = time.time()
    dt = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def format_sequence_key(millis: int, counter: int) -> str:
    return f"{millis:013d}-{counter:06d}"


def parse_sequence_key(key: str) -> Tuple[int, int]:
    try:
        millis, counter = key.split("-", 1)
        return int(millis), int(counter)
    except ValueError:
        raise ValidationError(f"Invalid sequence key: {key!r}")


@dataclass(frozen=True)
class MailboxEntry:
    """One stored inbox or outbox record."""
    owner: str
    direction: str
    sequence_key: str
    payload: Dict[str, Any]
    stored_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "direction": self.direction,
            "sequenceKey": self.sequence_key,
            "storedAt": self.stored_at,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MailboxEntry":
        return cls(
            owner=data["owner"],
            direction=data["direction"],
            sequence_key=data["sequenceKey"],
            payload=data["payload"],
            stored_at=data.get("storedAt", ""),
        )


class _Sequencer:
    """Collision-free key generator for a single mailbox."""

    def __init__(self, last_key: Optional[str] = None):
        self._millis, self._counter = parse_sequence_key(last_key) if last_key else (0, -1)

    def next_key(self) -> str:
        now = int(time.time() * 1000)
        if now > self._millis:
            self._millis, self._counter = now, 0
        else:
            self._counter += 1
        return format_sequence_key(self._millis, self._counter)


class MailboxStore:
    """
    Durable inbox/outbox storage.

    Appends to one (owner, direction) mailbox are serialized by a
    per-mailbox lock; different mailboxes never contend.
    """

    def __init__(self, mailbox_dir: Path | str):
        self.mailbox_dir = Path(mailbox_dir)
        self.mailbox_dir.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._sequencers: Dict[Tuple[str, str], _Sequencer] = {}
        self._registry_lock = threading.Lock()

    def _mailbox_path(self, owner: str, direction: str) -> Path:
        if direction not in DIRECTIONS:
            raise ValidationError(f"Unknown mailbox direction: {direction!r}")
        if not owner or "/" in owner or owner.startswith("."):
            raise ValidationError(f"Invalid mailbox owner: {owner!r}")
        return self.mailbox_dir / direction / owner

    def _lock_for(self, owner: str, direction: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault((owner, direction), threading.Lock())

    def _entry_files(self, path: Path) -> List[Path]:
        if not path.exists():
            return []
        files = []
        for entry_path in path.glob("*.json"):
            if SEQUENCE_KEY_RE.match(entry_path.stem):
                files.append(entry_path)
            else:
                logger.warning(f"Ignoring stray file in mailbox: {entry_path}")
        return sorted(files, key=lambda p: p.stem)

    def _sequencer_for(self, owner: str, direction: str, path: Path) -> _Sequencer:
        # Caller holds the mailbox lock
        key = (owner, direction)
        sequencer = self._sequencers.get(key)
        if sequencer is None:
            files = self._entry_files(path)
            sequencer = _Sequencer(files[-1].stem if files else None)
            self._sequencers[key] = sequencer
        return sequencer

    def append(self, owner: str, direction: str, payload: Dict[str, Any]) -> str:
        """
        Append a payload and return its sequence key.

        The mailbox directory is created on first write. Entries are written
        to a temp file and hard-linked into place, so readers never see a
        partial entry and an existing slot is never overwritten.
        """
        path = self._mailbox_path(owner, direction)
        with self._lock_for(owner, direction):
            path.mkdir(parents=True, exist_ok=True)
            sequencer = self._sequencer_for(owner, direction, path)
            while True:
                key = sequencer.next_key()
                entry = MailboxEntry(
                    owner=owner,
                    direction=direction,
                    sequence_key=key,
                    payload=payload,
                    stored_at=utc_iso(),
                )
                tmp_path = path / f".{key}.tmp"
                try:
                    with open(tmp_path, "w") as f:
                        json.dump(entry.to_dict(), f, indent=2)
                    # link() refuses to replace an existing file
                    os.link(tmp_path, path / f"{key}.json")
                    break
                except FileExistsError:
                    logger.warning(f"Sequence key {key} taken in {direction}/{owner}, retrying")
                except (TypeError, ValueError) as e:
                    raise ValidationError(f"Payload is not JSON serializable: {e}") from e
                finally:
                    tmp_path.unlink(missing_ok=True)

        logger.debug(f"Appended {direction}/{owner}/{key}")
        return key

    def list(self, owner: str, direction: str) -> List[MailboxEntry]:
        """All entries in ascending sequence key order. Read-only."""
        path = self._mailbox_path(owner, direction)
        entries = []
        for entry_path in self._entry_files(path):
            with open(entry_path) as f:
                entries.append(MailboxEntry.from_dict(json.load(f)))
        return entries

    def get(self, owner: str, direction: str, sequence_key: str) -> MailboxEntry:
        parse_sequence_key(sequence_key)
        entry_path = self._mailbox_path(owner, direction) / f"{sequence_key}.json"
        if not entry_path.exists():
            raise NotFoundError(f"No {direction} entry {sequence_key} for {owner}")
        with open(entry_path) as f:
            return MailboxEntry.from_dict(json.load(f))

    def count(self, owner: str, direction: str) -> int:
        return len(self._entry_files(self._mailbox_path(owner, direction)))
