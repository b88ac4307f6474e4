# tests/test_mailbox.py
"""Tests for the append-only mailbox store."""

import json
import tempfile
import threading
from pathlib import Path

import pytest

from apnode.errors import NotFoundError, ValidationError
from apnode.mailbox import (
    INBOX,
    OUTBOX,
    MailboxStore,
    format_sequence_key,
    parse_sequence_key,
)


@pytest.fixture
def mailbox_dir():
    """Create temporary mailbox directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def mailbox(mailbox_dir):
    return MailboxStore(mailbox_dir)


class TestSequenceKeys:

    def test_format(self):
        assert format_sequence_key(1714000000000, 7) == "1714000000000-000007"

    def test_parse(self):
        assert parse_sequence_key("1714000000000-000007") == (1714000000000, 7)

    def test_parse_invalid(self):
        with pytest.raises(ValidationError):
            parse_sequence_key("not-a-key")

    def test_lexical_order_matches_numeric(self):
        keys = [format_sequence_key(999, 5), format_sequence_key(1000, 0), format_sequence_key(1000, 12)]
        assert sorted(keys) == keys


class TestAppendAndList:

    def test_empty_mailbox(self, mailbox):
        assert mailbox.list("alice", INBOX) == []
        assert mailbox.count("alice", INBOX) == 0

    def test_append_returns_key(self, mailbox):
        key = mailbox.append("alice", OUTBOX, {"n": 1})
        parse_sequence_key(key)
        assert mailbox.get("alice", OUTBOX, key).payload == {"n": 1}

    def test_order_preserved(self, mailbox):
        for n in range(20):
            mailbox.append("bob", INBOX, {"n": n})

        entries = mailbox.list("bob", INBOX)
        assert [e.payload["n"] for e in entries] == list(range(20))
        keys = [e.sequence_key for e in entries]
        assert keys == sorted(keys)
        assert len(set(keys)) == 20

    def test_directions_are_separate(self, mailbox):
        mailbox.append("alice", INBOX, {"d": "in"})
        mailbox.append("alice", OUTBOX, {"d": "out"})
        assert [e.payload["d"] for e in mailbox.list("alice", INBOX)] == ["in"]
        assert [e.payload["d"] for e in mailbox.list("alice", OUTBOX)] == ["out"]

    def test_listing_is_idempotent(self, mailbox):
        mailbox.append("alice", INBOX, {"n": 1})
        assert mailbox.list("alice", INBOX) == mailbox.list("alice", INBOX)
        assert mailbox.count("alice", INBOX) == 1

    def test_same_millisecond(self, mailbox, monkeypatch):
        monkeypatch.setattr("apnode.mailbox.time.time", lambda: 1714000000.0)
        keys = [mailbox.append("bob", INBOX, {"n": n}) for n in range(3)]
        assert keys == [
            "1714000000000-000000",
            "1714000000000-000001",
            "1714000000000-000002",
        ]

    def test_clock_going_backwards(self, mailbox, monkeypatch):
        times = iter([1714000000.5, 1714000000.0])
        monkeypatch.setattr("apnode.mailbox.time.time", lambda: next(times, 1714000000.0))
        first = mailbox.append("bob", INBOX, {"n": 0})
        second = mailbox.append("bob", INBOX, {"n": 1})
        assert second > first

    def test_no_tmp_files_left(self, mailbox, mailbox_dir):
        mailbox.append("bob", INBOX, {"n": 0})
        assert [p.name for p in (mailbox_dir / INBOX / "bob").iterdir() if p.suffix == ".tmp"] == []

    def test_entry_file_contents(self, mailbox, mailbox_dir):
        key = mailbox.append("bob", INBOX, {"n": 0})
        with open(mailbox_dir / INBOX / "bob" / f"{key}.json") as f:
            data = json.load(f)
        assert data["owner"] == "bob"
        assert data["direction"] == INBOX
        assert data["sequenceKey"] == key
        assert data["storedAt"].endswith("Z")


class TestConcurrency:

    def test_parallel_appends_never_clobber(self, mailbox):
        barrier = threading.Barrier(8)

        def writer(worker):
            barrier.wait()
            for n in range(10):
                mailbox.append("bob", INBOX, {"worker": worker, "n": n})

        threads = [threading.Thread(target=writer, args=(w,)) for w in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        entries = mailbox.list("bob", INBOX)
        assert len(entries) == 80
        assert len({e.sequence_key for e in entries}) == 80
        for worker in range(8):
            ns = [e.payload["n"] for e in entries if e.payload["worker"] == worker]
            assert ns == list(range(10))


class TestRestart:

    def test_keys_continue_after_reload(self, mailbox_dir, monkeypatch):
        monkeypatch.setattr("apnode.mailbox.time.time", lambda: 1714000000.0)
        first = MailboxStore(mailbox_dir)
        first.append("bob", INBOX, {"n": 0})

        second = MailboxStore(mailbox_dir)
        key = second.append("bob", INBOX, {"n": 1})

        assert key == "1714000000000-000001"
        assert [e.payload["n"] for e in second.list("bob", INBOX)] == [0, 1]


class TestErrors:

    def test_unknown_direction(self, mailbox):
        with pytest.raises(ValidationError):
            mailbox.append("alice", "spam", {})

    def test_bad_owner(self, mailbox):
        with pytest.raises(ValidationError):
            mailbox.append("../alice", INBOX, {})

    def test_missing_entry(self, mailbox):
        with pytest.raises(NotFoundError):
            mailbox.get("alice", INBOX, "1714000000000-000000")

    def test_unserializable_payload(self, mailbox, mailbox_dir):
        mailbox.append("bob", INBOX, {"n": 0})
        with pytest.raises(ValidationError):
            mailbox.append("bob", INBOX, {"n": object()})

        assert [p.name for p in (mailbox_dir / INBOX / "bob").iterdir() if p.suffix == ".tmp"] == []
        assert mailbox.count("bob", INBOX) == 1

    def test_stray_file_ignored(self, mailbox_dir):
        box = mailbox_dir / INBOX / "bob"
        box.mkdir(parents=True)
        (box / "notes.json").write_text("{}")

        mailbox = MailboxStore(mailbox_dir)
        mailbox.append("bob", INBOX, {"n": 0})

        assert [e.payload for e in mailbox.list("bob", INBOX)] == [{"n": 0}]
        assert mailbox.count("bob", INBOX) == 1
