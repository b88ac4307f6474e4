# tests/test_delivery.py
"""Tests for sending, receiving and decrypting messages."""

import base64
import json
import os
import tempfile
from pathlib import Path

import pytest

from apnode import Node, NodeConfig
from apnode.activitypub import cipher
from apnode.activitypub.signatures import compute_digest, parse_signature_header, verify_request
from apnode.client import PushResponse
from apnode.delivery import DeliveryStatus
from apnode.errors import DeliveryError, NotFoundError, ValidationError
from apnode.mailbox import INBOX

BASE = "https://node.example"


class FakeClient:
    """Records outbound pushes instead of making HTTP calls."""

    def __init__(self, status: int = 202, body: str = "", error: Exception = None):
        self.status = status
        self.body = body
        self.error = error
        self.calls = []

    def post(self, url, body, headers):
        self.calls.append({"url": url, "body": body, "headers": headers})
        if self.error is not None:
            raise self.error
        return PushResponse(status=self.status, body=self.body)


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def client():
    return FakeClient()


def make_node(data_dir, client, **config):
    node = Node(NodeConfig(base_url=BASE, data_dir=str(data_dir), **config), client=client)
    if "alice" not in node.actors:
        node.create_actor("alice")
        node.create_actor("bob")
    return node


@pytest.fixture
def node(data_dir, client):
    return make_node(data_dir, client)


class TestSend:

    def test_alice_to_bob(self, node):
        result = node.send("alice", "bob", "hello")

        assert result.ok
        assert result.status == DeliveryStatus.DELIVERED
        assert result.local_committed
        assert len(node.list_inbox("bob")) == 1
        assert len(node.list_outbox("alice")) == 1

        decrypted = node.decrypt_inbox("bob")
        assert decrypted == [{"entryId": result.inbox_key, "decrypted": "hello"}]

    def test_outbox_activity(self, node):
        node.send("alice", "bob", "hello")
        activity = node.list_outbox("alice")[0]

        assert activity["@context"] == "https://www.w3.org/ns/activitystreams"
        assert activity["type"] == "Create"
        assert activity["actor"] == f"{BASE}/user/alice"
        assert activity["object"] == {
            "type": "Note",
            "content": "hello",
            "to": [f"{BASE}/user/bob"],
        }
        assert activity["published"].endswith("Z")

    def test_inbox_holds_ciphertext_only(self, node):
        node.send("alice", "bob", "top secret")
        entry = node.list_inbox("bob")[0]

        assert entry["from"] == f"{BASE}/user/alice"
        assert entry["to"] == f"{BASE}/user/bob"
        assert "top secret" not in json.dumps(entry)

    def test_rapid_sends_keep_order(self, node):
        node.send("alice", "bob", "hi")
        node.send("alice", "bob", "there")

        assert [d["decrypted"] for d in node.decrypt_inbox("bob")] == ["hi", "there"]
        assert [a["object"]["content"] for a in node.list_outbox("alice")] == ["hi", "there"]

    def test_case_insensitive_names(self, node):
        result = node.send("Alice", "BOB", "hey")
        assert result.ok
        assert node.decrypt_inbox("bob")[0]["decrypted"] == "hey"

    @pytest.mark.parametrize("args", [
        ("", "bob", "hi"),
        ("alice", "", "hi"),
        ("alice", "bob", ""),
        (None, "bob", "hi"),
        ("alice", "bob", "   "),
    ])
    def test_validation(self, node, args):
        with pytest.raises(ValidationError):
            node.send(*args)
        assert node.list_outbox("alice") == []

    def test_unknown_sender(self, node):
        with pytest.raises(NotFoundError):
            node.send("nobody", "bob", "hi")

    def test_unknown_recipient(self, node, client):
        with pytest.raises(NotFoundError):
            node.send("alice", "nobody", "hi")
        # Outbox write happens before the recipient lookup
        assert len(node.list_outbox("alice")) == 1
        assert client.calls == []


class TestSignedPush:

    def test_headers(self, node, client):
        node.send("alice", "bob", "hello")
        call = client.calls[0]
        headers = call["headers"]

        assert call["url"] == f"{BASE}/inbox/bob"
        assert headers["Host"] == "node.example"
        assert headers["Content-Type"] == "application/json"
        assert headers["Digest"] == compute_digest(call["body"])
        assert json.loads(call["body"])["type"] == "Create"

    def test_signature_verifies(self, node, client):
        node.send("alice", "bob", "hello")
        headers = client.calls[0]["headers"]
        alice = node.actors.get("alice")

        assert parse_signature_header(headers["Signature"])["keyId"] == alice.key_id
        assert verify_request(
            alice.public_key,
            headers["Signature"],
            "/inbox/bob",
            headers["Date"],
            headers["Digest"],
            headers["Host"],
        )

    def test_body_is_outbox_activity(self, node, client):
        node.send("alice", "bob", "hello")
        assert json.loads(client.calls[0]["body"]) == node.list_outbox("alice")[0]


class TestRemoteFailures:

    def test_http_error_still_stores(self, data_dir):
        node = make_node(data_dir, FakeClient(status=500, body="boom"))
        result = node.send("alice", "bob", "hello")

        assert not result.ok
        assert result.status == DeliveryStatus.REMOTE_FAILURE
        assert result.http_status == 500
        assert result.detail == "boom"
        assert result.local_committed
        assert node.decrypt_inbox("bob")[0]["decrypted"] == "hello"

    def test_timeout(self, data_dir):
        node = make_node(data_dir, FakeClient(error=TimeoutError("timed out")))
        result = node.send("alice", "bob", "hello")

        assert result.status == DeliveryStatus.TIMEOUT
        assert len(node.list_inbox("bob")) == 1

    def test_connection_refused(self, data_dir):
        node = make_node(data_dir, FakeClient(error=ConnectionRefusedError("refused")))
        result = node.send("alice", "bob", "hello")

        assert result.status == DeliveryStatus.REMOTE_FAILURE
        assert result.http_status is None
        assert len(node.list_inbox("bob")) == 1

    def test_raise_for_status(self, data_dir):
        node = make_node(data_dir, FakeClient(status=403))
        result = node.send("alice", "bob", "hello")

        with pytest.raises(DeliveryError) as excinfo:
            result.raise_for_status()
        assert excinfo.value.result is result

    def test_network_disabled(self, data_dir, client):
        node = make_node(data_dir, client, network_delivery=False)
        result = node.send("alice", "bob", "hello")

        assert result.ok
        assert result.status == DeliveryStatus.SKIPPED
        assert client.calls == []
        assert len(node.list_inbox("bob")) == 1

    def test_result_dict(self, node):
        data = node.send("alice", "bob", "hello").to_dict()
        assert data["status"] == "delivered"
        assert data["ok"] is True
        assert data["localCommitted"] is True


class TestReceive:

    def test_stores_dict(self, node):
        key = node.receive("bob", {"type": "Like", "actor": "https://x.example/u/1"})
        assert node.list_inbox("bob") == [
            {"entryId": key, "type": "Like", "actor": "https://x.example/u/1"},
        ]

    def test_stores_json_bytes(self, node):
        node.receive("bob", b'{"type": "Create"}')
        assert node.list_inbox("bob")[0]["type"] == "Create"

    def test_rejects_unparseable(self, node):
        with pytest.raises(ValidationError):
            node.receive("bob", b"{not json")
        with pytest.raises(ValidationError):
            node.receive("bob", "[1, 2]")

    def test_unknown_recipient(self, node):
        with pytest.raises(NotFoundError):
            node.receive("nobody", {"type": "Create"})


class TestDecryptInbox:

    def test_bad_entries_do_not_abort(self, node):
        node.send("alice", "bob", "first")

        good = cipher.encrypt(node.get_public_key("bob"), b"x").to_dict()
        good["encryptedKey"] = base64.b64encode(os.urandom(256)).decode()
        node.mailbox.append("bob", INBOX, {"encrypted": good})

        node.receive("bob", {"type": "Create", "object": {"content": "plain"}})

        for_alice = cipher.encrypt(node.get_public_key("alice"), b"wrong key")
        node.mailbox.append("bob", INBOX, {"encrypted": for_alice.to_dict()})

        node.send("alice", "bob", "last")

        results = node.decrypt_inbox("bob")
        assert len(results) == 5
        assert results[0]["decrypted"] == "first"
        assert "error" in results[1]
        assert "error" in results[2]
        assert "error" in results[3]
        assert results[4]["decrypted"] == "last"
        assert [r["entryId"] for r in results] == [e["entryId"] for e in node.list_inbox("bob")]

    def test_empty_inbox(self, node):
        assert node.decrypt_inbox("bob") == []

    def test_unknown_actor(self, node):
        with pytest.raises(NotFoundError):
            node.decrypt_inbox("nobody")


class TestFollowAndLike:

    def test_follow(self, node):
        alice_uri = f"{BASE}/user/alice"
        bob_uri = f"{BASE}/user/bob"
        node.follow(alice_uri, bob_uri)

        followers = node.followers_collection("bob")
        assert followers["type"] == "OrderedCollection"
        assert followers["totalItems"] == 1
        assert followers["orderedItems"] == [alice_uri]
        assert node.following_collection("alice")["orderedItems"] == [bob_uri]

        follow = node.list_outbox("alice")[-1]
        assert follow["type"] == "Follow"
        assert follow["object"] == bob_uri

    def test_duplicate_follow_set_mode(self, node):
        node.follow(f"{BASE}/user/alice", f"{BASE}/user/bob")
        node.follow(f"{BASE}/user/alice", f"{BASE}/user/bob")
        assert node.followers_collection("bob")["totalItems"] == 1
        assert len(node.list_outbox("alice")) == 1

    def test_duplicate_follow_log_mode(self, data_dir, client):
        node = make_node(data_dir, client, follower_mode="log")
        node.follow(f"{BASE}/user/alice", f"{BASE}/user/bob")
        node.follow(f"{BASE}/user/alice", f"{BASE}/user/bob")
        assert node.followers_collection("bob")["totalItems"] == 2

    def test_remote_follower(self, node):
        node.follow("https://remote.example/users/zed", f"{BASE}/user/bob")
        assert node.followers_collection("bob")["orderedItems"] == ["https://remote.example/users/zed"]

    def test_unknown_target(self, node):
        with pytest.raises(NotFoundError):
            node.follow(f"{BASE}/user/alice", "https://remote.example/users/zed")

    def test_like_stores_nothing(self, node):
        node.like(f"{BASE}/user/alice", "https://remote.example/notes/1")
        assert node.list_outbox("alice") == []
        assert node.list_inbox("alice") == []

    def test_like_requires_fields(self, node):
        with pytest.raises(ValidationError):
            node.like("", "https://remote.example/notes/1")


class TestPersistence:

    def test_outbox_index_rebuilt_from_disk(self, data_dir, client):
        first = make_node(data_dir, client)
        first.send("alice", "bob", "persisted")

        second = make_node(data_dir, client)
        assert [a["object"]["content"] for a in second.list_outbox("alice")] == ["persisted"]
        assert second.decrypt_inbox("bob")[0]["decrypted"] == "persisted"

    def test_profile_never_exposes_private_key(self, node):
        assert "PRIVATE KEY" not in json.dumps(node.get_profile("alice"))
        assert node.get_public_key("alice").startswith("-----BEGIN PUBLIC KEY-----")
