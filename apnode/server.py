# apnode/server.py
"""
HTTP routing layer for the node.

Endpoints:
    GET  /                        - Health check
    POST /create-user/:username   - Register an actor
    POST /send-message            - {sender, recipient, content}
    POST /follow                  - {actor, object}
    POST /like                    - {actor, object}
    POST /inbox/:username         - Inbound activity
    GET  /inbox/:username         - Inbox OrderedCollection
    GET  /outbox/:username        - Outbox OrderedCollection
    GET  /decrypt/:username       - Decrypted inbox
    GET  /user/:username          - Person profile
    GET  /user/:username/followers
    GET  /user/:username/following
"""

import json
import logging
import threading
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler
from typing import Any, Optional
from urllib.parse import urlparse

from .activitypub.signatures import compute_digest, parse_signature_header, verify_request
from .delivery import DeliveryStatus
from .errors import ConflictError, NodeError, NotFoundError, ValidationError
from .node import Node

logger = logging.getLogger(__name__)

ACTIVITY_JSON = "application/activity+json"


def _status_for(error: NodeError) -> int:
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, ConflictError):
        return 409
    return 500


class NodeServer:
    """
    HTTP server for a Node.

    Usage:
        server = NodeServer(Node(NodeConfig(data_dir="/tmp/apnode")), port=3000)
        server.start()  # Blocking
    """

    def __init__(self, node: Node, host: str = "127.0.0.1", port: int = 3000):
        self.node = node
        self.host = host
        self.port = port
        self.httpd: Optional[ThreadingHTTPServer] = None

    def _create_handler(server_instance):
        """Create request handler with access to server instance."""

        class RequestHandler(BaseHTTPRequestHandler):
            server_ref = server_instance

            @property
            def node(self) -> Node:
                return self.server_ref.node

            def log_message(self, format, *args):
                logger.debug(format % args)

            def _send_json(self, data: Any, status: int = 200, content_type: str = "application/json"):
                payload = json.dumps(data).encode()
                self.send_response(status)
                self.send_header("Content-Type", content_type)
                self.send_header("Content-Length", str(len(payload)))
                self.end_headers()
                self.wfile.write(payload)

            def _send_error(self, message: str, status: int = 400, extra: Optional[dict] = None):
                self._send_json({"error": message, **(extra or {})}, status)

            def _read_body(self) -> bytes:
                content_length = int(self.headers.get("Content-Length", 0))
                return self.rfile.read(content_length)

            def _read_json(self) -> dict:
                try:
                    data = json.loads(self._read_body() or b"{}")
                except json.JSONDecodeError as e:
                    raise ValidationError(f"Invalid JSON: {e}")
                if not isinstance(data, dict):
                    raise ValidationError("Body must be a JSON object")
                return data

            def _dispatch(self, handler, *args):
                try:
                    handler(*args)
                except NodeError as e:
                    self._send_error(str(e), _status_for(e))
                except Exception as e:
                    logger.exception(f"{self.command} {self.path} failed")
                    self._send_error(str(e), 500)

            def do_GET(self):
                path = urlparse(self.path).path.rstrip("/")
                parts = path.strip("/").split("/")

                if path == "":
                    self._send_json({"status": "ok"})
                elif len(parts) == 2 and parts[0] == "inbox":
                    self._dispatch(lambda: self._send_json(self.node.inbox_collection(parts[1])))
                elif len(parts) == 2 and parts[0] == "outbox":
                    self._dispatch(lambda: self._send_json(
                        self.node.outbox_collection(parts[1]), content_type=ACTIVITY_JSON))
                elif len(parts) == 2 and parts[0] == "decrypt":
                    self._dispatch(lambda: self._send_json(self.node.decrypt_inbox(parts[1])))
                elif len(parts) == 2 and parts[0] == "user":
                    self._dispatch(lambda: self._send_json(
                        self.node.get_profile(parts[1]), content_type=ACTIVITY_JSON))
                elif len(parts) == 3 and parts[0] == "user" and parts[2] == "followers":
                    self._dispatch(lambda: self._send_json(
                        self.node.followers_collection(parts[1]), content_type=ACTIVITY_JSON))
                elif len(parts) == 3 and parts[0] == "user" and parts[2] == "following":
                    self._dispatch(lambda: self._send_json(
                        self.node.following_collection(parts[1]), content_type=ACTIVITY_JSON))
                else:
                    self._send_error("Not found", 404)

            def do_POST(self):
                path = urlparse(self.path).path.rstrip("/")
                parts = path.strip("/").split("/")

                if len(parts) == 2 and parts[0] == "create-user":
                    self._dispatch(self._create_user, parts[1])
                elif path == "/send-message":
                    self._dispatch(self._send_message)
                elif path == "/follow":
                    self._dispatch(self._follow)
                elif path == "/like":
                    self._dispatch(self._like)
                elif len(parts) == 2 and parts[0] == "inbox":
                    self._dispatch(self._inbox, parts[1], path)
                else:
                    self._send_error("Not found", 404)

            def _create_user(self, username: str):
                profile = self.node.create_actor(username)
                self._send_json({
                    "status": f"User '{profile['preferredUsername']}' created successfully",
                    "id": profile["id"],
                }, 201)

            def _send_message(self):
                data = self._read_json()
                result = self.node.send(data.get("sender"), data.get("recipient"), data.get("content"))
                if result.ok:
                    self._send_json({
                        "message": "Message sent and encrypted successfully",
                        **result.to_dict(),
                    })
                    return
                if result.http_status:
                    status = result.http_status
                elif result.status == DeliveryStatus.TIMEOUT:
                    status = 504
                else:
                    status = 502
                self._send_error("Failed to deliver message", status, result.to_dict())

            def _follow(self):
                data = self._read_json()
                self.node.follow(data.get("actor"), data.get("object"))
                self._send_json({"status": "ok"}, 202)

            def _like(self):
                data = self._read_json()
                self.node.like(data.get("actor"), data.get("object"))
                self._send_json({"status": "ok"}, 202)

            def _inbox(self, username: str, path: str):
                body = self._read_body()
                signer = self._check_signature(path, body)
                if signer is not None:
                    # Pushed by this node's own send(), which already stored
                    # the encrypted copy in the recipient's inbox
                    recipient = self.node.actors.get(username)
                    logger.debug(f"Local push from {signer.username} to {recipient.username} acknowledged")
                    self._send_json({"status": "accepted"}, 202)
                    return
                key = self.node.receive(username, body)
                self._send_json({"status": "accepted", "entryId": key}, 202)

            def _check_signature(self, path: str, body: bytes):
                """
                Verify a push signed by a local actor and return that actor.

                Pushes signed by unknown keys, and unsigned ones, return None
                unless verify_inbound_signatures is set, in which case they
                are rejected.
                """
                required = self.node.config.verify_inbound_signatures
                header = self.headers.get("Signature")
                if not header:
                    if required:
                        raise ValidationError("Missing Signature header")
                    return None
                key_id = parse_signature_header(header)["keyId"]
                signer = self.node.actors.resolve_uri(key_id)
                if signer is None:
                    if required:
                        raise ValidationError(f"Unknown signing key {key_id}")
                    return None
                digest = compute_digest(body)
                if self.headers.get("Digest") != digest:
                    raise ValidationError("Digest does not match body")
                if not verify_request(
                    signer.public_key,
                    header,
                    path,
                    self.headers.get("Date", ""),
                    digest,
                    self.headers.get("Host", ""),
                ):
                    raise ValidationError("Signature verification failed")
                return signer

        return RequestHandler

    def bind(self) -> ThreadingHTTPServer:
        """Bind the listening socket. Port 0 picks a free port."""
        handler = self._create_handler()
        self.httpd = ThreadingHTTPServer((self.host, self.port), handler)
        self.httpd.daemon_threads = True
        self.port = self.httpd.server_address[1]
        return self.httpd

    def start(self):
        """Start the HTTP server (blocking)."""
        httpd = self.httpd or self.bind()
        logger.info(f"Node {self.node.config.base_url} listening on {self.host}:{self.port}")
        try:
            httpd.serve_forever()
        except KeyboardInterrupt:
            logger.info("Shutting down...")
        finally:
            httpd.server_close()

    def start_background(self) -> threading.Thread:
        """Start the server in a background thread."""
        if self.httpd is None:
            self.bind()
        thread = threading.Thread(target=self.start)
        thread.daemon = True
        thread.start()
        return thread

    def stop(self):
        if self.httpd is not None:
            self.httpd.shutdown()

