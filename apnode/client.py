# apnode/client.py
"""
Outbound HTTP transport for inbox deliveries.

Usage:
    client = InboxClient(timeout=5)
    response = client.post(inbox_url, body, headers)
    print(response.status)
"""

import http.client
import logging
import socket
from dataclasses import dataclass
from urllib.request import urlopen, Request
from urllib.error import HTTPError, URLError

logger = logging.getLogger(__name__)

USER_AGENT = "apnode/0.1"


@dataclass
class PushResponse:
    """Status and body returned by a remote inbox."""
    status: int
    body: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class InboxClient:
    """
    POSTs signed activities to inbox URLs.

    HTTP error statuses are returned, not raised. Timeouts raise
    TimeoutError; unreachable hosts and malformed replies raise
    ConnectionError.

    Args:
        timeout: Seconds before the request is abandoned
    """

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    def post(self, url: str, body: bytes, headers: dict) -> PushResponse:
        headers = dict(headers)
        headers.setdefault("User-Agent", USER_AGENT)
        req = Request(url, data=body, headers=headers, method="POST")

        try:
            with urlopen(req, timeout=self.timeout) as response:
                return PushResponse(
                    status=response.status,
                    body=response.read().decode("utf-8", errors="replace"),
                )
        except HTTPError as e:
            error_body = e.read().decode("utf-8", errors="replace")
            logger.debug(f"POST {url} returned HTTP {e.code}")
            return PushResponse(status=e.code, body=error_body)
        except URLError as e:
            if isinstance(e.reason, (socket.timeout, TimeoutError)):
                raise TimeoutError(f"Timed out after {self.timeout}s posting to {url}") from e
            raise ConnectionError(f"Failed to connect to {url}: {e.reason}") from e
        except (socket.timeout, TimeoutError) as e:
            raise TimeoutError(f"Timed out after {self.timeout}s posting to {url}") from e
        except http.client.HTTPException as e:
            raise ConnectionError(f"Malformed reply from {url}: {e!r}") from e
