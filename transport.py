"""
Message transports.

A transport delivers text to a destination. Long texts are split into
ordered parts the way an SMS gateway expects them and delivered as a set.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_MAX_PART_LENGTH = 160  # single GSM-7 SMS segment
DEFAULT_TIMEOUT = 30


class TransportError(Exception):
    """Raised when a message could not be delivered."""
    pass


class PermissionDeniedError(TransportError):
    """Raised when the transport refuses to send on our behalf."""
    pass


@dataclass
class SendResult:
    """Outcome of a successful send"""
    destination: str
    parts: int


def split_message(content: str, max_length: int = DEFAULT_MAX_PART_LENGTH) -> List[str]:
    """
    Split content into ordered parts no longer than ``max_length``.

    Breaks on whitespace where possible; words longer than a part are
    hard-split.
    """
    if max_length < 1:
        raise ValueError("max_length must be positive")

    text = content.strip()
    if len(text) <= max_length:
        return [text]

    parts = []
    current = ""
    for word in text.split():
        while len(word) > max_length:
            if current:
                parts.append(current)
                current = ""
            parts.append(word[:max_length])
            word = word[max_length:]
        if not word:
            continue
        candidate = f"{current} {word}" if current else word
        if len(candidate) <= max_length:
            current = candidate
        else:
            parts.append(current)
            current = word
    if current:
        parts.append(current)
    return parts


class LogTransport:
    """Writes messages to the log instead of sending them (dry run)."""

    def __init__(self, max_part_length: int = DEFAULT_MAX_PART_LENGTH):
        self.max_part_length = max_part_length

    def send(self, destination: str, content: str) -> SendResult:
        parts = split_message(content, self.max_part_length)
        for index, part in enumerate(parts, start=1):
            logger.info(f"[dry-run] to {destination} ({index}/{len(parts)}): {part}")
        return SendResult(destination=destination, parts=len(parts))


class HttpSmsTransport:
    """Sends messages through an HTTP SMS gateway"""

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        sender: Optional[str] = None,
        max_part_length: int = DEFAULT_MAX_PART_LENGTH,
        timeout: int = DEFAULT_TIMEOUT
    ):
        """
        Initialize the gateway transport

        Args:
            url: Gateway endpoint accepting one JSON message per POST
            api_key: Bearer token for the gateway
            sender: Sender id / number the gateway should use
            max_part_length: Maximum characters per message part
            timeout: Request timeout in seconds
        """
        self.url = url
        self.sender = sender
        self.max_part_length = max_part_length
        self.timeout = timeout

        self.headers: Dict[str, str] = {"Content-Type": "application/json"}
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"

        self.session = requests.Session()

    def send(self, destination: str, content: str) -> SendResult:
        """
        Send content to destination, split into ordered parts.

        Raises:
            PermissionDeniedError: Gateway rejected our credentials (401/403)
            TransportError: Any other delivery failure
        """
        parts = split_message(content, self.max_part_length)
        logger.debug(f"Sending {len(parts)} part(s) to {destination}")

        for index, part in enumerate(parts, start=1):
            body = {
                "to": destination,
                "from": self.sender,
                "body": part,
                "part": index,
                "parts": len(parts)
            }
            try:
                response = self.session.post(
                    self.url, json=body, headers=self.headers, timeout=self.timeout
                )
                response.raise_for_status()
            except requests.exceptions.HTTPError as e:
                status = e.response.status_code if e.response is not None else None
                if status in (401, 403):
                    raise PermissionDeniedError(
                        f"Gateway refused to send to {destination} (HTTP {status})"
                    ) from e
                raise TransportError(f"Gateway error sending to {destination}: {e}") from e
            except requests.exceptions.RequestException as e:
                logger.error(f"Request failed for {self.url}: {e}")
                raise TransportError(f"Failed to reach gateway: {e}") from e

        return SendResult(destination=destination, parts=len(parts))
