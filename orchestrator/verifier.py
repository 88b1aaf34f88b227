"""
Notification Verifier

Checks that an inbound notification was signed with the shared secret and is
fresh. Signature = HMAC-SHA256(secret, "{timestamp}.{canonical-json(payload)}"),
sent as "sha256=<hex>".
"""

import hashlib
import hmac
import json
import logging
import time
from typing import Any, Callable, Optional, Union

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
DEFAULT_TOLERANCE_SECONDS = 300

Payload = Union[dict, list, str, bytes]


def canonical_json(payload: Payload) -> str:
    """
    Serialize a payload the same way on both ends.

    Key order is preserved as received. Raw bodies (str/bytes) are used as-is.
    """
    if isinstance(payload, bytes):
        return payload.decode("utf-8")
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def compute_signature(payload: Payload, timestamp: Union[int, str], secret: str) -> str:
    """Return the "sha256=<hex>" signature header for a payload"""
    message = f"{timestamp}.{canonical_json(payload)}"
    digest = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def sign(payload: Payload, timestamp: Optional[int] = None, secret: str = "") -> tuple:
    """
    Sign a payload as an agent would.

    Returns:
        (signature_header, timestamp) tuple
    """
    if timestamp is None:
        timestamp = int(time.time())
    return compute_signature(payload, timestamp, secret), timestamp


def _parse_timestamp(timestamp: Any) -> Optional[int]:
    if isinstance(timestamp, bool):
        return None
    if isinstance(timestamp, int):
        return timestamp
    if isinstance(timestamp, float):
        return int(timestamp)
    if isinstance(timestamp, str):
        try:
            return int(timestamp.strip())
        except ValueError:
            return None
    return None


class NotificationVerifier:
    """
    Verifies signature and freshness of inbound notifications.

    verify() never raises: a missing secret, a missing header, a stale
    timestamp or a wrong digest all yield False.
    """

    def __init__(
        self,
        shared_secret: Optional[str] = None,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize verifier.

        Args:
            shared_secret: Default secret used when verify() is not given one
            tolerance_seconds: Maximum allowed |now - timestamp|
            clock: Time source, injectable for tests
        """
        self.shared_secret = shared_secret
        self.tolerance_seconds = tolerance_seconds
        self.clock = clock

    @property
    def configured(self) -> bool:
        return bool(self.shared_secret)

    def verify(
        self,
        payload: Payload,
        signature_header: Optional[str],
        timestamp: Any,
        shared_secret: Optional[str] = None
    ) -> bool:
        """
        Verify one notification.

        Args:
            payload: Parsed JSON payload, or the raw body
            signature_header: Value of the signature header ("sha256=<hex>")
            timestamp: Value of the timestamp header (Unix seconds)
            shared_secret: Overrides the configured secret

        Returns:
            True only if the timestamp is fresh and the signature matches
        """
        secret = shared_secret or self.shared_secret
        if not secret:
            logger.warning("Notification rejected: no shared secret configured")
            return False

        if not isinstance(signature_header, str) or not signature_header.startswith(SIGNATURE_PREFIX):
            logger.warning("Notification rejected: missing or malformed signature header")
            return False

        ts = _parse_timestamp(timestamp)
        if ts is None:
            logger.warning(f"Notification rejected: unparseable timestamp {timestamp!r}")
            return False

        if abs(int(self.clock()) - ts) > self.tolerance_seconds:
            logger.warning(f"Notification rejected: timestamp {ts} outside {self.tolerance_seconds}s window")
            return False

        try:
            expected = compute_signature(payload, ts, secret)
        except (TypeError, ValueError, UnicodeDecodeError) as e:
            logger.warning(f"Notification rejected: payload not serializable ({e})")
            return False

        return hmac.compare_digest(expected.encode("utf-8"), signature_header.encode("utf-8"))
