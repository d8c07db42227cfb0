"""HMAC digest scheme shared by outbound Selcom requests and inbound callbacks.

The string to sign is `timestamp=<ts>` followed by `&field=value` for each
signed field, in the order listed, skipping fields missing from the body.
The digest is base64(HMAC-SHA256(api_secret, string_to_sign)).
"""

import base64
import hashlib
import hmac
from typing import Any, Iterable

from cvpay.common.logging import logger


class InvalidSignature(Exception):
    """Callback digest missing or not matching the shared secret."""


def _stringify(value: Any) -> str:
    # Match how the gateway renders JSON scalars when it signs.
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def parse_signed_fields(header: str | None) -> list[str]:
    if not header:
        return []
    return [field.strip() for field in header.split(",") if field.strip()]


def build_string_to_sign(timestamp: str, data: dict[str, Any], signed_fields: Iterable[str]) -> str:
    parts = [f"timestamp={timestamp}"]
    for field in signed_fields:
        value = data.get(field)
        if value is not None:
            parts.append(f"{field}={_stringify(value)}")
    return "&".join(parts)


def compute_digest(secret: str, timestamp: str, data: dict[str, Any], signed_fields: Iterable[str]) -> str:
    message = build_string_to_sign(timestamp, data, signed_fields)
    mac = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256)
    return base64.b64encode(mac.digest()).decode("ascii")


class SignatureVerifier:
    """Validates callback authenticity; disabled when no secret is configured."""

    def __init__(self, secret: str) -> None:
        self.secret = secret

    @property
    def enabled(self) -> bool:
        return bool(self.secret)

    def verify(
        self,
        timestamp: str | None,
        digest: str | None,
        signed_fields_header: str | None,
        data: dict[str, Any],
    ) -> None:
        """Raise `InvalidSignature` unless the digest matches the body."""

        if not self.enabled:
            logger.warning("webhook signature check skipped: no shared secret configured")
            return
        if not timestamp or not digest:
            raise InvalidSignature("missing Timestamp or Digest header")
        expected = compute_digest(self.secret, timestamp, data, parse_signed_fields(signed_fields_header))
        if not hmac.compare_digest(expected.encode("ascii"), digest.encode("utf-8")):
            raise InvalidSignature("digest mismatch")
