"""EnvelopeSerializer: JSON roundtrip and retry envelope derivation."""

from __future__ import annotations

import json
import uuid
from typing import Any

from pydantic import ValidationError

from .envelope import (
    ORIGINAL_MESSAGE_ID_HEADER,
    RETRY_COUNT_HEADER,
    RETRY_DELAY_HEADER,
    MessageEnvelope,
)
from .exceptions import (
    MalformedEnvelopeError,
    MessagingSerializationError,
    RetryLimitExceededError,
)
from .retry import RetryPolicy

_REQUIRED_FIELDS = ("id", "data", "timestamp")


def _json_serializer(obj: Any) -> Any:
    """Serialize datetime and other non-JSON types."""
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class EnvelopeSerializer:
    """Serialize/deserialize MessageEnvelope to/from UTF-8 JSON bytes."""

    def __init__(self, default_policy: RetryPolicy | None = None) -> None:
        """Optionally pass the backoff used when no policy is given to retries."""
        self._default_policy = default_policy or RetryPolicy()

    def encode(
        self,
        payload: Any,
        *,
        delay: int | None = None,
        priority: int | None = None,
        headers: dict[str, Any] | None = None,
    ) -> bytes:
        """Wrap ``payload`` in a fresh envelope and encode it."""
        envelope = self.wrap(payload, delay=delay, priority=priority, headers=headers)
        return self.serialize(envelope)

    def wrap(
        self,
        payload: Any,
        *,
        delay: int | None = None,
        priority: int | None = None,
        headers: dict[str, Any] | None = None,
    ) -> MessageEnvelope:
        """Build a new envelope (fresh id, current timestamp, retryCount=0)."""
        try:
            return MessageEnvelope(
                data=payload,
                delay=delay,
                priority=priority,
                headers=dict(headers or {}),
            )
        except ValidationError as e:
            raise MessagingSerializationError(str(e)) from e

    def serialize(self, envelope: MessageEnvelope) -> bytes:
        """Encode envelope to JSON bytes."""
        try:
            body = json.dumps(envelope.to_wire(), default=_json_serializer)
        except (TypeError, ValueError) as e:
            raise MessagingSerializationError(str(e)) from e
        return body.encode("utf-8")

    def decode(self, raw: bytes) -> MessageEnvelope:
        """Decode JSON bytes to MessageEnvelope.

        Raises:
            MalformedEnvelopeError: if the frame is not JSON, not an object, or
                lacks ``id``, ``data`` or ``timestamp``.
        """
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedEnvelopeError(f"Malformed envelope: {e}") from e
        if not isinstance(data, dict):
            raise MalformedEnvelopeError("Malformed envelope: expected a JSON object")
        missing = [name for name in _REQUIRED_FIELDS if name not in data]
        if missing:
            raise MalformedEnvelopeError(
                f"Malformed envelope: missing {', '.join(missing)}"
            )
        try:
            return MessageEnvelope.model_validate(data)
        except ValidationError as e:
            raise MalformedEnvelopeError(f"Malformed envelope: {e}") from e

    def next_retry_envelope(
        self,
        original: MessageEnvelope,
        max_retries: int,
        policy: RetryPolicy | None = None,
    ) -> MessageEnvelope:
        """Derive the envelope for the next retry of ``original``.

        The retry gets a new id, ``retry_count + 1``, the backoff delay for the
        new count, and a header linking back to the first envelope's id.
        Payload, timestamp and headers are carried forward.

        Raises:
            RetryLimitExceededError: if the new count would exceed ``max_retries``.
        """
        retry_count = original.retry_count + 1
        if retry_count > max_retries:
            raise RetryLimitExceededError(
                f"Retry limit exceeded ({retry_count} > {max_retries})",
                message_id=original.message_id,
                retry_count=original.retry_count,
            )
        delay = (policy or self._default_policy).delay_ms(retry_count)
        headers = {
            **original.headers,
            ORIGINAL_MESSAGE_ID_HEADER: original.original_message_id,
            RETRY_COUNT_HEADER: retry_count,
            RETRY_DELAY_HEADER: delay,
        }
        return original.model_copy(
            update={
                "message_id": str(uuid.uuid4()),
                "retry_count": retry_count,
                "delay": delay,
                "headers": headers,
            }
        )
