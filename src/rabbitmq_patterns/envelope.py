"""MessageEnvelope: standard immutable wrapper for transport."""

from __future__ import annotations

import time
import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

ORIGINAL_MESSAGE_ID_HEADER = "x-original-message-id"
RETRY_COUNT_HEADER = "x-retry-count"
RETRY_DELAY_HEADER = "x-retry-delay"


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


class MessageEnvelope(BaseModel):
    """Immutable wrapper for messages over the wire.

    Carries the application payload together with identity, creation time,
    retry state and the optional delay/priority hints. Wire names are the
    camelCase aliases (``id``, ``retryCount``); unknown fields are ignored.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    message_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()), alias="id", min_length=1
    )
    data: Any = Field(..., description="Application payload (JSON-serializable)")
    timestamp: int = Field(default_factory=now_ms, gt=0, description="Epoch ms")
    retry_count: int = Field(default=0, ge=0, alias="retryCount")
    delay: int | None = Field(default=None, ge=0, description="Delay hint in ms")
    priority: int | None = Field(default=None, ge=0, le=255)
    headers: dict[str, Any] = Field(default_factory=dict)

    @property
    def original_message_id(self) -> str:
        """Id of the first envelope of this logical task."""
        return str(self.headers.get(ORIGINAL_MESSAGE_ID_HEADER, self.message_id))

    def to_wire(self) -> dict[str, Any]:
        """Return the JSON-compatible wire representation.

        Unset ``delay`` and ``priority`` are omitted; ``data`` is always
        present, including a ``null`` payload.
        """
        wire = self.model_dump(mode="json", by_alias=True)
        for name in ("delay", "priority"):
            if wire[name] is None:
                del wire[name]
        return wire
