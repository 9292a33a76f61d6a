from __future__ import annotations

import json
import uuid
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


# ---------------------------------------------------------------------------
# Envelope kinds
# ---------------------------------------------------------------------------

REGISTER = "register"
REGISTERED = "registered"

SIGNALING_KINDS = frozenset(
    {
        "call-request",
        "call-accept",
        "call-decline",
        "call-offer",
        "call-answer",
        "sdp-offer",
        "sdp-answer",
        "ice-candidate",
        "call-end",
    }
)

KNOWN_KINDS = frozenset({REGISTER, "message", "presence", "ack"}) | SIGNALING_KINDS


class MalformedEnvelope(ValueError):
    """Raised when an inbound frame cannot be read as an envelope."""


# ---------------------------------------------------------------------------
# Envelope model
# ---------------------------------------------------------------------------

class Envelope(BaseModel):
    """Routing view of a relayed JSON frame.

    Only the routing header is typed; everything else rides along in the
    model extras and is never looked at.
    """

    kind: str = Field(alias="type")
    from_: Any = Field(default=None, alias="from")
    to: Optional[str] = None
    id: Any = None
    address: Any = None
    call_id: Any = Field(default=None, alias="callId")

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @field_validator("kind")
    @classmethod
    def _kind_non_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("type must be a non-empty string")
        return value

    @property
    def is_signaling(self) -> bool:
        return self.kind in SIGNALING_KINDS

    @property
    def is_known(self) -> bool:
        return self.kind in KNOWN_KINDS

    @property
    def claimed_identity(self) -> Any:
        """Identity carried by a register frame (``id`` wins over ``address``)."""

        return self.id or self.address


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def normalize_identity(identity: str) -> str:
    """Case-fold an identity so lookups ignore case."""

    return identity.lower()


def new_call_id() -> str:
    return str(uuid.uuid4())


def parse_frame(raw: Union[str, bytes]) -> tuple[Envelope, Dict[str, Any]]:
    """Decode one inbound frame.

    Returns the typed envelope together with the decoded JSON object, which is
    what actually gets forwarded so that unknown fields survive untouched.
    """

    try:
        obj = json.loads(raw)
    except (TypeError, ValueError, RecursionError) as exc:
        raise MalformedEnvelope(f"invalid JSON: {exc}") from exc
    if not isinstance(obj, dict):
        raise MalformedEnvelope("frame must be a JSON object")
    try:
        env = Envelope.model_validate(obj)
    except ValidationError as exc:
        raise MalformedEnvelope(f"bad envelope: {exc.error_count()} error(s)") from exc
    return env, obj


def encode_frame(frame: Dict[str, Any]) -> str:
    return json.dumps(frame, separators=(",", ":"))


def build_registered(identity: str) -> Dict[str, Any]:
    return {"type": REGISTERED, "id": identity}


__all__ = [
    "Envelope",
    "MalformedEnvelope",
    "KNOWN_KINDS",
    "SIGNALING_KINDS",
    "REGISTER",
    "REGISTERED",
    "normalize_identity",
    "new_call_id",
    "parse_frame",
    "encode_frame",
    "build_registered",
]
