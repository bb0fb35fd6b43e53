"""
Wire protocol for Couch Signal.

Every frame on the signaling socket is a JSON object with a ``type`` tag.
All other fields are optional and are left out of the encoded form when
they are not set.
"""

import json
import math
import secrets
import time
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictStr,
    ValidationError,
    field_validator,
)


HOST_ID_PREFIX = "host-"
CONTROLLER_ID_PREFIX = "controller-"


class ProtocolError(ValueError):
    """Raised when a frame cannot be decoded into a Message.

    ``message_type`` is set when the frame was a JSON object with a usable
    ``type`` tag, so the caller can still answer the sender.
    """

    def __init__(self, reason: str, message_type: Optional[str] = None):
        self.reason = reason
        self.message_type = message_type
        super().__init__(reason)


class MessageType(str, Enum):
    REGISTER = "register"
    REGISTERED = "registered"
    LIST_HOSTS = "list-hosts"
    HOSTS = "hosts"
    HOSTS_UPDATED = "hosts-updated"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    PING = "ping"
    PONG = "pong"
    ERROR = "error"
    HOST_DISCONNECTED = "host-disconnected"


SIGNALING_TYPES = (MessageType.OFFER, MessageType.ANSWER, MessageType.ICE_CANDIDATE)


class Role(str, Enum):
    HOST = "host"
    CONTROLLER = "controller"


class HostInfo(BaseModel):
    """One entry of a host roster."""

    model_config = ConfigDict(frozen=True)

    id: StrictStr
    online: StrictBool


class Message(BaseModel):
    """
    The signaling envelope.

    ``type`` holds a MessageType for known tags and the raw string for
    anything else, so unknown messages survive decoding and can be logged
    by the router.
    """

    model_config = ConfigDict(populate_by_name=True)

    type: Union[MessageType, str]
    id: Optional[str] = None
    role: Optional[Role] = Field(
        default=None,
        # Older clients send the role as "clientType"
        validation_alias=AliasChoices("role", "clientType"),
        serialization_alias="role",
    )
    from_: Optional[str] = Field(default=None, alias="from")
    target: Optional[str] = None
    payload: Any = None
    host_list: Optional[List[HostInfo]] = Field(default=None, alias="list")
    host_id: Optional[str] = Field(default=None, alias="hostId")
    text: Optional[str] = Field(default=None, alias="message")
    timestamp: Optional[int] = None

    @field_validator("type")
    @classmethod
    def known_type(cls, v: str) -> Union[MessageType, str]:
        try:
            return MessageType(v)
        except ValueError:
            return v

    @field_validator("timestamp", mode="before")
    @classmethod
    def finite_timestamp(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("timestamp must be a number")
        if isinstance(v, float):
            if not math.isfinite(v):
                raise ValueError("timestamp must be finite")
            return int(v)
        return v

    @property
    def type_name(self) -> str:
        if isinstance(self.type, MessageType):
            return self.type.value
        return str(self.type)

    def to_dict(self) -> Dict[str, Any]:
        """Return the wire form, omitting every field that is not set."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def now_ms() -> int:
    """Current wall clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"])
    if location:
        return f"Field '{location}': {first['msg']}"
    return first["msg"]


def message_from_dict(data: Any) -> Message:
    """
    Build a Message from an already-parsed JSON value.

    Raises:
        ProtocolError: if the value is not an object, has no string type,
            or carries a field of the wrong shape.
    """
    if not isinstance(data, dict):
        raise ProtocolError("Frame is not a JSON object")

    raw_type = data.get("type")
    if not isinstance(raw_type, str) or not raw_type:
        raise ProtocolError("Frame has no 'type'")

    try:
        return Message.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(_describe(e), raw_type) from None


def decode(raw: Union[str, bytes]) -> Message:
    """
    Decode one text or binary frame.

    Raises:
        ProtocolError: if the frame is not valid JSON or not a valid envelope.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise ProtocolError("Frame is not UTF-8") from None

    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, RecursionError):
        raise ProtocolError("Invalid JSON") from None

    return message_from_dict(data)


def encode(message: Message) -> str:
    """Encode a Message as compact JSON text."""
    return message.model_dump_json(by_alias=True, exclude_none=True)


def is_host_id(endpoint_id: str) -> bool:
    return endpoint_id.startswith(HOST_ID_PREFIX)


def new_controller_id() -> str:
    """Generate an id such as ``controller-ab12cd34``."""
    return CONTROLLER_ID_PREFIX + secrets.token_hex(4)


# Convenience constructors used by the router and both client sessions

def register(endpoint_id: str, role: Role = Role.CONTROLLER) -> Message:
    return Message(type=MessageType.REGISTER, id=endpoint_id, role=role)


def registered(endpoint_id: str) -> Message:
    return Message(type=MessageType.REGISTERED, id=endpoint_id, timestamp=now_ms())


def list_hosts() -> Message:
    return Message(type=MessageType.LIST_HOSTS)


def hosts(host_list: List[HostInfo], updated: bool = False) -> Message:
    kind = MessageType.HOSTS_UPDATED if updated else MessageType.HOSTS
    return Message(type=kind, host_list=list(host_list))


def error(text: str) -> Message:
    return Message(type=MessageType.ERROR, text=text)


def host_disconnected(host_id: str) -> Message:
    return Message(type=MessageType.HOST_DISCONNECTED, host_id=host_id)


def ping() -> Message:
    return Message(type=MessageType.PING)


def pong() -> Message:
    return Message(type=MessageType.PONG)
