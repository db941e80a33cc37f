import base64
import binascii
import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_serializer, field_validator
from pydantic.alias_generators import to_camel

BROADCAST = "broadcast"


def generate_id() -> str:
    return uuid.uuid4().hex


class WireModel(BaseModel):
    """Base for models that travel as camelCase JSON"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class Peer(WireModel):
    id: str
    name: Optional[str] = None


# ---- Signaling ----

class SignalType(str, Enum):
    JOIN = "join"
    LEAVE = "leave"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"


class SignalMessage(WireModel):
    """Envelope stored in a room's message log"""

    seq: int = 0
    type: SignalType
    sender: str = Field(alias="from")
    to: str
    data: Dict[str, Any] = Field(default_factory=dict)
    from_name: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)
    processed_by: List[str] = Field(default_factory=list)

    @property
    def is_broadcast(self) -> bool:
        return self.to == BROADCAST


class Room(WireModel):
    id: str
    creator_id: str
    creator_name: Optional[str] = None
    peers: List[Peer] = []
    messages: List[SignalMessage] = []
    created_at: datetime = Field(default_factory=datetime.now)

    def has_peer(self, peer_id: str) -> bool:
        return any(p.id == peer_id for p in self.peers)


class SessionDescription(BaseModel):
    type: str
    sdp: str = Field(min_length=1)


class IceCandidate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    candidate: str
    sdp_mid: Optional[str] = Field(default=None, alias="sdpMid")
    sdp_mline_index: Optional[int] = Field(default=None, alias="sdpMLineIndex")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class _Signal(WireModel):
    seq: int = 0
    sender: str = Field(alias="from", min_length=1)
    to: str = Field(min_length=1)
    from_name: Optional[str] = None
    timestamp: float = 0.0
    processed_by: List[str] = []


class JoinSignal(_Signal):
    type: Literal["join"]
    data: Dict[str, Any] = {}


class LeaveSignal(_Signal):
    type: Literal["leave"]
    data: Dict[str, Any] = {}


class OfferSignal(_Signal):
    type: Literal["offer"]
    data: SessionDescription


class AnswerSignal(_Signal):
    type: Literal["answer"]
    data: SessionDescription


class IceCandidateSignal(_Signal):
    type: Literal["ice-candidate"]
    data: IceCandidate


Signal = Annotated[
    Union[JoinSignal, LeaveSignal, OfferSignal, AnswerSignal, IceCandidateSignal],
    Field(discriminator="type"),
]

_signal_adapter = TypeAdapter(Signal)


def parse_signal(message: SignalMessage):
    """Validate a log envelope against the variant its type declares.

    Raises pydantic.ValidationError when the payload does not match.
    """
    return _signal_adapter.validate_python(message.model_dump(by_alias=True, mode="json"))


# ---- Transfer control messages ----

class FileStart(WireModel):
    type: Literal["file-start"] = "file-start"
    id: str
    name: str
    size: int = Field(ge=0)
    mime_type: str = "application/octet-stream"


class FileChunk(WireModel):
    type: Literal["file-chunk"] = "file-chunk"
    id: str
    seq: int = Field(ge=0)
    data: bytes = Field(alias="bytes")

    @field_validator("data", mode="before")
    @classmethod
    def decode_data(cls, v):
        if isinstance(v, str):
            try:
                return base64.b64decode(v, validate=True)
            except binascii.Error as e:
                raise ValueError(f"chunk bytes are not valid base64: {e}")
        return v

    @field_serializer("data")
    def encode_data(self, v: bytes) -> str:
        return base64.b64encode(v).decode("ascii")


class FileEnd(WireModel):
    type: Literal["file-end"] = "file-end"
    id: str


class FileAbort(WireModel):
    type: Literal["file-abort"] = "file-abort"
    id: str
    reason: Optional[str] = None


ControlMessage = Annotated[
    Union[FileStart, FileChunk, FileEnd, FileAbort],
    Field(discriminator="type"),
]

_control_adapter = TypeAdapter(ControlMessage)


def encode_control(message: WireModel) -> str:
    return message.model_dump_json(by_alias=True)


def decode_control(raw: Union[str, bytes]):
    return _control_adapter.validate_json(raw)


# ---- Transfers ----

class TransferDirection(str, Enum):
    SEND = "send"
    RECEIVE = "receive"


class TransferStatus(str, Enum):
    PENDING = "pending"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferStatus.COMPLETED, TransferStatus.FAILED)


class FileTransfer(WireModel):
    id: str
    peer_id: str
    name: str
    size: int = Field(ge=0)
    mime_type: str = "application/octet-stream"
    direction: TransferDirection
    status: TransferStatus = TransferStatus.PENDING
    bytes_transferred: int = 0
    error: Optional[str] = None

    @property
    def progress(self) -> float:
        if self.size == 0:
            return 100.0
        return max(0.0, min(100.0, self.bytes_transferred / self.size * 100))

    @property
    def formatted_size(self) -> str:
        sizes = ["B", "KB", "MB", "GB", "TB"]
        order = 0
        size = float(self.size)
        while size >= 1024 and order < len(sizes) - 1:
            order += 1
            size /= 1024
        return f"{size:.2f} {sizes[order]}"
