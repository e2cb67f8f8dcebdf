"""Typed signaling messages.

Each Socket.IO event a client may send maps to one frozen dataclass. Payloads
are validated once here, at the boundary; handlers only see typed values.
Offer/answer/ICE bodies stay opaque: they are checked for presence, never
inspected.
"""

import math
import time
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional, Type

from .errors import MessageError

_MISSING = object()


def _field(data, name, types, default=_MISSING, event=""):
    value = data.get(name, _MISSING)
    if value is _MISSING or value is None:
        if default is _MISSING:
            raise MessageError(f"'{event}': '{name}' is required")
        return default
    if types is not None and (not isinstance(value, types) or isinstance(value, bool)):
        raise MessageError(f"'{event}': '{name}' has the wrong type")
    if isinstance(value, float) and not math.isfinite(value):
        raise MessageError(f"'{event}': '{name}' must be a finite number")
    return value


@dataclass(frozen=True)
class Message:
    EVENT: ClassVar[str] = ""

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "Message":
        return cls()


@dataclass(frozen=True)
class RegisterStreamer(Message):
    EVENT: ClassVar[str] = "register-streamer"

    stream_id: str
    name: Optional[str] = None
    quality: Optional[str] = None
    resolution: str = "unknown"
    frame_rate: Optional[float] = None

    @classmethod
    def from_payload(cls, data):
        stream_id = _field(data, "streamId", str, None, cls.EVENT)
        return cls(
            stream_id=stream_id or f"stream-{int(time.time() * 1000)}",
            name=_field(data, "name", str, None, cls.EVENT) or None,
            quality=_field(data, "quality", str, None, cls.EVENT),
            resolution=_field(data, "resolution", str, "unknown", cls.EVENT),
            frame_rate=_field(data, "frameRate", (int, float), None, cls.EVENT),
        )


@dataclass(frozen=True)
class RegisterViewer(Message):
    EVENT: ClassVar[str] = "register-viewer"

    stream_id: str

    @classmethod
    def from_payload(cls, data):
        return cls(stream_id=_field(data, "streamId", str, event=cls.EVENT))


@dataclass(frozen=True)
class Offer(Message):
    EVENT: ClassVar[str] = "offer"

    to: str
    offer: Any
    stream_id: Optional[str] = None

    @classmethod
    def from_payload(cls, data):
        return cls(
            to=_field(data, "to", str, event=cls.EVENT),
            offer=_field(data, "offer", None, event=cls.EVENT),
            stream_id=_field(data, "streamId", str, None, cls.EVENT),
        )

    def forward(self, sender: str) -> Dict[str, Any]:
        return {"from": sender, "offer": self.offer, "streamId": self.stream_id}


@dataclass(frozen=True)
class Answer(Message):
    EVENT: ClassVar[str] = "answer"

    to: str
    answer: Any

    @classmethod
    def from_payload(cls, data):
        return cls(
            to=_field(data, "to", str, event=cls.EVENT),
            answer=_field(data, "answer", None, event=cls.EVENT),
        )

    def forward(self, sender: str) -> Dict[str, Any]:
        return {"from": sender, "answer": self.answer}


@dataclass(frozen=True)
class IceCandidate(Message):
    EVENT: ClassVar[str] = "ice-candidate"

    to: str
    candidate: Any

    @classmethod
    def from_payload(cls, data):
        return cls(
            to=_field(data, "to", str, event=cls.EVENT),
            candidate=_field(data, "candidate", None, event=cls.EVENT),
        )

    def forward(self, sender: str) -> Dict[str, Any]:
        return {"from": sender, "candidate": self.candidate}


@dataclass(frozen=True)
class StatsUpdate(Message):
    EVENT: ClassVar[str] = "stats-update"

    role: Optional[str] = None
    bitrate: float = 0
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data):
        extra = {k: v for k, v in data.items() if k not in ("role", "bitrate")}
        return cls(
            role=_field(data, "role", str, None, cls.EVENT),
            bitrate=_field(data, "bitrate", (int, float), 0, cls.EVENT),
            extra=extra,
        )

    def stats(self) -> Dict[str, Any]:
        return {**self.extra, "bitrate": self.bitrate}


@dataclass(frozen=True)
class BandwidthTestStart(Message):
    EVENT: ClassVar[str] = "bandwidth-test-start"


@dataclass(frozen=True)
class BandwidthTestUpload(Message):
    EVENT: ClassVar[str] = "bandwidth-test-upload"

    size: int

    @classmethod
    def from_payload(cls, data):
        size = _field(data, "size", int, event=cls.EVENT)
        if size < 0:
            raise MessageError(f"'{cls.EVENT}': 'size' must be >= 0")
        return cls(size=size)


@dataclass(frozen=True)
class BandwidthTestDownloadRequest(Message):
    EVENT: ClassVar[str] = "bandwidth-test-download-request"


@dataclass(frozen=True)
class BandwidthTestComplete(Message):
    EVENT: ClassVar[str] = "bandwidth-test-complete"

    upload_bytes: int
    download_bytes: int
    duration: float

    @classmethod
    def from_payload(cls, data):
        values = {
            "upload_bytes": _field(data, "uploadBytes", int, event=cls.EVENT),
            "download_bytes": _field(data, "downloadBytes", int, event=cls.EVENT),
            "duration": _field(data, "duration", (int, float), event=cls.EVENT),
        }
        if any(v < 0 for v in values.values()):
            raise MessageError(f"'{cls.EVENT}': values must be >= 0")
        return cls(**values)


MESSAGE_TYPES: Dict[str, Type[Message]] = {
    m.EVENT: m
    for m in (
        RegisterStreamer,
        RegisterViewer,
        Offer,
        Answer,
        IceCandidate,
        StatsUpdate,
        BandwidthTestStart,
        BandwidthTestUpload,
        BandwidthTestDownloadRequest,
        BandwidthTestComplete,
    )
}


def parse_message(event: str, data=None) -> Message:
    message_type = MESSAGE_TYPES.get(event)
    if message_type is None:
        raise MessageError(f"Unknown event '{event}'")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MessageError(f"'{event}': payload must be an object")
    return message_type.from_payload(data)
