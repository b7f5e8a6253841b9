"""Media packet and codec descriptor structures shared by the writers."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Sequence

PRIMARY_STREAM = 0
"""Stream index whose keyframes delimit groups and segments."""


class MediaKind(str, Enum):
    """Elementary stream kinds understood by the recorder."""

    VIDEO = "video"
    AUDIO = "audio"


_KIND_CODES: dict[MediaKind, int] = {MediaKind.VIDEO: 0, MediaKind.AUDIO: 1}


@dataclass(frozen=True, slots=True)
class CodecParameters:
    """Opaque codec descriptor for one elementary stream.

    The recorder never interprets ``extradata``; it is serialised with every
    indexed group. ``template`` optionally holds the demuxer stream the
    parameters were read from; the container muxer copies its codec
    parameters into the output stream.
    """

    kind: MediaKind
    codec: str
    extradata: bytes = b""
    width: int = 0
    height: int = 0
    sample_rate: int = 0
    channels: int = 0
    template: Any = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if not isinstance(self.kind, MediaKind):
            object.__setattr__(self, "kind", MediaKind(self.kind))
        if not isinstance(self.codec, str) or not self.codec.strip():
            raise ValueError("Codec name must be a non-empty string")
        object.__setattr__(self, "extradata", bytes(self.extradata or b""))
        for field_name in ("width", "height", "sample_rate", "channels"):
            value = int(getattr(self, field_name))
            if value < 0:
                raise ValueError(f"{field_name} must not be negative")
            object.__setattr__(self, field_name, value)

    @property
    def kind_code(self) -> int:
        return _KIND_CODES[self.kind]

    @staticmethod
    def kind_from_code(code: int) -> MediaKind:
        for kind, value in _KIND_CODES.items():
            if value == code:
                return kind
        raise ValueError(f"Unknown media kind code: {code}")


@dataclass(frozen=True, slots=True)
class Packet:
    """One encoded access unit.

    ``time`` is the decode timestamp and ``duration`` the packet duration, both
    in seconds. ``composition_time`` is the presentation offset from ``time``.
    """

    idx: int
    time: float
    duration: float
    data: bytes
    is_keyframe: bool = False
    composition_time: float = 0.0

    @property
    def pts(self) -> float:
        return self.time + self.composition_time

    @property
    def starts_group(self) -> bool:
        """Return ``True`` when the packet may open a group or segment."""

        return self.is_keyframe and self.idx == PRIMARY_STREAM


@dataclass(slots=True)
class GroupOfFrames:
    """Keyframe aligned buffer of packets recorded as a single unit."""

    streams: list[CodecParameters] = field(default_factory=list)
    packets: list[Packet] = field(default_factory=list)
    duration: float = 0.0

    def __len__(self) -> int:
        return len(self.packets)

    def append(self, packet: Packet) -> None:
        if packet.idx == PRIMARY_STREAM:
            self.duration += float(packet.duration)
        self.packets.append(packet)

    def reset(self) -> None:
        self.packets = []
        self.duration = 0.0

    @property
    def duration_ms(self) -> int:
        return int(round(self.duration * 1000))

    @classmethod
    def with_streams(cls, streams: Sequence[CodecParameters]) -> "GroupOfFrames":
        return cls(streams=list(streams))


__all__ = [
    "CodecParameters",
    "GroupOfFrames",
    "MediaKind",
    "Packet",
    "PRIMARY_STREAM",
]
