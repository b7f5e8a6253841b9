"""Binary layout of the indexed recording format.

Each hour of an indexed recording is stored as a pair of files:

``{hour}.d``
    Flat sequence of group blobs. Every blob is self describing: a fixed
    header (magic ``NGOF``, format version, stream and packet counts, body
    length and CRC-32) followed by the codec descriptors of every stream and
    the buffered packets.

``{hour}.m``
    Flat sequence of 32 byte index records: write time in nanoseconds since
    the epoch, byte offset of the group blob in the ``.d`` file and group
    duration in milliseconds (three little-endian signed 64-bit integers),
    followed by an 8 byte magic marker used to resynchronise readers after a
    torn write.
"""
from __future__ import annotations

import logging
import struct
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator

import numpy as np

from .packets import CodecParameters, GroupOfFrames, Packet

logger = logging.getLogger(__name__)


INDEX_MAGIC = bytes([11, 22, 111, 222, 11, 22, 111, 222])
_INDEX_STRUCT = struct.Struct("<qqq")
INDEX_ENTRY_SIZE = _INDEX_STRUCT.size + len(INDEX_MAGIC)

INDEX_DTYPE = np.dtype(
    [
        ("time", "<i8"),
        ("offset", "<i8"),
        ("duration", "<i8"),
    ]
)
_RAW_INDEX_DTYPE = np.dtype(
    [
        ("time", "<i8"),
        ("offset", "<i8"),
        ("duration", "<i8"),
        ("magic", "<u8"),
    ]
)
_MAGIC_WORD = int.from_bytes(INDEX_MAGIC, "little")

GROUP_MAGIC = b"NGOF"
GROUP_VERSION = 1
_GROUP_HEADER = struct.Struct("<4sBBHIQI")
_STREAM_HEADER = struct.Struct("<BIIIHHI")
_PACKET_HEADER = struct.Struct("<HBdddI")
_KEYFRAME_FLAG = 0x01


class GroupFormatError(ValueError):
    """Raised when a group blob cannot be encoded or decoded."""


@dataclass(frozen=True, slots=True)
class IndexRecord:
    """Location and timing of one flushed group."""

    time: int
    offset: int
    duration: int

    def pack(self) -> bytes:
        return _INDEX_STRUCT.pack(self.time, self.offset, self.duration) + INDEX_MAGIC

    @classmethod
    def unpack(cls, payload: bytes) -> "IndexRecord":
        if len(payload) != INDEX_ENTRY_SIZE:
            raise ValueError(f"Index records are {INDEX_ENTRY_SIZE} bytes")
        if payload[_INDEX_STRUCT.size :] != INDEX_MAGIC:
            raise ValueError("Index record magic marker mismatch")
        time_ns, offset, duration = _INDEX_STRUCT.unpack_from(payload)
        return cls(time=time_ns, offset=offset, duration=duration)


# ---------------------------------------------------------------------------
# Group blobs
# ---------------------------------------------------------------------------
def encode_group(group: GroupOfFrames) -> bytes:
    """Serialise ``group`` into a self describing blob."""

    stream_count = len(group.streams)
    body = bytearray()
    try:
        for stream in group.streams:
            codec_name = stream.codec.encode("ascii")
            body += _STREAM_HEADER.pack(
                stream.kind_code,
                stream.width,
                stream.height,
                stream.sample_rate,
                stream.channels,
                len(codec_name),
                len(stream.extradata),
            )
            body += codec_name
            body += stream.extradata
        for packet in group.packets:
            if not 0 <= packet.idx < stream_count:
                raise GroupFormatError(
                    f"Packet stream index {packet.idx} outside {stream_count} streams"
                )
            payload = bytes(packet.data)
            body += _PACKET_HEADER.pack(
                packet.idx,
                _KEYFRAME_FLAG if packet.is_keyframe else 0,
                float(packet.time),
                float(packet.duration),
                float(packet.composition_time),
                len(payload),
            )
            body += payload
        header = _GROUP_HEADER.pack(
            GROUP_MAGIC,
            GROUP_VERSION,
            0,
            stream_count,
            len(group.packets),
            len(body),
            zlib.crc32(body),
        )
    except (struct.error, UnicodeEncodeError) as exc:
        raise GroupFormatError(f"Unable to encode group: {exc}") from exc
    return header + bytes(body)


def decode_group(buffer: bytes | bytearray | memoryview, offset: int = 0) -> tuple[GroupOfFrames, int]:
    """Decode the group blob starting at ``offset``.

    Returns the group and the offset immediately after the blob.
    """

    view = memoryview(buffer)
    if len(view) - offset < _GROUP_HEADER.size:
        raise GroupFormatError("Truncated group header")
    magic, version, _flags, stream_count, packet_count, length, checksum = (
        _GROUP_HEADER.unpack_from(view, offset)
    )
    if magic != GROUP_MAGIC:
        raise GroupFormatError(f"Unexpected group magic {magic!r}")
    if version != GROUP_VERSION:
        raise GroupFormatError(f"Unsupported group format version {version}")
    start = offset + _GROUP_HEADER.size
    end = start + length
    if end > len(view):
        raise GroupFormatError("Truncated group body")
    body = view[start:end]
    if zlib.crc32(body) != checksum:
        raise GroupFormatError("Group checksum mismatch")

    cursor = 0
    streams: list[CodecParameters] = []
    try:
        for _ in range(stream_count):
            kind, width, height, sample_rate, channels, name_len, extra_len = (
                _STREAM_HEADER.unpack_from(body, cursor)
            )
            cursor += _STREAM_HEADER.size
            codec_name = bytes(body[cursor : cursor + name_len]).decode("ascii")
            cursor += name_len
            extradata = bytes(body[cursor : cursor + extra_len])
            cursor += extra_len
            streams.append(
                CodecParameters(
                    kind=CodecParameters.kind_from_code(kind),
                    codec=codec_name,
                    extradata=extradata,
                    width=width,
                    height=height,
                    sample_rate=sample_rate,
                    channels=channels,
                )
            )
        group = GroupOfFrames.with_streams(streams)
        for _ in range(packet_count):
            idx, flags, time_s, duration, composition, size = _PACKET_HEADER.unpack_from(
                body, cursor
            )
            cursor += _PACKET_HEADER.size
            group.append(
                Packet(
                    idx=idx,
                    time=time_s,
                    duration=duration,
                    data=bytes(body[cursor : cursor + size]),
                    is_keyframe=bool(flags & _KEYFRAME_FLAG),
                    composition_time=composition,
                )
            )
            cursor += size
    except (struct.error, UnicodeDecodeError, ValueError) as exc:
        raise GroupFormatError(f"Malformed group body: {exc}") from exc
    if cursor != length:
        raise GroupFormatError("Group body length mismatch")
    return group, end


def read_group(source: Path | str | BinaryIO, offset: int) -> GroupOfFrames:
    """Read the group stored at ``offset`` of a data file."""

    if isinstance(source, (str, Path)):
        with Path(source).open("rb") as handle:
            return read_group(handle, offset)
    source.seek(offset)
    header = source.read(_GROUP_HEADER.size)
    if len(header) < _GROUP_HEADER.size:
        raise GroupFormatError("Truncated group header")
    length = _GROUP_HEADER.unpack(header)[5]
    body = source.read(length)
    group, _ = decode_group(header + body)
    return group


def iter_groups(path: Path | str) -> Iterator[tuple[int, GroupOfFrames]]:
    """Yield ``(offset, group)`` for every blob of a data file in order."""

    data = Path(path).read_bytes()
    offset = 0
    while offset < len(data):
        group, next_offset = decode_group(data, offset)
        yield offset, group
        offset = next_offset


# ---------------------------------------------------------------------------
# Index files
# ---------------------------------------------------------------------------
def _scan_entries(data: bytes) -> Iterator[bytes]:
    body_size = _INDEX_STRUCT.size
    position = 0
    while position + INDEX_ENTRY_SIZE <= len(data):
        if data[position + body_size : position + INDEX_ENTRY_SIZE] == INDEX_MAGIC:
            yield data[position : position + INDEX_ENTRY_SIZE]
            position += INDEX_ENTRY_SIZE
            continue
        marker = data.find(INDEX_MAGIC, position + body_size + 1)
        if marker < 0:
            break
        logger.debug("Index resynchronised: skipped %d bytes", marker - body_size - position)
        position = marker - body_size


def read_index(source: Path | str | bytes) -> np.ndarray:
    """Return the index records of ``source`` as a structured array.

    Bytes that do not end in a magic marker are skipped and a truncated trailing
    record is discarded.
    """

    data = source if isinstance(source, bytes) else Path(source).read_bytes()
    raw: np.ndarray | None = None
    if len(data) % INDEX_ENTRY_SIZE == 0:
        candidate = np.frombuffer(data, dtype=_RAW_INDEX_DTYPE)
        if bool(np.all(candidate["magic"] == _MAGIC_WORD)):
            raw = candidate
    if raw is None:
        raw = np.frombuffer(b"".join(_scan_entries(data)), dtype=_RAW_INDEX_DTYPE)
    records = np.empty(len(raw), dtype=INDEX_DTYPE)
    for name in INDEX_DTYPE.names:
        records[name] = raw[name]
    return records


def iter_index_records(source: Path | str | bytes) -> Iterator[IndexRecord]:
    for row in read_index(source):
        yield IndexRecord(
            time=int(row["time"]), offset=int(row["offset"]), duration=int(row["duration"])
        )


__all__ = [
    "GROUP_MAGIC",
    "GROUP_VERSION",
    "GroupFormatError",
    "INDEX_DTYPE",
    "INDEX_ENTRY_SIZE",
    "INDEX_MAGIC",
    "IndexRecord",
    "decode_group",
    "encode_group",
    "iter_groups",
    "iter_index_records",
    "read_group",
    "read_index",
]
