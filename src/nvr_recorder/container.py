"""Duration limited container segments muxed with PyAV."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from fractions import Fraction
from functools import partial
from pathlib import Path
from typing import BinaryIO, Callable, Mapping, Protocol, Sequence

import av

from .event_log import RecordingEventLog
from .packets import PRIMARY_STREAM, CodecParameters, Packet
from .templating import SegmentTiming, StreamIdentity, render_path_template, utc_now

logger = logging.getLogger(__name__)


class ContainerMuxer(Protocol):
    """Sink producing one container file from a header and a packet sequence."""

    def write_header(self, streams: Sequence[CodecParameters]) -> None:
        ...

    def write_packet(self, packet: Packet) -> None:
        ...

    def write_trailer(self) -> None:
        ...


MuxerFactory = Callable[[BinaryIO], ContainerMuxer]

_MUX_TIME_BASE = Fraction(1, 1_000_000)


def _ticks(seconds: float) -> int:
    return int(round(seconds / _MUX_TIME_BASE))


class AvContainerMuxer:
    """Remux already encoded packets into a container through PyAV.

    Packet timestamps are rebased so every file starts at zero.
    """

    def __init__(
        self,
        handle: BinaryIO,
        *,
        format: str = "mp4",
        options: Mapping[str, str] | None = None,
    ) -> None:
        self._handle = handle
        self._format = format
        self._options = dict(options or {})
        self._container = None
        self._streams: list = []
        self._origin: float | None = None

    def write_header(self, streams: Sequence[CodecParameters]) -> None:
        if self._container is not None:
            raise RuntimeError("Container header already written")
        missing = [index for index, params in enumerate(streams) if params.template is None]
        if missing:
            raise ValueError(f"Streams {missing} have no template stream to copy codec parameters from")
        container = av.open(self._handle, mode="w", format=self._format, options=self._options)
        try:
            # Template streams carry the demuxer codec parameters and no encoder.
            self._streams = [container.add_stream_from_template(params.template) for params in streams]
        except Exception:
            container.close()
            raise
        self._container = container

    def write_packet(self, packet: Packet) -> None:
        if self._container is None:
            raise RuntimeError("Container header has not been written")
        if not 0 <= packet.idx < len(self._streams):
            raise ValueError(f"Unknown stream index {packet.idx}")
        if self._origin is None:
            self._origin = packet.time
        av_packet = av.Packet(packet.data)
        av_packet.stream = self._streams[packet.idx]
        av_packet.time_base = _MUX_TIME_BASE
        av_packet.dts = _ticks(packet.time - self._origin)
        av_packet.pts = _ticks(packet.pts - self._origin)
        av_packet.duration = _ticks(packet.duration)
        av_packet.is_keyframe = packet.is_keyframe
        self._container.mux(av_packet)

    def write_trailer(self) -> None:
        container, self._container = self._container, None
        if container is not None:
            container.close()


@dataclass(frozen=True, slots=True)
class SegmentInfo:
    """Description of a finalised container segment."""

    path: Path
    start: datetime
    end: datetime
    start_pts: float
    end_pts: float
    duration: float
    packets: int
    size_bytes: int

    def to_dict(self) -> dict[str, object]:
        return {
            "path": str(self.path),
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "start_pts": self.start_pts,
            "end_pts": self.end_pts,
            "duration_seconds": round(self.duration, 3),
            "packets": self.packets,
            "size_bytes": self.size_bytes,
        }


@dataclass(slots=True)
class _ActiveSegment:
    handle: BinaryIO
    temp_path: Path
    muxer: ContainerMuxer
    timing: SegmentTiming
    packets: int = 0
    trailer_written: bool = False


class ContainerSegmentWriter:
    """Write packets into container files rotated on a duration limit.

    Each segment is written to a temporary file next to its destination and
    renamed to the rendered output template once its trailer is written.
    Rotation only happens on group starting keyframes so every file begins
    with a keyframe.

    Segment duration, and so the limit check and the ``{duration_second}`` /
    ``{duration_millisecond}`` placeholders, counts primary stream packet
    durations only.
    """

    def __init__(
        self,
        template: str,
        identity: StreamIdentity,
        *,
        limit_s: float,
        muxer_factory: MuxerFactory | None = None,
        container_format: str = "mp4",
        temp_name: str = "tmp.mp4",
        clock: Callable[[], datetime] = utc_now,
        event_log: RecordingEventLog | None = None,
    ) -> None:
        if limit_s <= 0:
            raise ValueError("Segment limit must be positive")
        self._template = template
        self._identity = identity
        self._limit = float(limit_s)
        self._muxer_factory: MuxerFactory = muxer_factory or partial(
            AvContainerMuxer, format=container_format
        )
        self._temp_name = temp_name
        self._clock = clock
        self._event_log = event_log
        self._streams: list[CodecParameters] | None = None
        self._segment: _ActiveSegment | None = None
        self._segments: list[SegmentInfo] = []

    # ------------------------------------------------------------------
    @property
    def segments(self) -> list[SegmentInfo]:
        """Finalised segments in the order they were produced."""

        return list(self._segments)

    @property
    def active_path(self) -> Path | None:
        return self._segment.temp_path if self._segment is not None else None

    @property
    def active_duration(self) -> float:
        return self._segment.timing.duration if self._segment is not None else 0.0

    # ------------------------------------------------------------------
    def open(self, streams: Sequence[CodecParameters]) -> None:
        self._streams = list(streams)
        self._open_segment()

    def write_packet(self, packet: Packet) -> None:
        if self._streams is None:
            raise RuntimeError("Segment writer has not been opened")
        segment = self._segment
        if segment is None or segment.trailer_written:
            # A failed open or finalisation is retried at the next keyframe.
            if not packet.starts_group:
                return
            self._rotate()
        elif packet.starts_group and self._limit_reached(segment):
            self._rotate()
        segment = self._segment
        assert segment is not None
        if segment.packets == 0:
            segment.timing.start_pts = packet.pts
        if packet.idx == PRIMARY_STREAM:
            segment.timing.duration += float(packet.duration)
        segment.timing.end_pts = packet.pts
        segment.muxer.write_packet(packet)
        segment.packets += 1

    def close(self) -> None:
        self._finalise()

    # ------------------------------------------------------------------
    def _limit_reached(self, segment: _ActiveSegment) -> bool:
        duration = segment.timing.duration
        return duration >= self._limit or math.isclose(duration, self._limit)

    def _rotate(self) -> None:
        self._finalise()
        self._open_segment()

    def _render(self, timing: SegmentTiming) -> Path:
        return Path(render_path_template(self._template, self._identity, timing, now=self._clock()))

    def _open_segment(self) -> None:
        assert self._streams is not None
        timing = SegmentTiming(start=self._clock())
        directory = self._render(timing).parent
        directory.mkdir(parents=True, exist_ok=True)
        temp_path = directory / self._temp_name
        handle = temp_path.open("wb")
        try:
            muxer = self._muxer_factory(handle)
            muxer.write_header(self._streams)
        except Exception:
            handle.close()
            raise
        self._segment = _ActiveSegment(
            handle=handle, temp_path=temp_path, muxer=muxer, timing=timing
        )
        logger.info("Container segment opened: %s", temp_path)
        if self._event_log is not None:
            self._event_log.record(
                "container",
                "segment_opened",
                "Container segment opened",
                metadata={"temp_path": str(temp_path), "start": timing.start.isoformat()},
            )

    def _finalise(self) -> SegmentInfo | None:
        segment = self._segment
        if segment is None:
            return None
        if not segment.trailer_written:
            segment.muxer.write_trailer()
            segment.trailer_written = True
        timing = segment.timing
        target = self._render(timing)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            segment.handle.flush()
            segment.temp_path.replace(target)
        except OSError:
            logger.exception("Failed to finalise container segment %s", segment.temp_path)
            raise
        segment.handle.close()
        self._segment = None
        try:
            size = target.stat().st_size
        except OSError:  # pragma: no cover - best-effort stat
            size = 0
        assert timing.end is not None
        info = SegmentInfo(
            path=target,
            start=timing.start,
            end=timing.end,
            start_pts=timing.start_pts,
            end_pts=timing.end_pts,
            duration=timing.duration,
            packets=segment.packets,
            size_bytes=int(size),
        )
        self._segments.append(info)
        logger.info("Container segment finalised: %s (%.3fs)", target, timing.duration)
        if self._event_log is not None:
            self._event_log.record(
                "container", "segment_finalised", "Container segment finalised", metadata=info.to_dict()
            )
        return info


__all__ = [
    "AvContainerMuxer",
    "ContainerMuxer",
    "ContainerSegmentWriter",
    "MuxerFactory",
    "SegmentInfo",
]
