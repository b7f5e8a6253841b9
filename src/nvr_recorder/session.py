"""Recording session dispatching packets to the configured segment writer."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Protocol, Sequence

from .config import OutputFormat, RecorderSettings
from .container import ContainerSegmentWriter, MuxerFactory
from .event_log import RecordingEventLog
from .indexed import IndexedGopWriter
from .packets import CodecParameters, Packet
from .templating import utc_now

logger = logging.getLogger(__name__)


class SessionStateError(RuntimeError):
    """Raised when session lifecycle calls are made out of order."""


class SegmentWriter(Protocol):
    """Format specific sink receiving the packets of a started session."""

    def open(self, streams: Sequence[CodecParameters]) -> None:
        ...

    def write_packet(self, packet: Packet) -> None:
        ...

    def close(self) -> None:
        ...


def create_writer(
    settings: RecorderSettings,
    *,
    muxer_factory: MuxerFactory | None = None,
    clock: Callable[[], datetime] = utc_now,
    event_log: RecordingEventLog | None = None,
) -> SegmentWriter:
    """Return the writer implementing ``settings.format``."""

    if settings.format is OutputFormat.NVR:
        return IndexedGopWriter(settings.output, clock=clock, event_log=event_log)
    return ContainerSegmentWriter(
        settings.output,
        settings.identity(),
        limit_s=settings.segment_limit_s,
        muxer_factory=muxer_factory,
        container_format=settings.container_format,
        temp_name=settings.temp_name,
        clock=clock,
        event_log=event_log,
    )


class RecordingSession:
    """Lifecycle of one logical recording.

    ``open`` is called once with the codec parameters, ``submit`` for every
    packet and ``close`` to finalise the output. Packets are discarded until
    the first keyframe on the primary stream so that stored output always
    starts cleanly. Malformed input is dropped without raising; filesystem
    errors propagate from the call that triggered them.
    """

    def __init__(
        self,
        settings: RecorderSettings,
        *,
        muxer_factory: MuxerFactory | None = None,
        clock: Callable[[], datetime] | None = None,
        event_log: RecordingEventLog | None = None,
        writer: SegmentWriter | None = None,
    ) -> None:
        self._settings = settings
        if event_log is None and settings.event_log_path:
            event_log = RecordingEventLog(settings.event_log_path)
        self._event_log = event_log
        self._writer = writer or create_writer(
            settings,
            muxer_factory=muxer_factory,
            clock=clock or utc_now,
            event_log=event_log,
        )
        self._streams: tuple[CodecParameters, ...] | None = None
        self._started = False
        self._closed = False
        self._last_times: dict[int, float] = {}
        self._dropped = 0

    # ------------------------------------------------------------------
    @property
    def settings(self) -> RecorderSettings:
        return self._settings

    @property
    def writer(self) -> SegmentWriter:
        return self._writer

    @property
    def event_log(self) -> RecordingEventLog | None:
        return self._event_log

    @property
    def streams(self) -> tuple[CodecParameters, ...] | None:
        return self._streams

    @property
    def started(self) -> bool:
        return self._started

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dropped_packets(self) -> int:
        return self._dropped

    # ------------------------------------------------------------------
    def open(self, streams: Sequence[CodecParameters]) -> None:
        """Store the codec parameters and prepare the writer."""

        if self._closed:
            raise SessionStateError("Recording session has been closed")
        if self._streams is not None:
            raise SessionStateError("Recording session already opened")
        resolved = tuple(streams)
        if not resolved:
            raise ValueError("At least one stream is required")
        self._streams = resolved
        self._writer.open(resolved)
        logger.info(
            "Recording session opened: format=%s streams=%d output=%s",
            self._settings.format.value,
            len(resolved),
            self._settings.output,
        )

    def submit(self, packet: Packet) -> None:
        """Route ``packet`` to the writer once recording has started."""

        if self._streams is None or self._closed:
            self._drop(packet, "session not open")
            return
        if not 0 <= packet.idx < len(self._streams):
            self._drop(packet, "unknown stream")
            return
        previous = self._last_times.get(packet.idx)
        if previous is not None and packet.time < previous:
            self._drop(packet, "timestamp went backwards")
            return
        if not self._started:
            if not packet.starts_group:
                self._drop(packet, "waiting for keyframe")
                return
            self._started = True
            logger.info("Recording started at keyframe time=%.3f", packet.time)
        self._last_times[packet.idx] = packet.time
        self._writer.write_packet(packet)

    def close(self) -> None:
        """Finalise the writer. Safe to call more than once."""

        if self._closed:
            return
        if self._streams is not None:
            self._writer.close()
        self._closed = True
        logger.info("Recording session closed (dropped packets: %d)", self._dropped)

    def _drop(self, packet: Packet, reason: str) -> None:
        self._dropped += 1
        logger.debug("Dropping packet idx=%d time=%.3f: %s", packet.idx, packet.time, reason)

    # ------------------------------------------------------------------
    def __enter__(self) -> "RecordingSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = ["RecordingSession", "SegmentWriter", "SessionStateError", "create_writer"]
