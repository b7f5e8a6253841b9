"""Hourly indexed storage of keyframe aligned packet groups."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import BinaryIO, Callable, Sequence

from .event_log import RecordingEventLog
from .gof import IndexRecord, encode_group
from .packets import CodecParameters, GroupOfFrames, Packet
from .templating import utc_now

logger = logging.getLogger(__name__)


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _as_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def _unix_nanoseconds(instant: datetime) -> int:
    return (instant - _EPOCH) // timedelta(microseconds=1) * 1000


def hour_directory(root: Path, instant: datetime) -> Path:
    return root / instant.strftime("%Y") / instant.strftime("%m") / instant.strftime("%d")


class IndexedGopWriter:
    """Write packet groups to ``root/YYYY/MM/DD/{hour}.d`` with a ``.m`` index.

    Packets accumulate in an open group until the next group starting
    keyframe; the completed group is then appended to the data file of the
    current UTC hour and an index record pointing at it is appended to the
    index file. The file pair rotates whenever a flush happens in a different
    hour than the open pair.
    """

    def __init__(
        self,
        root: Path | str,
        *,
        clock: Callable[[], datetime] = utc_now,
        event_log: RecordingEventLog | None = None,
    ) -> None:
        self._root = Path(root)
        self._clock = clock
        self._event_log = event_log
        self._group = GroupOfFrames()
        self._hour: datetime | None = None
        self._data: BinaryIO | None = None
        self._index: BinaryIO | None = None
        self._data_path: Path | None = None
        self._index_path: Path | None = None
        self._groups_written = 0

    # ------------------------------------------------------------------
    @property
    def root(self) -> Path:
        return self._root

    @property
    def current_hour(self) -> int | None:
        return self._hour.hour if self._hour is not None else None

    @property
    def data_path(self) -> Path | None:
        return self._data_path

    @property
    def index_path(self) -> Path | None:
        return self._index_path

    @property
    def groups_written(self) -> int:
        return self._groups_written

    @property
    def pending(self) -> GroupOfFrames:
        return self._group

    # ------------------------------------------------------------------
    def open(self, streams: Sequence[CodecParameters]) -> None:
        self._group = GroupOfFrames.with_streams(streams)

    def write_packet(self, packet: Packet) -> None:
        if packet.starts_group:
            try:
                self.flush()
            finally:
                self._group.append(packet)
            return
        if not len(self._group):
            # groups only ever open at a keyframe
            return
        self._group.append(packet)

    def flush(self) -> None:
        """Persist the open group and start an empty one."""

        if not len(self._group):
            return
        try:
            self._write_group()
        finally:
            self._group.reset()

    def close(self) -> None:
        try:
            self.flush()
        finally:
            self._close_files()

    # ------------------------------------------------------------------
    def _write_group(self) -> None:
        instant = _as_utc(self._clock())
        hour = instant.replace(minute=0, second=0, microsecond=0)
        if self._hour != hour or self._data is None or self._index is None:
            self._rotate(instant, hour)
        assert self._data is not None and self._index is not None
        offset = self._data.seek(0, 2)
        duration_ms = self._group.duration_ms
        blob = encode_group(self._group)
        self._data.write(blob)
        self._data.flush()
        record = IndexRecord(
            time=_unix_nanoseconds(instant),
            offset=offset,
            duration=duration_ms,
        )
        self._index.write(record.pack())
        self._index.flush()
        self._groups_written += 1
        logger.debug(
            "Group flushed: packets=%d offset=%d duration_ms=%d",
            len(self._group),
            offset,
            duration_ms,
        )
        if self._event_log is not None:
            self._event_log.record(
                "indexed",
                "group_flushed",
                "Group appended to data file",
                metadata={
                    "data_path": str(self._data_path),
                    "offset": offset,
                    "size_bytes": len(blob),
                    "duration_ms": duration_ms,
                    "packets": len(self._group),
                },
            )

    def _rotate(self, instant: datetime, hour: datetime) -> None:
        previous = self._data_path
        self._close_files()
        directory = hour_directory(self._root, instant)
        directory.mkdir(parents=True, exist_ok=True)
        data_path = directory / f"{instant.hour}.d"
        index_path = directory / f"{instant.hour}.m"
        data = data_path.open("ab")
        try:
            index = index_path.open("ab")
        except OSError:
            data.close()
            raise
        self._data, self._index = data, index
        self._data_path, self._index_path = data_path, index_path
        self._hour = hour
        logger.info("Indexed recording rotated to %s", data_path)
        if self._event_log is not None:
            self._event_log.record(
                "indexed",
                "hour_rotated",
                f"Writing hour {instant.hour}",
                metadata={
                    "data_path": str(data_path),
                    "index_path": str(index_path),
                    "previous": str(previous) if previous is not None else None,
                },
            )

    def _close_files(self) -> None:
        data, index = self._data, self._index
        self._data = None
        self._index = None
        self._hour = None
        try:
            if index is not None:
                index.close()
        finally:
            if data is not None:
                data.close()


__all__ = ["IndexedGopWriter", "hour_directory"]
