"""Tests for hourly indexed group storage."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from nvr_recorder import indexed as indexed_module
from nvr_recorder.config import OutputFormat, RecorderSettings
from nvr_recorder.gof import GroupFormatError, iter_groups, read_group, read_index
from nvr_recorder.indexed import IndexedGopWriter
from nvr_recorder.packets import CodecParameters, MediaKind, Packet
from nvr_recorder.session import RecordingSession


STREAMS = [
    CodecParameters(MediaKind.VIDEO, "h264", extradata=b"avcC", width=1280, height=720),
    CodecParameters(MediaKind.AUDIO, "aac", sample_rate=16000, channels=1),
]


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _gop(start: float, *, frames: int = 50, frame_s: float = 0.04) -> list[Packet]:
    packets: list[Packet] = []
    for index in range(frames):
        time_s = start + index * frame_s
        packets.append(
            Packet(idx=0, time=time_s, duration=frame_s, data=b"v%d" % index, is_keyframe=index == 0)
        )
        if index % 5 == 0:
            packets.append(Packet(idx=1, time=time_s, duration=0.064, data=b"a", is_keyframe=True))
    return packets


def _session(root: Path, clock: _Clock) -> RecordingSession:
    settings = RecorderSettings(output=str(root), format=OutputFormat.NVR)
    session = RecordingSession(settings, clock=clock)
    session.open(STREAMS)
    return session


def test_single_flush_for_first_group(tmp_path: Path) -> None:
    root = tmp_path / "data"
    clock = _Clock(datetime(2024, 5, 1, 10, 15, tzinfo=timezone.utc))
    session = _session(root, clock)

    first_group = _gop(0.0)
    for packet in first_group + _gop(2.0, frames=3):
        session.submit(packet)

    writer = session.writer
    assert isinstance(writer, IndexedGopWriter)
    assert writer.groups_written == 1
    data_path = root / "2024" / "05" / "01" / "10.d"
    index_path = root / "2024" / "05" / "01" / "10.m"
    assert writer.data_path == data_path
    assert writer.index_path == index_path

    records = read_index(index_path)
    assert len(records) == 1
    assert records["offset"][0] == 0
    assert records["duration"][0] == 2000
    assert records["time"][0] == int(clock.now.timestamp()) * 1_000_000_000

    group = read_group(data_path, 0)
    assert group.streams == STREAMS
    assert group.packets == first_group


def test_groups_start_with_single_keyframe(tmp_path: Path) -> None:
    root = tmp_path / "data"
    clock = _Clock(datetime(2024, 5, 1, 10, 15, tzinfo=timezone.utc))
    session = _session(root, clock)
    for start in (0.0, 2.0, 4.0, 6.0):
        for packet in _gop(start):
            session.submit(packet)
    session.close()

    data_path = root / "2024" / "05" / "01" / "10.d"
    records = read_index(root / "2024" / "05" / "01" / "10.m")
    groups = list(iter_groups(data_path))
    assert len(records) == len(groups) == 4
    assert records["offset"].tolist() == [offset for offset, _ in groups]
    for offset in records["offset"].tolist():
        group = read_group(data_path, offset)
        primary_keyframes = [p for p in group.packets if p.idx == 0 and p.is_keyframe]
        assert group.packets[0].starts_group
        assert primary_keyframes == [group.packets[0]]


def test_packets_before_first_keyframe_produce_no_output(tmp_path: Path) -> None:
    root = tmp_path / "data"
    session = _session(root, _Clock(datetime(2024, 5, 1, 10, tzinfo=timezone.utc)))
    for packet in _gop(0.0)[1:]:
        session.submit(packet)
    session.close()

    assert not session.started
    assert not root.exists()


def test_hour_change_mid_group_is_attributed_to_flush_hour(tmp_path: Path) -> None:
    root = tmp_path / "data"
    clock = _Clock(datetime(2024, 5, 1, 10, 59, 59, tzinfo=timezone.utc))
    session = _session(root, clock)
    day = root / "2024" / "05" / "01"

    for packet in _gop(0.0) + _gop(2.0):
        session.submit(packet)
    assert len(read_index(day / "10.m")) == 1

    clock.now += timedelta(seconds=2)
    for packet in _gop(4.0, frames=1):
        session.submit(packet)

    writer = session.writer
    assert writer.current_hour == 11
    assert len(read_index(day / "10.m")) == 1
    assert [len(group) for _, group in iter_groups(day / "10.d")] == [60]

    records = read_index(day / "11.m")
    assert len(records) == 1
    assert records["offset"][0] == 0
    moved = read_group(day / "11.d", 0)
    assert moved.packets[0].time == pytest.approx(2.0)


def test_day_change_at_same_hour_opens_new_directory(tmp_path: Path) -> None:
    clock = _Clock(datetime(2024, 5, 1, 10, 30, tzinfo=timezone.utc))
    writer = IndexedGopWriter(tmp_path, clock=clock)
    writer.open(STREAMS)
    for packet in _gop(0.0, frames=2) + _gop(1.0, frames=2):
        writer.write_packet(packet)
    clock.now += timedelta(days=1)
    writer.write_packet(_gop(2.0, frames=1)[0])
    writer.close()

    assert len(read_index(tmp_path / "2024" / "05" / "01" / "10.m")) == 1
    assert len(read_index(tmp_path / "2024" / "05" / "02" / "10.m")) == 2


def test_close_flushes_pending_group_and_is_idempotent(tmp_path: Path) -> None:
    clock = _Clock(datetime(2024, 5, 1, 3, tzinfo=timezone.utc))
    writer = IndexedGopWriter(tmp_path, clock=clock)
    writer.open(STREAMS)
    for packet in _gop(0.0, frames=10):
        writer.write_packet(packet)
    writer.close()
    writer.close()

    assert writer.groups_written == 1
    assert writer.current_hour is None
    records = read_index(tmp_path / "2024" / "05" / "01" / "3.m")
    assert records["duration"].tolist() == [400]


def test_existing_hour_files_are_appended(tmp_path: Path) -> None:
    clock = _Clock(datetime(2024, 5, 1, 3, tzinfo=timezone.utc))
    for start in (0.0, 10.0):
        writer = IndexedGopWriter(tmp_path, clock=clock)
        writer.open(STREAMS)
        for packet in _gop(start, frames=4):
            writer.write_packet(packet)
        writer.close()

    day = tmp_path / "2024" / "05" / "01"
    records = read_index(day / "3.m")
    groups = list(iter_groups(day / "3.d"))
    assert records["offset"].tolist() == [offset for offset, _ in groups]
    assert records["offset"][1] > 0
    assert read_group(day / "3.d", int(records["offset"][1])).packets[0].time == pytest.approx(10.0)


def test_failed_group_encoding_is_not_rebuffered(tmp_path: Path, monkeypatch) -> None:
    writer = IndexedGopWriter(tmp_path, clock=_Clock(datetime(2024, 5, 1, 3, tzinfo=timezone.utc)))
    writer.open(STREAMS)
    for packet in _gop(0.0, frames=3):
        writer.write_packet(packet)

    def _fail(group):
        raise GroupFormatError("boom")

    monkeypatch.setattr(indexed_module, "encode_group", _fail)
    keyframe = _gop(1.0, frames=1)[0]
    with pytest.raises(GroupFormatError):
        writer.write_packet(keyframe)

    assert writer.pending.packets == [keyframe]
    assert writer.groups_written == 0
    monkeypatch.undo()

    writer.write_packet(_gop(2.0, frames=1)[0])
    writer.close()
    assert writer.groups_written == 2
    groups = list(iter_groups(tmp_path / "2024" / "05" / "01" / "3.d"))
    assert [group.packets[0].time for _, group in groups] == [1.0, 2.0]


def test_writer_ignores_packets_until_a_group_opens(tmp_path: Path) -> None:
    writer = IndexedGopWriter(tmp_path, clock=_Clock(datetime(2024, 5, 1, 3, tzinfo=timezone.utc)))
    writer.open(STREAMS)
    for packet in _gop(0.0, frames=4)[1:]:
        writer.write_packet(packet)
    assert len(writer.pending) == 0
    writer.close()
    assert writer.groups_written == 0


def test_events_are_recorded(tmp_path: Path) -> None:
    log_path = tmp_path / "events.jsonl"
    settings = RecorderSettings(
        output=str(tmp_path / "data"), format="nvr", event_log_path=str(log_path)
    )
    session = RecordingSession(settings, clock=_Clock(datetime(2024, 5, 1, 3, tzinfo=timezone.utc)))
    session.open(STREAMS)
    for packet in _gop(0.0, frames=2) + _gop(1.0, frames=2):
        session.submit(packet)
    session.close()

    assert session.event_log is not None
    events = [entry.event for entry in session.event_log.tail()]
    assert events == ["hour_rotated", "group_flushed", "group_flushed"]
    assert log_path.exists()
