"""End-to-end recording of a real encoded clip through PyAV."""

from __future__ import annotations

from fractions import Fraction
from pathlib import Path

import av
import numpy as np

from nvr_recorder.config import RecorderSettings
from nvr_recorder.packets import MediaKind
from nvr_recorder.session import RecordingSession
from nvr_recorder.source import open_media_source


FPS = 25
FRAMES = 60
GOP = 10


def _encode_clip(path: Path) -> None:
    with av.open(path.as_posix(), mode="w") as container:
        stream = container.add_stream("mpeg4", rate=FPS)
        stream.width = 64
        stream.height = 48
        stream.pix_fmt = "yuv420p"
        stream.time_base = Fraction(1, FPS)
        stream.codec_context.gop_size = GOP
        # keyframes only at GOP boundaries
        stream.codec_context.options.update({"sc_threshold": "1000000000"})
        for index in range(FRAMES):
            array = np.full((48, 64, 3), (index * 4) % 256, dtype=np.uint8)
            frame = av.VideoFrame.from_ndarray(array, format="rgb24")
            frame.pts = index
            for packet in stream.encode(frame):
                container.mux(packet)
        for packet in stream.encode():
            container.mux(packet)


def test_media_source_reads_encoded_packets(tmp_path: Path) -> None:
    clip = tmp_path / "clip.mp4"
    _encode_clip(clip)

    with open_media_source(clip) as media:
        streams = media.streams
        packets = list(media)

    assert len(streams) == 1
    assert streams[0].kind is MediaKind.VIDEO
    assert (streams[0].codec, streams[0].width, streams[0].height) == ("mpeg4", 64, 48)
    assert streams[0].template is not None
    assert len(packets) == FRAMES
    assert packets[0].starts_group
    assert sum(1 for packet in packets if packet.is_keyframe) == FRAMES // GOP
    assert packets[1].time > packets[0].time
    assert len(packets[0].data) > 1


def test_recorded_segments_decode_from_their_first_frame(tmp_path: Path) -> None:
    clip = tmp_path / "clip.mp4"
    _encode_clip(clip)
    out = tmp_path / "out"
    settings = RecorderSettings(
        output=str(out / "{start_pts}.mp4"),
        format="mp4",
        segment_limit_s=2,
        hostname="nvr",
    )

    submitted: list[bytes] = []
    with open_media_source(clip) as media:
        with RecordingSession(settings) as session:
            session.open(media.streams)
            for packet in media:
                session.submit(packet)
                submitted.append(packet.data)

    segments = session.writer.segments
    assert session.dropped_packets == 0
    assert len(segments) == 2
    assert [info.packets for info in segments] == [50, 10]
    assert not (out / "tmp.mp4").exists()

    recorded: list[bytes] = []
    decoded = 0
    for info in segments:
        with av.open(str(info.path)) as container:
            packets = [packet for packet in container.demux(video=0) if packet.size]
            assert packets[0].is_keyframe
            recorded.extend(bytes(packet) for packet in packets)
        with av.open(str(info.path)) as container:
            decoded += sum(1 for _ in container.decode(video=0))

    assert recorded == submitted
    assert decoded == FRAMES
