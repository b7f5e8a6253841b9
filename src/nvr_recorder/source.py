"""Packet source reading already encoded media through PyAV."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator

import av

from .packets import CodecParameters, MediaKind, Packet

logger = logging.getLogger(__name__)

_SUPPORTED_KINDS = {"video": MediaKind.VIDEO, "audio": MediaKind.AUDIO}


def _channel_count(codec_context) -> int:
    layout = getattr(codec_context, "layout", None)
    count = getattr(layout, "nb_channels", None)
    if count is None:
        count = getattr(codec_context, "channels", 0)
    return int(count or 0)


def codec_parameters_from_stream(stream) -> CodecParameters:
    """Build a :class:`CodecParameters` from a PyAV input stream."""

    kind = _SUPPORTED_KINDS[stream.type]
    codec_context = stream.codec_context
    extradata = getattr(codec_context, "extradata", None) or b""
    if kind is MediaKind.VIDEO:
        return CodecParameters(
            kind=kind,
            codec=codec_context.name,
            extradata=bytes(extradata),
            width=int(codec_context.width or 0),
            height=int(codec_context.height or 0),
            template=stream,
        )
    return CodecParameters(
        kind=kind,
        codec=codec_context.name,
        extradata=bytes(extradata),
        sample_rate=int(codec_context.sample_rate or 0),
        channels=_channel_count(codec_context),
        template=stream,
    )


def _seconds(value: int | None, time_base) -> float | None:
    if value is None or time_base is None:
        return None
    return float(value * time_base)


class MediaSource:
    """Demux a media file or URL into recorder packets.

    Video streams are listed first so the primary stream is always video when
    the input has one.
    """

    def __init__(self, url: str | Path, *, options: dict[str, str] | None = None) -> None:
        self._container = av.open(str(url), mode="r", options=options or {})
        candidates = [s for s in self._container.streams if s.type in _SUPPORTED_KINDS]
        candidates.sort(key=lambda s: 0 if s.type == "video" else 1)
        if not candidates:
            self._container.close()
            raise ValueError(f"No audio or video streams found in {url}")
        self._inputs = candidates
        self._index_by_stream = {stream.index: idx for idx, stream in enumerate(candidates)}
        self._streams = [codec_parameters_from_stream(stream) for stream in candidates]

    @property
    def streams(self) -> list[CodecParameters]:
        return list(self._streams)

    def __iter__(self) -> Iterator[Packet]:
        for av_packet in self._container.demux(*self._inputs):
            if av_packet.size == 0:
                continue
            time_base = av_packet.time_base
            dts = _seconds(av_packet.dts, time_base)
            pts = _seconds(av_packet.pts, time_base)
            if dts is None:
                dts = pts
            if dts is None:
                logger.debug("Skipping packet without timestamps on stream %d", av_packet.stream.index)
                continue
            yield Packet(
                idx=self._index_by_stream[av_packet.stream.index],
                time=dts,
                duration=_seconds(av_packet.duration, time_base) or 0.0,
                data=bytes(av_packet),
                is_keyframe=bool(av_packet.is_keyframe),
                composition_time=(pts - dts) if pts is not None else 0.0,
            )

    def close(self) -> None:
        self._container.close()

    def __enter__(self) -> "MediaSource":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def open_media_source(url: str | Path, **kwargs) -> MediaSource:
    return MediaSource(url, **kwargs)


__all__ = ["MediaSource", "codec_parameters_from_stream", "open_media_source"]
