"""Segmented, crash-safe recording of encoded media packet streams."""

from .config import OutputFormat, RecorderSettings, RecorderSettingsStore
from .container import AvContainerMuxer, ContainerMuxer, ContainerSegmentWriter, SegmentInfo
from .event_log import RecordingEvent, RecordingEventLog
from .gof import GroupFormatError, IndexRecord, read_group, read_index
from .indexed import IndexedGopWriter
from .packets import PRIMARY_STREAM, CodecParameters, GroupOfFrames, MediaKind, Packet
from .session import RecordingSession, SessionStateError
from .templating import SegmentTiming, StreamIdentity, render_path_template
from .version import APP_VERSION

__all__ = [
    "APP_VERSION",
    "AvContainerMuxer",
    "CodecParameters",
    "ContainerMuxer",
    "ContainerSegmentWriter",
    "GroupFormatError",
    "GroupOfFrames",
    "IndexRecord",
    "IndexedGopWriter",
    "MediaKind",
    "OutputFormat",
    "PRIMARY_STREAM",
    "Packet",
    "RecorderSettings",
    "RecorderSettingsStore",
    "RecordingEvent",
    "RecordingEventLog",
    "RecordingSession",
    "SegmentInfo",
    "SegmentTiming",
    "SessionStateError",
    "StreamIdentity",
    "read_group",
    "read_index",
    "render_path_template",
]
