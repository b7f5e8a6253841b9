"""Recorder configuration structures."""
from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from .templating import StreamIdentity

DEFAULT_SEGMENT_LIMIT_S = 60
DEFAULT_CONTAINER_FORMAT = "mp4"
DEFAULT_OUTPUT_TEMPLATE = (
    "data/{stream_id}/{channel_id}/{start_year}/{start_month}/{start_day}/"
    "{start_unix_second}_{duration_second}.mp4"
)

_IDENTITY_FIELDS = (
    "server_id",
    "stream_name",
    "channel_name",
    "stream_id",
    "channel_id",
    "hostname",
)


class OutputFormat(str, Enum):
    """On-disk layouts produced by a recording session."""

    MP4 = "mp4"
    NVR = "nvr"


@dataclass(slots=True)
class RecorderSettings:
    """Options supplied once when a recording session is created.

    ``output`` is the path template of finalised segments for the container
    format and the root directory of the hourly file pairs for the indexed
    format.
    """

    output: str = DEFAULT_OUTPUT_TEMPLATE
    format: OutputFormat = OutputFormat.MP4
    segment_limit_s: float = DEFAULT_SEGMENT_LIMIT_S
    container_format: str = DEFAULT_CONTAINER_FORMAT
    server_id: str = ""
    stream_name: str = ""
    channel_name: str = ""
    stream_id: str = ""
    channel_id: str = ""
    hostname: str = ""
    event_log_path: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.output, str) or not self.output.strip():
            raise ValueError("Output path must be a non-empty string")
        if not isinstance(self.format, OutputFormat):
            try:
                self.format = OutputFormat(str(self.format).strip().lower())
            except ValueError as exc:
                raise ValueError(f"Unsupported output format: {self.format!r}") from exc
        try:
            limit = float(self.segment_limit_s)
        except (TypeError, ValueError) as exc:
            raise ValueError("Segment limit must be numeric") from exc
        if not math.isfinite(limit) or limit <= 0:
            raise ValueError("Segment limit must be a positive number of seconds")
        self.segment_limit_s = limit
        if not isinstance(self.container_format, str) or not self.container_format.strip():
            raise ValueError("Container format must be a non-empty string")
        for field_name in _IDENTITY_FIELDS:
            value = getattr(self, field_name)
            setattr(self, field_name, "" if value is None else str(value))

    def identity(self) -> StreamIdentity:
        """Return the stream identity, resolving the local hostname if unset."""

        return StreamIdentity.local(
            **{field_name: getattr(self, field_name) for field_name in _IDENTITY_FIELDS}
        )

    @property
    def temp_name(self) -> str:
        suffix = Path(self.output).suffix or f".{self.container_format}"
        return f"tmp{suffix}"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["format"] = self.format.value
        return data

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RecorderSettings":
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ValueError(f"Unknown recorder settings: {', '.join(unknown)}")
        return cls(**dict(payload))


class RecorderSettingsStore:
    """Simple JSON backed persistence for :class:`RecorderSettings`."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> RecorderSettings:
        if not self._path.exists():
            return RecorderSettings()
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError("Invalid recorder settings JSON") from exc
        if not isinstance(raw, dict):
            raise ValueError("Recorder settings must be a JSON object")
        return RecorderSettings.from_dict(raw)

    def save(self, settings: RecorderSettings) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = settings.to_dict()
        self._path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")


__all__ = [
    "DEFAULT_CONTAINER_FORMAT",
    "DEFAULT_OUTPUT_TEMPLATE",
    "DEFAULT_SEGMENT_LIMIT_S",
    "OutputFormat",
    "RecorderSettings",
    "RecorderSettingsStore",
]
