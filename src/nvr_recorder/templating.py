"""Output path templating for finalised recording segments."""
from __future__ import annotations

import math
import re
import socket
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class StreamIdentity:
    """Identity of the stream being recorded. Immutable for a session."""

    server_id: str = ""
    stream_name: str = ""
    channel_name: str = ""
    stream_id: str = ""
    channel_id: str = ""
    hostname: str = ""

    @property
    def hostname_short(self) -> str:
        return self.hostname.split(".", 1)[0]

    @property
    def hostname_long(self) -> str:
        return self.hostname

    @classmethod
    def local(cls, **fields: str) -> "StreamIdentity":
        """Return an identity with ``hostname`` taken from the running host."""

        if not fields.get("hostname"):
            fields["hostname"] = socket.getfqdn() or socket.gethostname()
        return cls(**fields)


@dataclass(slots=True)
class SegmentTiming:
    """Timing bookmarks of the segment being named."""

    start: datetime
    end: datetime | None = None
    start_pts: float = 0.0
    end_pts: float = 0.0
    duration: float = 0.0


_INSTANT_FIELDS = (
    "year",
    "month",
    "day",
    "hour",
    "minute",
    "second",
    "millisecond",
    "unix_second",
    "unix_millisecond",
    "time",
    "pts",
)

TEMPLATE_TOKENS: frozenset[str] = frozenset(
    [
        "{server_id}",
        "{hostname_short}",
        "{hostname_long}",
        "{stream_name}",
        "{channel_name}",
        "{stream_id}",
        "{channel_id}",
        "{duration_second}",
        "{duration_millisecond}",
    ]
    + [f"{{{prefix}_{name}}}" for prefix in ("start", "end") for name in _INSTANT_FIELDS]
)
"""Placeholders recognised by :func:`render_path_template`."""

_TOKEN_PATTERN = re.compile(r"\{([a-z_]+)\}")


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _milliseconds(seconds: float) -> str:
    # truncated, after rounding away float noise below a nanosecond
    return str(math.floor(round(seconds * 1000, 6)))


def _instant_values(prefix: str, value: datetime, pts: float) -> dict[str, str]:
    elapsed = value.astimezone(timezone.utc) - _EPOCH
    values = {
        "year": str(value.year),
        "month": str(value.month),
        "day": str(value.day),
        "hour": str(value.hour),
        "minute": str(value.minute),
        "second": str(value.second),
        "millisecond": str(value.microsecond // 1000),
        "unix_second": str(elapsed // timedelta(seconds=1)),
        "unix_millisecond": str(elapsed // timedelta(milliseconds=1)),
        "time": value.strftime("%Y-%m-%dT%H:%M:%S%z"),
        "pts": _milliseconds(pts),
    }
    return {f"{prefix}_{name}": text for name, text in values.items()}


def template_values(identity: StreamIdentity, timing: SegmentTiming) -> dict[str, str]:
    """Return the substitution table for ``identity`` and ``timing``."""

    if timing.end is None:
        raise ValueError("Segment end time must be set before rendering")
    values = {
        "server_id": identity.server_id,
        "hostname_short": identity.hostname_short,
        "hostname_long": identity.hostname_long,
        "stream_name": identity.stream_name,
        "channel_name": identity.channel_name,
        "stream_id": identity.stream_id,
        "channel_id": identity.channel_id,
        "duration_second": f"{timing.duration:f}",
        "duration_millisecond": _milliseconds(timing.duration),
    }
    values.update(_instant_values("start", timing.start, timing.start_pts))
    values.update(_instant_values("end", timing.end, timing.end_pts))
    return values


def render_path_template(
    template: str,
    identity: StreamIdentity,
    timing: SegmentTiming,
    *,
    now: datetime | None = None,
) -> str:
    """Return ``template`` with every recognised placeholder substituted.

    ``timing.end`` is refreshed to ``now`` (the current UTC instant when not
    given) before substitution. Unknown placeholders are left untouched and
    substituted values are never scanned again, so repeated calls with new
    timing snapshots always start from the unresolved template.
    """

    timing.end = now if now is not None else utc_now()
    values = template_values(identity, timing)

    def _replace(match: re.Match[str]) -> str:
        return values.get(match.group(1), match.group(0))

    return _TOKEN_PATTERN.sub(_replace, template)


__all__ = [
    "SegmentTiming",
    "StreamIdentity",
    "TEMPLATE_TOKENS",
    "render_path_template",
    "template_values",
    "utc_now",
]
