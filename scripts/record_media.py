"""Replay an encoded media file or stream URL into a recording session."""

from __future__ import annotations

import argparse
import logging
import pathlib
import sys

ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from nvr_recorder.config import OutputFormat, RecorderSettings, RecorderSettingsStore
from nvr_recorder.session import RecordingSession
from nvr_recorder.source import open_media_source


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("input", help="media file or URL to record")
    parser.add_argument("--settings", type=pathlib.Path, help="recorder settings JSON file")
    parser.add_argument("--output", help="output template (mp4) or root directory (nvr)")
    parser.add_argument("--format", choices=[fmt.value for fmt in OutputFormat])
    parser.add_argument("--segment-limit", type=float, help="segment length in seconds")
    parser.add_argument("--stream-id", default=None)
    parser.add_argument("--channel-id", default=None)
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(argv)


def _build_settings(args: argparse.Namespace) -> RecorderSettings:
    base = RecorderSettingsStore(args.settings).load() if args.settings else RecorderSettings()
    overrides = {
        "output": args.output,
        "format": args.format,
        "segment_limit_s": args.segment_limit,
        "stream_id": args.stream_id,
        "channel_id": args.channel_id,
    }
    payload = base.to_dict()
    payload.update({key: value for key, value in overrides.items() if value is not None})
    return RecorderSettings.from_dict(payload)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = _build_settings(args)
    submitted = 0
    with open_media_source(args.input) as source:
        with RecordingSession(settings) as session:
            session.open(source.streams)
            for packet in source:
                session.submit(packet)
                submitted += 1
    logging.getLogger(__name__).info(
        "Recorded %d packets (%d dropped)", submitted, session.dropped_packets
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
