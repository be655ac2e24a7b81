"""Command-line interface for video similarity."""

import argparse
import json
import logging
import sys
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from tqdm import tqdm

from . import __version__
from .finder import MAX_OFFSET_MS
from .models import AutoComparisonResult, ComparisonResult, OffsetResult, Slot
from .session import ComparisonSession, ManualScheduler, SessionListener
from .video import AVFrameSource


def format_timestamp(milliseconds: int) -> str:
    """Convert signed milliseconds to [-]HH:MM:SS.ms format."""
    sign = "-" if milliseconds < 0 else ""
    millis = abs(milliseconds)
    total_seconds, millis = divmod(millis, 1000)
    hrs = total_seconds // 3600
    mins = (total_seconds % 3600) // 60
    secs = total_seconds % 60
    return f"{sign}{hrs:02}:{mins:02}:{secs:02}.{millis:03}"


class CollectingListener(SessionListener):
    """Keeps terminal results and mirrors progress onto a tqdm bar."""

    def __init__(self, bar: tqdm) -> None:
        self.bar = bar
        self.results: Optional[list[ComparisonResult]] = None
        self.auto: Optional[AutoComparisonResult] = None
        self.offset: Optional[OffsetResult] = None

    def on_progress(self, percent: int) -> None:
        self.bar.update(max(0, percent - self.bar.n))

    def on_frame_compared(self, timestamp: int, similarity: float) -> None:
        logging.debug(f"{format_timestamp(timestamp)}: {similarity * 100:.2f}%")

    def on_comparison_complete(self, results: list[ComparisonResult]) -> None:
        self.results = results

    def on_partial_results(self, results: list[ComparisonResult]) -> None:
        self.results = results

    def on_auto_comparison_complete(self, result: AutoComparisonResult) -> None:
        self.auto = result

    def on_offset_detected(self, result: OffsetResult) -> None:
        self.offset = result


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser."""
    parser = argparse.ArgumentParser(
        description="""\
Compare two videos by content and find the offset that aligns them.

Commands:
  compare  similarity at a fixed interval along the shared timeline
  auto     sampled comparison with an identity verdict
  offset   coarse-to-fine search for the time offset of B relative to A
""",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "command", choices=["compare", "auto", "offset"], help="Operation to run"
    )
    parser.add_argument("video_a", type=Path, help="Reference video (slot A)")
    parser.add_argument("video_b", type=Path, help="Video to compare (slot B)")
    parser.add_argument(
        "--offset-a",
        type=int,
        default=0,
        help="Offset applied to video A in milliseconds (default: 0)",
    )
    parser.add_argument(
        "--offset-b",
        type=int,
        default=0,
        help="Offset applied to video B in milliseconds (default: 0)",
    )
    parser.add_argument(
        "-s",
        "--max-offset",
        type=int,
        default=MAX_OFFSET_MS,
        help=f"Offset search range in milliseconds (default: {MAX_OFFSET_MS})",
    )
    parser.add_argument(
        "-i",
        "--interval",
        type=int,
        default=1000,
        help="Step between compared frames for 'compare' in ms (default: 1000)",
    )
    parser.add_argument(
        "-q", "--quiet", action="store_true", help="Suppress the progress bar"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )
    parser.add_argument(
        "-V", "--version", action="version", version=f"%(prog)s {__version__}"
    )

    return parser


def run(args: argparse.Namespace) -> dict[str, Any]:
    """Run one operation to completion and return its result as a dict."""
    scheduler = ManualScheduler()
    with tqdm(total=100, desc=args.command, disable=args.quiet) as bar:
        listener = CollectingListener(bar)
        session = ComparisonSession(
            AVFrameSource(),
            scheduler,
            listener,
            compare_interval_ms=args.interval,
            max_offset_ms=args.max_offset,
        )
        session.set_video(Slot.A, args.video_a)
        session.set_video(Slot.B, args.video_b)
        session.set_offset(Slot.A, args.offset_a)
        session.set_offset(Slot.B, args.offset_b)

        if args.command == "compare":
            session.start_stepwise_comparison()
        elif args.command == "auto":
            session.start_auto_comparison()
        else:
            session.start_offset_detection()
        scheduler.run_until_idle()

    if args.command == "compare":
        return {"results": [asdict(r) for r in listener.results or []]}
    if args.command == "auto":
        return {"auto": asdict(listener.auto) if listener.auto else None}
    if listener.offset is None:
        return {"offset": None}
    return {
        "offset": {
            **asdict(listener.offset),
            "offset_timestamp": format_timestamp(listener.offset.offset_ms),
        }
    }


def main() -> None:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    if not args.video_a.exists():
        logging.error(f"Video A not found: {args.video_a}")
        sys.exit(1)
    if not args.video_b.exists():
        logging.error(f"Video B not found: {args.video_b}")
        sys.exit(1)

    start_time = datetime.now()
    result = run(args)
    compute_time = (datetime.now() - start_time).total_seconds()

    logging.debug(f"Computation finished in {compute_time:.2f} seconds")

    output = {
        "date": datetime.now().isoformat(),
        "command": args.command,
        "video_a": str(args.video_a),
        "video_b": str(args.video_b),
        **result,
        "settings": {
            "offset_a": args.offset_a,
            "offset_b": args.offset_b,
            "max_offset": args.max_offset,
            "interval": args.interval,
            "compute_time": compute_time,
        },
    }

    print(json.dumps(output, indent=2))


if __name__ == "__main__":
    main()
