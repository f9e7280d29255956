"""CLI interface for bugscrub — scrub text and screenshots, inspect and flush the queue.

Usage:
    # Sanitize text (stdin: text, stdout: JSON with redacted text and counts)
    echo 'Mail me at john@x.com' | python -m bugscrub.cli sanitize

    # Sanitize structured custom data (stdin: JSON)
    echo '{"user": {"email": "john@x.com"}}' | python -m bugscrub.cli sanitize-json

    # Black out regions of a screenshot
    python -m bugscrub.cli redact-image shot.png clean.png --region 10,10,200,40

    # Show what is waiting in the persisted queue, then try to deliver it
    python -m bugscrub.cli --config bugscrub.yaml queue
    python -m bugscrub.cli --config bugscrub.yaml flush

The queue lives in SQLite so it survives across calls.
"""

from __future__ import annotations
import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

from .client import BugReporter
from .config import PipelineConfig, build_sanitizer, load_config, load_from_yaml
from .errors import BugscrubError
from .image import ImageSanitizer, decode_image
from .patterns import DEFAULT_PATTERNS, resolve_names
from .persistent_queue import NAMESPACE as QUEUE_NAMESPACE
from .storage import SqliteStorage
from .types import QueueEntry, Rect


DEFAULT_DB = os.environ.get(
    "BUGSCRUB_DB",
    str(Path.home() / ".bugscrub" / "queue.db"),
)


def _load(args: argparse.Namespace) -> PipelineConfig:
    config = load_from_yaml(args.config) if args.config else load_config({})
    if args.patterns:
        config.pii_patterns = args.patterns.split(",")
        resolve_names(config.pii_patterns)
    return config


def _parse_region(value: str) -> Rect:
    try:
        x, y, w, h = (int(part) for part in value.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected x,y,w,h, got {value!r}") from None
    return Rect(x, y, w, h)


def _dump(data: object) -> None:
    json.dump(data, sys.stdout, indent=2, ensure_ascii=False)
    sys.stdout.write("\n")


def cmd_sanitize(args: argparse.Namespace) -> None:
    """Sanitize plain text on stdin."""
    sanitizer = build_sanitizer(_load(args))
    result = sanitizer.sanitize(sys.stdin.read())
    _dump({"text": result.text, "report": result.report.to_dict()})


def cmd_sanitize_json(args: argparse.Namespace) -> None:
    """Sanitize a JSON document on stdin."""
    sanitizer = build_sanitizer(_load(args))
    data, report = sanitizer.sanitize_value(json.loads(sys.stdin.read()))
    _dump({"data": data, "report": report.to_dict()})


def cmd_redact_image(args: argparse.Namespace) -> None:
    """Redact rectangular regions of an image file."""
    image = decode_image(Path(args.input).read_bytes())
    sanitizer = ImageSanitizer(mode=args.mode, padding=args.padding)
    sanitizer.sanitize(image, args.region).save(args.output)
    sys.stderr.write(f"Redacted {len(args.region)} region(s) -> {args.output}\n")


def cmd_queue(args: argparse.Namespace) -> None:
    """List persisted queue entries without touching them."""
    storage = SqliteStorage(args.db)
    try:
        entries = sorted(
            (QueueEntry.from_record(record) for _, record in storage.items(QUEUE_NAMESPACE)),
            key=lambda e: e.seq,
        )
    finally:
        storage.close()
    _dump([
        {
            "entry_id": e.entry_id,
            "fingerprint": e.report.id,
            "title": e.report.title,
            "status": e.status.value,
            "attempts": e.report.attempts,
            "next_attempt_at": e.next_attempt_at,
            "last_error": e.last_error,
        }
        for e in entries
    ])


async def _flush(config: PipelineConfig, db: str) -> list[dict]:
    reporter = BugReporter(config, storage=SqliteStorage(db))
    reporter.on_failure(
        lambda entry, error: sys.stderr.write(f"Failed permanently: {entry.entry_id}: {error}\n")
    )
    await reporter.open(start=False)
    try:
        results = await reporter.engine.drain()
    finally:
        await reporter.close()
    return [
        {"entry_id": r.entry_id, "status": r.status.value, "suppressed": r.suppressed, "error": r.error}
        for r in results
    ]


def cmd_flush(args: argparse.Namespace) -> None:
    """Deliver every ready entry once, then exit."""
    _dump(asyncio.run(_flush(_load(args), args.db)))


def cmd_patterns(args: argparse.Namespace) -> None:
    """List built-in patterns, highest priority first."""
    enabled = set(resolve_names(args.patterns.split(","))) if args.patterns else set(DEFAULT_PATTERNS)
    _dump([
        {
            "name": d.name,
            "priority": d.priority,
            "description": d.description,
            "examples": list(d.examples),
            "enabled": d.name in enabled,
        }
        for d in sorted(DEFAULT_PATTERNS.values(), key=lambda d: -d.priority)
    ])


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="bugscrub",
        description="PII scrubbing and reliable delivery for bug reports",
    )
    parser.add_argument("--config", default=None, help="YAML config file")
    parser.add_argument("--db", default=DEFAULT_DB, help="SQLite queue path")
    parser.add_argument("--patterns", default="", help="Comma-separated presets or pattern names")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("sanitize", help="Sanitize plain text (stdin)")
    sub.add_parser("sanitize-json", help="Sanitize JSON data (stdin)")
    img = sub.add_parser("redact-image", help="Redact regions of an image")
    img.add_argument("input")
    img.add_argument("output")
    img.add_argument("--region", type=_parse_region, action="append", default=[], help="x,y,w,h (repeatable)")
    img.add_argument("--mode", choices=("fill", "blur"), default="fill")
    img.add_argument("--padding", type=int, default=0)
    sub.add_parser("queue", help="List persisted queue entries")
    sub.add_parser("flush", help="Deliver ready entries once")
    sub.add_parser("patterns", help="List built-in patterns")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cmds = {
        "sanitize": cmd_sanitize,
        "sanitize-json": cmd_sanitize_json,
        "redact-image": cmd_redact_image,
        "queue": cmd_queue,
        "flush": cmd_flush,
        "patterns": cmd_patterns,
    }
    try:
        cmds[args.command](args)
    except BugscrubError as exc:
        sys.stderr.write(f"bugscrub: {exc}\n")
        sys.exit(1)


if __name__ == "__main__":
    main()
