from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

from clipstream_core import __version__
from clipstream_core.embeddings.edges import EdgeKind, RelationshipEdge
from clipstream_core.logging import configure_logging
from clipstream_core.runtime import PipelineRuntime
from clipstream_core.storage.paths import raw_upload_key

SERVICE_NAME = "clipstream-cli"

LOCAL_ENV_DEFAULTS: dict[str, str] = {
    "STORAGE_ROOT": "./clipstream_data/objects",
    "CATALOG_PATH": "./clipstream_data/catalog.db",
    "ENV": "dev",
    "LOG_LEVEL": "INFO",
    "USE_REAL_MODELS": "0",
}


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _apply_local_defaults() -> None:
    for key, value in LOCAL_ENV_DEFAULTS.items():
        if not os.getenv(key):
            os.environ[key] = value


def _build_runtime() -> PipelineRuntime:
    _apply_local_defaults()
    return PipelineRuntime.build()


def cmd_submit(args: argparse.Namespace) -> int:
    runtime = _build_runtime()
    object_key = args.object_key or raw_upload_key(args.video_id)
    if args.path:
        path = Path(args.path)
        if not path.is_file():
            print(f"File not found: {path}", file=sys.stderr)
            return 1
        runtime.object_store.put_file(str(path), object_key)
    status = runtime.orchestrator.handle_upload(
        {"video_id": args.video_id, "object_key": object_key}
    )
    _print_json(asdict(status))
    return 0


def cmd_worker(args: argparse.Namespace) -> int:
    runtime = _build_runtime()
    runtime.attach()
    if args.drain:
        steps = runtime.orchestrator.drain()
        runtime.shutdown()
        _print_json({"processed": steps, **runtime.orchestrator.queue_status()})
        return 0
    pool = runtime.start_workers(args.count)
    try:
        pool.wait()
    except KeyboardInterrupt:
        pass
    finally:
        runtime.shutdown(timeout=args.shutdown_timeout)
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    runtime = _build_runtime()
    status = runtime.orchestrator.status(args.video_id)
    if status is None:
        print(f"Unknown video: {args.video_id}", file=sys.stderr)
        return 1
    payload: dict[str, Any] = asdict(status)
    if args.history:
        payload["history"] = runtime.orchestrator.history(args.video_id)
    _print_json(payload)
    return 0


def cmd_cancel(args: argparse.Namespace) -> int:
    runtime = _build_runtime()
    status = runtime.orchestrator.cancel(args.video_id)
    if status is None:
        print(f"Unknown video: {args.video_id}", file=sys.stderr)
        return 1
    _print_json(asdict(status))
    return 0


def cmd_requeue(args: argparse.Namespace) -> int:
    runtime = _build_runtime()
    status = runtime.orchestrator.requeue_failed(args.video_id)
    _print_json(asdict(status))
    return 0


def cmd_queue_stats(args: argparse.Namespace) -> int:
    runtime = _build_runtime()
    _print_json(runtime.orchestrator.queue_status())
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    runtime = _build_runtime()
    _print_json(asdict(runtime.orchestrator.processing_stats()))
    return 0


def _direction(edge: RelationshipEdge, video_id: str) -> str | None:
    if not edge.kind.directed:
        return None
    return "outgoing" if edge.video_a == video_id else "incoming"


def cmd_related(args: argparse.Namespace) -> int:
    runtime = _build_runtime()
    kind = EdgeKind(args.kind) if args.kind else None
    edges = runtime.embeddings.relationships(args.video_id, kind)
    _print_json(
        [
            {
                "video_id": edge.other(args.video_id),
                "kind": edge.kind.value,
                "score": edge.score,
                "offset": edge.offset,
                "dtw_cost": edge.dtw_cost,
                "direction": _direction(edge, args.video_id),
            }
            for edge in edges
        ]
    )
    return 0


def cmd_timeline(args: argparse.Namespace) -> int:
    runtime = _build_runtime()
    runtime.embeddings.load_all()
    entries = runtime.embeddings.trimmed_clips(args.video_id)
    _print_json([asdict(entry) for entry in entries])
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="clipstream")
    parser.add_argument("--version", action="version", version=__version__)
    subparsers = parser.add_subparsers(dest="command")

    submit_parser = subparsers.add_parser("submit", help="Register an uploaded video")
    submit_parser.add_argument("--video-id", required=True)
    submit_parser.add_argument("--object-key")
    submit_parser.add_argument("--path", help="Copy a local file into raw uploads")
    submit_parser.set_defaults(func=cmd_submit)

    worker_parser = subparsers.add_parser("worker", help="Run pipeline workers")
    worker_parser.add_argument("--count", type=int)
    worker_parser.add_argument(
        "--drain",
        action="store_true",
        help="Process ready jobs on this thread and exit",
    )
    worker_parser.add_argument("--shutdown-timeout", type=float, default=30.0)
    worker_parser.set_defaults(func=cmd_worker)

    status_parser = subparsers.add_parser("status", help="Show a video's status")
    status_parser.add_argument("video_id")
    status_parser.add_argument("--history", action="store_true")
    status_parser.set_defaults(func=cmd_status)

    cancel_parser = subparsers.add_parser("cancel", help="Cancel processing")
    cancel_parser.add_argument("video_id")
    cancel_parser.set_defaults(func=cmd_cancel)

    requeue_parser = subparsers.add_parser("requeue", help="Re-queue a failed video")
    requeue_parser.add_argument("video_id")
    requeue_parser.set_defaults(func=cmd_requeue)

    queue_parser = subparsers.add_parser("queue-stats", help="Show queue depth")
    queue_parser.set_defaults(func=cmd_queue_stats)

    stats_parser = subparsers.add_parser("stats", help="Show processing statistics")
    stats_parser.set_defaults(func=cmd_stats)

    related_parser = subparsers.add_parser("related", help="List related videos")
    related_parser.add_argument("video_id")
    related_parser.add_argument(
        "--kind",
        choices=[kind.value for kind in EdgeKind],
    )
    related_parser.set_defaults(func=cmd_related)

    timeline_parser = subparsers.add_parser(
        "timeline",
        help="List clips trimmed from a video",
    )
    timeline_parser.add_argument("video_id")
    timeline_parser.set_defaults(func=cmd_timeline)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "command", None):
        parser.print_help()
        return 2
    configure_logging(
        service=SERVICE_NAME,
        env=os.getenv("ENV", "local"),
        version=__version__,
    )
    try:
        return args.func(args)
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
