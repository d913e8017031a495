#!/usr/bin/env python3
"""Sync IGDB resources into the local catalog from the command line.

Usage:
    python scripts/sync_catalog.py platforms
    python scripts/sync_catalog.py games --platform 6
    python scripts/sync_catalog.py games --platform-version 12 --association-id 3
    python scripts/sync_catalog.py games --platform 6 --resume-offset 1500
    python scripts/sync_catalog.py covers
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Sequence

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from catalog_sync.engine import (  # noqa: E402
    SyncCheckpoint,
    build_default_client,
    build_default_store,
    sync_media_for_games,
    sync_resource,
    sync_resource_by_association_key,
)
from catalog_sync.errors import SyncCancelled, TransportError  # noqa: E402
from catalog_sync.resources import RESOURCES, get_resource  # noqa: E402
from config import IGDB_BATCH_SIZE, validate_igdb_credentials  # noqa: E402

logger = logging.getLogger("sync_catalog")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync IGDB resources into the local catalog.")
    parser.add_argument("resource", choices=sorted(RESOURCES), help="IGDB resource to sync")
    scope = parser.add_mutually_exclusive_group()
    scope.add_argument(
        "--filter-value",
        type=int,
        default=None,
        help="Restrict the sync to one value of the resource's filter field",
    )
    scope.add_argument("--platform", type=int, default=None, help="IGDB platform id (games only)")
    scope.add_argument(
        "--platform-version", type=int, default=None, help="IGDB platform version id (games only)"
    )
    parser.add_argument(
        "--association-id",
        type=int,
        default=None,
        help="Value stored in the association column (defaults to the IGDB id)",
    )
    parser.add_argument("--page-size", type=int, default=IGDB_BATCH_SIZE)
    parser.add_argument(
        "--resume-offset", type=int, default=None, help="Start from this offset instead of 0"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser


def _install_interrupt_handler(cancel_event: threading.Event) -> None:
    def _handler(signum: int, frame: Any) -> None:
        logger.warning("Interrupt received; stopping after the current record")
        cancel_event.set()

    signal.signal(signal.SIGINT, _handler)


def run(args: argparse.Namespace, *, client: Any = None, store: Any = None,
        cancel_event: threading.Event | None = None) -> dict[str, Any]:
    spec = get_resource(args.resource)
    client = client or build_default_client()
    store = store or build_default_store()
    options: dict[str, Any] = {"client": client, "cancel_event": cancel_event}

    if spec.media_source is not None:
        result = sync_media_for_games(spec, store, **options)
        return {"status": "ok", **result.to_dict()}

    kind, value = None, None
    if args.platform is not None:
        kind, value = "platform", args.platform
    elif args.platform_version is not None:
        kind, value = "platform_version", args.platform_version

    filter_value = value if kind else args.filter_value
    if args.resume_offset is not None:
        options["checkpoint"] = SyncCheckpoint(spec.name, filter_value, max(args.resume_offset, 0))

    if kind:
        result = sync_resource_by_association_key(
            spec,
            kind,
            value,
            args.page_size,
            association_id=args.association_id,
            store=store,
            **options,
        )
    else:
        result = sync_resource(spec, filter_value, args.page_size, store=store, **options)
    return {"status": "ok", **result.to_dict()}


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if (args.platform is not None or args.platform_version is not None) and args.resource != "games":
        parser.error("--platform and --platform-version only apply to games")

    if not validate_igdb_credentials():
        return 2

    cancel_event = threading.Event()
    _install_interrupt_handler(cancel_event)

    try:
        summary = run(args, cancel_event=cancel_event)
    except SyncCancelled as exc:
        summary = {
            "status": "cancelled",
            **exc.result.to_dict(),
            "checkpoint": exc.checkpoint.to_dict(),
        }
        print(json.dumps(summary, indent=2, default=str))
        return 130
    except TransportError as exc:
        logger.error("Sync of %s aborted: %s", args.resource, exc)
        return 1

    print(json.dumps(summary, indent=2, default=str))
    return 0 if not summary.get("failed_ids") else 3


if __name__ == "__main__":  # pragma: no cover - manual execution path
    raise SystemExit(main())
