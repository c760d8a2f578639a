#!/usr/bin/env python3
"""Watch the live friend map of one user.

Subscribes to the user's friend list over MQTT (or to built-in demo data
with ``--offline``) and prints every snapshot and camera change.

Broker settings come from the ``GLOBALFAM_*`` environment variables.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

import aiohttp

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from globalfam import (  # noqa: E402
    Camera,
    EntitySnapshot,
    GlobalFamConfig,
    GlobalFamError,
    MapOrchestrator,
    ProfileRecord,
    build_geo_resolver,
)
from globalfam.live.memory import MemoryDocumentSource, MemoryStatusSource  # noqa: E402
from globalfam.live.mqtt import build_mqtt_feeds  # noqa: E402

_LOG = logging.getLogger("watch_map")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Print live friend map snapshots and camera changes.",
    )
    parser.add_argument("user_id", help="Id of the signed-in user whose friends are shown.")
    parser.add_argument(
        "--duration",
        type=int,
        default=0,
        help="Maximum runtime in seconds (0 = run until Ctrl+C).",
    )
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Use built-in demo documents instead of the MQTT broker.",
    )
    parser.add_argument(
        "--no-geocoder",
        action="store_true",
        help="Do not query the HTTP geocoder (gazetteer and fallback only).",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args()


def _print_snapshot(snapshot: EntitySnapshot) -> None:
    print(f"[map] snapshot v{snapshot.version}: {len(snapshot)} friends, {len(snapshot.pending_ids())} pending")
    for entity in snapshot.ordered_for_display():
        presence = "online " if entity.is_online else "offline"
        place = entity.location.label if entity.location is not None else "-"
        status = f' "{entity.status.text}"' if entity.status is not None else ""
        print(f"[map]   {presence} {entity.display_name:<24} {place}{status}")


def _print_camera(camera: Camera) -> None:
    print(f"[map] camera: lat={camera.center.lat:.4f} lng={camera.center.lng:.4f} zoom={camera.zoom:g}")


def _demo_profiles(user_id: str) -> MemoryDocumentSource[ProfileRecord]:
    profiles: MemoryDocumentSource[ProfileRecord] = MemoryDocumentSource()
    documents = [
        {"id": user_id, "displayName": "You", "friends": ["ana", "ben", "chloe"], "isOnline": True},
        {"id": "ana", "displayName": "Ana", "isOnline": True, "location": {"city": "Lisbon", "lat": 38.72, "lng": -9.14}},
        {"id": "ben", "displayName": "Ben", "location": {"city": "Tokyo", "country": "Japan"}},
        {"id": "chloe", "displayName": "Chloe", "isOnline": True, "location": {"city": "Toronto"}},
    ]
    for document in documents:
        record = ProfileRecord.model_validate(document)
        profiles.put(record.id, record)
    return profiles


async def _watch(args: argparse.Namespace, config: GlobalFamConfig) -> int:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)

    async with aiohttp.ClientSession() as http_session:
        geo = build_geo_resolver(config, http_session=None if args.no_geocoder else http_session)
        runtime = None
        if args.offline:
            profile_source = _demo_profiles(args.user_id)
            orchestrator = MapOrchestrator(
                config,
                profile_source=profile_source,
                status_source=MemoryStatusSource(),
                geo_resolver=geo,
            )
        else:
            feeds = build_mqtt_feeds(config, loop=loop)
            runtime = feeds.runtime
            try:
                runtime.start()
            except GlobalFamError as exc:
                print(f"[map] {exc}", file=sys.stderr)
                return 2
            orchestrator = MapOrchestrator(
                config,
                profile_source=feeds.profiles,
                status_source=feeds.statuses,
                root_source=feeds.friends,
                geo_resolver=geo,
            )

        orchestrator.on_snapshot_change(_print_snapshot)
        orchestrator.on_camera_change(_print_camera)
        orchestrator.start_session(args.user_id)
        try:
            if args.duration > 0:
                try:
                    await asyncio.wait_for(stop.wait(), args.duration)
                except TimeoutError:
                    pass
            else:
                await stop.wait()
        finally:
            orchestrator.dispose()
            geo.cancel_pending()
            if runtime is not None:
                runtime.stop()
    return 0


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        config = GlobalFamConfig.from_env()
    except GlobalFamError as exc:
        print(f"[map] Invalid configuration: {exc}", file=sys.stderr)
        return 2

    _LOG.debug("Watching user=%s offline=%s", args.user_id, args.offline)
    return asyncio.run(_watch(args, config))


if __name__ == "__main__":
    raise SystemExit(_main())
