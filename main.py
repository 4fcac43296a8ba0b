import argparse
import asyncio
import json

import config
import session_api
from loot_matcher import LootMatcher
from ocr_engines import ScreenRecognizer
from tracker import EVENT_STATS_UPDATE, LootSessionTracker


def parse_region(raw):
    if not raw:
        return None
    parts = [p.strip() for p in raw.split(',')]
    if len(parts) != 4:
        raise argparse.ArgumentTypeError("region must be x,y,width,height")
    try:
        return tuple(int(p) for p in parts)
    except ValueError:
        raise argparse.ArgumentTypeError("region values must be integers")


def print_notification(name, payload):
    if name == EVENT_STATS_UPDATE:
        return  # jede Capture, zu laut fuer die Konsole
    if name == 'loot detected':
        for item in payload['items']:
            print(f"  LOOT +{item['quantity']}x {item['name']}")
    elif name == 'session summary update':
        summary = payload['summary']
        print(f"  Session: {summary.get('itemCount', 0)} items at {summary.get('location')}")


async def run_session(args):
    manager = session_api.get_session_manager()
    manager.add_listener(print_notification)

    if args.warm_up:
        manager.recognizer.warm_up()

    result = await session_api.start_session({
        'ocrRegion': args.region,
        'captureInterval': args.interval,
        'location': args.location,
        'locationId': args.location_id,
    })
    if not result['success']:
        print(f"Could not start session: {result['error']}")
        return 1

    try:
        if args.duration:
            await asyncio.sleep(args.duration)
        else:
            while True:
                await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        result = await session_api.stop_session()
        manager.remove_listener(print_notification)
        manager.close()

    print("\n" + "=" * 60)
    print("SESSION SUMMARY")
    print("=" * 60)
    print(json.dumps(result.get('summary'), indent=2, ensure_ascii=False))
    print(json.dumps(result.get('stats'), indent=2, ensure_ascii=False))
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description="BDO loot tracker - timed grind session")
    parser.add_argument('--location', help="grind location name (default: last used)")
    parser.add_argument('--location-id', dest='location_id', help="loot table id in loot_tables.json")
    parser.add_argument('--region', type=parse_region, help="capture region x,y,width,height")
    parser.add_argument('--interval', type=int, default=config.CAPTURE_INTERVAL_MS, help="capture interval in ms")
    parser.add_argument('--duration', type=float, default=0, help="stop after N seconds (0 = until Ctrl+C)")
    parser.add_argument('--no-warm-up', dest='warm_up', action='store_false', help="skip OCR model preload")
    parser.add_argument('--debug', action='store_true', help="enable debug logging and debug_capture.png")
    args = parser.parse_args(argv)

    if args.debug:
        session_api.set_session_manager(LootSessionTracker(
            recognizer=ScreenRecognizer(debug=True),
            matcher=LootMatcher(),
            debug=True,
        ))

    try:
        return asyncio.run(run_session(args))
    except KeyboardInterrupt:
        print("\nStopped.")
        return 0


if __name__ == '__main__':
    raise SystemExit(main())
