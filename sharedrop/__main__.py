import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .client import ShareDropClient
from .config import get_settings
from .downloads import save_received_file
from .errors import ShareDropError
from .transfer import LocalFile


async def share(args: argparse.Namespace) -> int:
    try:
        files = [LocalFile.from_path(p) for p in args.paths]
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    stop = asyncio.Event()
    async with ShareDropClient(name=args.name) as client:
        def on_connected(peer_id, name):
            print(f"Device connected: {name or peer_id[:6]}")
            for transfer_id in client.send_files(files, [peer_id]):
                print(f"  sending as {transfer_id}")

        def on_complete(transfer):
            print(f"Sent {transfer.name} to {transfer.peer_id[:6]}")
            if args.once:
                stop.set()

        client.events.peer_connected.subscribe(on_connected)
        client.events.transfer_complete.subscribe(on_complete)
        client.events.transfer_failed.subscribe(
            lambda transfer, reason: print(f"Transfer of {transfer.name} failed: {reason}", file=sys.stderr)
        )

        if args.room:
            await client.join_room(args.room)
            room_id = args.room
        else:
            room_id = await client.create_room()
        print(f"Room: {room_id}")
        print(f"Link: {client.room_url()}")
        print("Waiting for devices...  (Ctrl-C to stop)")
        await stop.wait()
    return 0


async def receive(args: argparse.Namespace) -> int:
    download_dir = Path(args.dir or get_settings().download_dir)
    stop = asyncio.Event()
    received = 0

    async with ShareDropClient(name=args.name) as client:
        def on_incoming(transfer):
            print(f"Receiving {transfer.name} ({transfer.formatted_size})")

        def on_received(transfer, data):
            nonlocal received
            path = save_received_file(download_dir, transfer.name, data)
            print(f"Saved {path}")
            received += 1
            if args.count and received >= args.count:
                stop.set()

        client.events.peer_connected.subscribe(lambda peer_id, name: print(f"Connected to {name or peer_id[:6]}"))
        client.events.file_incoming.subscribe(on_incoming)
        client.events.file_received.subscribe(on_received)

        await client.join_room(args.room)
        print(f"Joined room {args.room}, saving to {download_dir}  (Ctrl-C to stop)")
        await stop.wait()
    return 0


def serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "sharedrop.server:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
    )
    return 0


def main() -> None:
    p = argparse.ArgumentParser(
        prog="sharedrop",
        description="Peer-to-peer file sharing through a shared room",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
examples:
  sharedrop serve --port 8000
  sharedrop share report.pdf photo.jpg       <- creates a room and prints its id
  sharedrop receive 3f9c1a2b --dir ./inbox
""",
    )
    p.add_argument("-v", "--verbose", action="store_true")
    sub = p.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("serve", help="Run the mailbox server")
    s.add_argument("--host")
    s.add_argument("--port", type=int)

    sh = sub.add_parser("share", help="Send files to every device that joins")
    sh.add_argument("paths", nargs="+", metavar="path")
    sh.add_argument("--room", help="Join this room instead of creating one")
    sh.add_argument("--name", help="Display name for this device")
    sh.add_argument("--once", action="store_true", help="Exit after the first completed transfer")

    r = sub.add_parser("receive", help="Join a room and save received files")
    r.add_argument("room")
    r.add_argument("--dir", help="Directory for received files")
    r.add_argument("--name", help="Display name for this device")
    r.add_argument("--count", type=int, default=0, help="Exit after this many files")

    args = p.parse_args()
    level = "DEBUG" if args.verbose else get_settings().log_level
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.cmd == "serve":
        sys.exit(serve(args))

    handler = share if args.cmd == "share" else receive
    try:
        sys.exit(asyncio.run(handler(args)))
    except KeyboardInterrupt:
        print("\nStopped.")
    except ShareDropError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
