"""Entry point for `python -m pvescripts` / `pvescripts`.

Subcommands:
    pvescripts                    Run the service (default)
    pvescripts serve              Same as above
    pvescripts discover           Refresh the backup catalog for every installed script
    pvescripts restore B C S      Restore backup B onto container C of server S
    pvescripts restore-log        Print the progress of the last restore
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys


def _run() -> None:
    from pvescripts.app import ServiceContainer

    async def _serve() -> None:
        app = await ServiceContainer.create()
        await app.run()

    asyncio.run(_serve())


def _discover() -> None:
    from pvescripts.app import ServiceContainer

    async def _go() -> int:
        app = await ServiceContainer.create()
        try:
            return await app.discovery.discover_all()
        finally:
            await app.close()

    count = asyncio.run(_go())
    print(f"Discovered {count} backups")


def _restore(backup_id: int, container_id: str, server_id: int) -> None:
    from pvescripts.app import ServiceContainer

    async def _go():
        app = await ServiceContainer.create()
        try:
            return await app.restore.execute_restore(backup_id, container_id, server_id)
        finally:
            await app.close()

    result = asyncio.run(_go())
    for entry in result.progress:
        print(f"[{entry.step}] {entry.message}")
    if not result.success:
        print(f"Error: {result.error}", file=sys.stderr)
        sys.exit(1)


def _restore_log() -> None:
    from pvescripts.config import get_settings
    from pvescripts.restore import read_restore_log

    status = read_restore_log(get_settings().restore_log_path)
    print(json.dumps(status.to_dict(), indent=2))


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="pvescripts",
        description="Script execution and container restore engine for Proxmox VE",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the HTTP/WebSocket service (default)")
    sub.add_parser("discover", help="Discover backups for every installed script")
    restore = sub.add_parser("restore", help="Restore a catalogued backup")
    restore.add_argument("backup_id", type=int)
    restore.add_argument("container_id")
    restore.add_argument("server_id", type=int)
    sub.add_parser("restore-log", help="Show the progress log of the last restore")

    args = parser.parse_args()

    match args.command:
        case "discover":
            _discover()
        case "restore":
            _restore(args.backup_id, args.container_id, args.server_id)
        case "restore-log":
            _restore_log()
        case _:
            _run()


if __name__ == "__main__":
    main()
