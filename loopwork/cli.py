"""Command-line interface for Loopwork"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from loopwork import __version__
from loopwork.daemon.ipc import IPCClient
from loopwork.daemon.service import main as run_daemon

logger = logging.getLogger(__name__)


def daemon_command(args):
    """Handle daemon commands"""
    if args.daemon_action == "run":
        print("Running Loopwork daemon in foreground (Ctrl+C to stop)")
        run_daemon(args.config)
        print("✓ Daemon stopped")

    elif args.daemon_action == "status":
        result = asyncio.run(send_daemon_command(args, "status"))
        print(f"Daemon status: {json.dumps(result)}")

    elif args.daemon_action == "stop":
        asyncio.run(send_daemon_command(args, "stop"))
        print("✓ Daemon stopping")


async def send_daemon_command(args, command: str, **kwargs):
    """Send a command to the running daemon and return its result"""
    client = IPCClient(getattr(args, "socket", None))

    if not client.is_daemon_running():
        print("✗ Daemon is not running")
        print("  Start it with: loopwork daemon run")
        sys.exit(1)

    try:
        response = await client.send_command(command, **kwargs)
    except ConnectionError as e:
        print(f"✗ Failed to communicate with daemon: {e}")
        sys.exit(1)

    if response.get("status") != "success":
        print(f"✗ {response.get('error', 'unknown error')}")
        sys.exit(1)
    return response.get("result")


def _read_config_arg(value: str) -> dict:
    """Loop config from a JSON file path, or '-' for stdin"""
    text = sys.stdin.read() if value == "-" else Path(value).read_text(encoding="utf-8")
    return json.loads(text)


def loop_command(args):
    """Handle loop commands"""
    if args.loop_action == "set":
        try:
            config = _read_config_arg(args.config_file)
        except (OSError, ValueError) as e:
            print(f"✗ Could not read loop config: {e}")
            sys.exit(1)
        result = asyncio.run(
            send_daemon_command(args, "loop.update_config", thread_id=args.thread_id, config=config)
        )
    else:
        command = {
            "get": "loop.get_config",
            "start": "loop.start",
            "stop": "loop.stop",
            "status": "loop.status",
            "stats": "loop.stats",
        }[args.loop_action]
        result = asyncio.run(send_daemon_command(args, command, thread_id=args.thread_id))
    print(json.dumps(result, indent=2))


def thread_command(args):
    """Handle thread commands"""
    if args.thread_action == "list":
        result = asyncio.run(send_daemon_command(args, "threads.list"))
    elif args.thread_action == "delete":
        result = asyncio.run(send_daemon_command(args, "threads.delete", thread_id=args.thread_id))
    else:
        result = asyncio.run(send_daemon_command(
            args,
            "threads.set",
            thread_id=args.thread_id,
            workspace_path=args.workspace,
            model=args.model,
        ))
    print(json.dumps(result, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="loopwork",
        description="Loopwork - scheduled and event-driven agent loops"
    )
    parser.add_argument("--socket", help="Daemon IPC socket path")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    daemon_parser = subparsers.add_parser("daemon", help="Run or query the daemon")
    daemon_parser.add_argument("daemon_action", choices=["run", "status", "stop"], help="Daemon action")
    daemon_parser.add_argument("--config", help="Path to config.yaml")

    loop_parser = subparsers.add_parser("loop", help="Manage a thread's loop")
    loop_parser.add_argument(
        "loop_action", choices=["get", "set", "start", "stop", "status", "stats"], help="Loop action"
    )
    loop_parser.add_argument("thread_id", help="Thread id")
    loop_parser.add_argument("config_file", nargs="?", default="-", help="JSON loop config for 'set' ('-' = stdin)")

    thread_parser = subparsers.add_parser("thread", help="Manage thread metadata")
    thread_parser.add_argument("thread_action", choices=["list", "set", "delete"], help="Thread action")
    thread_parser.add_argument("thread_id", nargs="?", help="Thread id")
    thread_parser.add_argument("--workspace", help="Workspace directory for agent runs")
    thread_parser.add_argument("--model", help="Model id for agent runs")

    subparsers.add_parser("version", help="Show version")
    return parser


def main(argv=None):
    """Main CLI entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if args.command == "daemon":
        daemon_command(args)
    elif args.command == "loop":
        loop_command(args)
    elif args.command == "thread":
        if args.thread_action != "list" and not args.thread_id:
            parser.error("thread_id is required")
        thread_command(args)
    elif args.command == "version":
        print(f"Loopwork v{__version__}")
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
