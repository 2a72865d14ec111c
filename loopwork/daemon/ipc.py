"""Unix-socket control channel between the daemon and its clients (CLI, UI)

One JSON object per line in each direction:
    -> {"command": "loop.start", "args": {"thread_id": "..."}}
    <- {"status": "success", "result": ...}
    <- {"status": "error", "error": "...", "kind": "LoopConfigError"}

"kind" is present only for loop errors, so clients can tell a bad loop
config apart from a daemon failure. A connection may carry several requests;
the server answers them in order until the client closes it.
"""

import asyncio
import inspect
import json
import logging
import socket
from contextlib import closing
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from loopwork.automation.errors import LoopError

logger = logging.getLogger(__name__)

DEFAULT_SOCKET_PATH = Path.home() / ".loopwork" / "daemon.sock"

# loop configs carry whole request bodies and templates
STREAM_LIMIT = 4 * 1024 * 1024


def _error(message: str, kind: Optional[str] = None) -> Dict[str, Any]:
    response = {"status": "error", "error": message}
    if kind:
        response["kind"] = kind
    return response


def parse_request(line: bytes) -> Tuple[str, Dict[str, Any]]:
    """Decode one request line into (command, args).

    Raises:
        ValueError: not JSON, or not shaped like a request
    """
    request = json.loads(line.decode("utf-8"))
    if not isinstance(request, dict) or not isinstance(request.get("command"), str):
        raise ValueError("request must be an object with a 'command' string")
    args = request.get("args") or {}
    if not isinstance(args, dict):
        raise ValueError("'args' must be an object")
    return request["command"], args


class IPCServer:
    """Serve registered command handlers on a Unix socket"""

    def __init__(self, socket_path: Optional[str] = None):
        self.socket_path = socket_path or str(DEFAULT_SOCKET_PATH)
        self.server: Optional[asyncio.Server] = None
        self.handlers: Dict[str, Callable] = {}

    def register_handler(self, command: str, handler: Callable):
        """Register a sync or async handler; request args arrive as kwargs"""
        self.handlers[command] = handler

    async def dispatch(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Run one decoded request and build its response"""
        command = request.get("command")
        handler = self.handlers.get(command)
        if handler is None:
            return _error(f"Unknown command: {command}")
        args = request.get("args") or {}
        try:
            inspect.signature(handler).bind(**args)
        except TypeError as e:
            return _error(f"Invalid arguments for {command}: {e}")
        try:
            result = handler(**args)
            if asyncio.iscoroutine(result):
                result = await result
        except LoopError as e:
            logger.info(f"{command} rejected: {e}")
            return _error(str(e), kind=e.__class__.__name__)
        except Exception as e:
            logger.error(f"Error handling command {command}: {e}", exc_info=True)
            return _error(str(e))
        return {"status": "success", "result": result}

    async def start(self):
        socket_file = Path(self.socket_path)
        socket_file.parent.mkdir(parents=True, exist_ok=True)
        if socket_file.exists():
            socket_file.unlink()
        self.server = await asyncio.start_unix_server(
            self._handle_client, path=self.socket_path, limit=STREAM_LIMIT
        )
        logger.info(f"IPC server listening on {self.socket_path}")

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                try:
                    command, args = parse_request(line)
                except ValueError as e:
                    response = _error(f"Invalid request: {e}")
                else:
                    logger.debug(f"IPC command: {command}")
                    response = await self.dispatch({"command": command, "args": args})
                writer.write(json.dumps(response, default=str).encode("utf-8") + b"\n")
                await writer.drain()
        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.debug(f"IPC client went away: {e}")
        finally:
            writer.close()
            await writer.wait_closed()

    async def stop(self):
        if self.server:
            self.server.close()
            await self.server.wait_closed()
            self.server = None
        Path(self.socket_path).unlink(missing_ok=True)
        logger.info("IPC server stopped")


class IPCClient:
    """Send single commands to the daemon"""

    def __init__(self, socket_path: Optional[str] = None):
        self.socket_path = socket_path or str(DEFAULT_SOCKET_PATH)

    async def send_command(self, command: str, **args) -> Dict[str, Any]:
        """Send one command and return the daemon's response dict

        Raises:
            ConnectionError: daemon not running or the exchange failed
        """
        try:
            reader, writer = await asyncio.open_unix_connection(self.socket_path, limit=STREAM_LIMIT)
        except (FileNotFoundError, ConnectionRefusedError) as e:
            raise ConnectionError("Daemon is not running") from e
        try:
            writer.write(json.dumps({"command": command, "args": args}).encode("utf-8") + b"\n")
            await writer.drain()
            line = await reader.readline()
            if not line:
                raise ConnectionError("Daemon closed the connection without answering")
            return json.loads(line.decode("utf-8"))
        except (OSError, ValueError) as e:
            raise ConnectionError(f"Failed to communicate with daemon: {e}") from e
        finally:
            writer.close()
            await writer.wait_closed()

    def is_daemon_running(self) -> bool:
        if not Path(self.socket_path).exists():
            return False
        with closing(socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)) as sock:
            try:
                sock.connect(self.socket_path)
            except OSError:
                return False
        return True
